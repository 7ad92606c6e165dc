"""Apple Health export source.

Apple does not provide a server-side API; users export their data from the
Health app.  This source loads such an export into memory and serves it
through the SampleSource interface.  Two formats are accepted:

1. **XML export**: Apple Health's native ``export.xml`` (Record and Workout
   elements).
2. **JSON export**: the per-metric layout produced by iOS Shortcuts and
   apps like Health Auto Export::

       {
           "steps":     [{"startDate": "...", "endDate": "...", "value": 120,
                          "unit": "count", "sourceName": "iPhone"}],
           "heartRate": [...],
           "sleep":     [{"startDate": "...", "endDate": "...",
                          "value": "HKCategoryValueSleepAnalysisAsleepCore"}],
           "workouts":  [{"startDate": "...", "endDate": "...",
                          "duration": 32.5, "durationUnit": "min"}]
       }

Device names ("Jane's Apple Watch", "iPhone") map to the source ids used in
``source_priorities`` ('watch', 'phone'); anything else becomes a slug of
its name.  Priorities themselves are left to the pipeline config.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from xml.etree import ElementTree as ET

from src.timeline.base import MetricType, RawSample
from src.timeline.errors import UnsupportedMetricError
from src.timeline.normalizer import resolve_metric_type
from src.timeline.sources.memory import InMemorySampleSource

logger = logging.getLogger("cadence.timeline.sources.apple_health")

_HK_SLEEP_ANALYSIS = "HKCategoryTypeIdentifierSleepAnalysis"

# Sleep stage values from HealthKit
_SLEEP_STAGE_MAP: dict[str, str] = {
    "HKCategoryValueSleepAnalysisAsleepUnspecified": "unspecified",
    "HKCategoryValueSleepAnalysisAsleep": "asleep",
    "HKCategoryValueSleepAnalysisAsleepCore": "core",
    "HKCategoryValueSleepAnalysisAsleepDeep": "deep",
    "HKCategoryValueSleepAnalysisAsleepREM": "rem",
    "HKCategoryValueSleepAnalysisAwake": "awake",
    "HKCategoryValueSleepAnalysisInBed": "in_bed",
}

_DATE_FORMATS = ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%d %H:%M:%S")


def parse_export_datetime(value: str | None) -> datetime | None:
    """Parse an export timestamp ('2026-02-23 08:00:00 -0500' or ISO-8601).

    Naive values are taken as UTC.  Returns None if unparseable.
    """
    if not value:
        return None
    text = value.strip()
    for fmt in _DATE_FORMATS:
        try:
            dt = datetime.strptime(text, fmt)
            break
        except ValueError:
            continue
    else:
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse export datetime: %r", value)
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def source_id_for_device(name: str | None) -> str:
    """Map a device/app name to a source id used for priority lookup."""
    if not name:
        return "unknown"
    lowered = name.lower()
    if "watch" in lowered:
        return "watch"
    if "iphone" in lowered or "phone" in lowered:
        return "phone"
    if "manual" in lowered or lowered == "health":
        return "manual"
    return re.sub(r"[^a-z0-9]+", "_", lowered).strip("_") or "unknown"


class AppleHealthExportSource(InMemorySampleSource):
    """Serve samples from an Apple Health XML or JSON export."""

    SOURCE_ID = "apple_health"

    @classmethod
    def from_path(cls, path: Path | str) -> "AppleHealthExportSource":
        """Load an export file; ``.json`` is parsed as JSON, anything else as XML."""
        target = Path(path)
        if target.suffix.lower() == ".json":
            return cls.from_json(json.loads(target.read_text(encoding="utf-8")))
        return cls.from_xml(target.read_bytes())

    # ------------------------------------------------------------------
    # XML export parsing
    # ------------------------------------------------------------------

    @classmethod
    def from_xml(cls, xml_bytes: bytes) -> "AppleHealthExportSource":
        """Parse a full Apple Health XML export (export.xml).

        Raises:
            ValueError: If the XML cannot be parsed.
        """
        try:
            root = ET.fromstring(xml_bytes)
        except ET.ParseError as exc:
            logger.error("Apple Health XML parse error: %s", exc)
            raise ValueError(f"Invalid Apple Health XML: {exc}") from exc

        source = cls()
        skipped = 0

        for record in root.iter("Record"):
            sample = _record_to_sample(
                rec_type=record.get("type", ""),
                value=record.get("value"),
                unit=record.get("unit", ""),
                start=record.get("startDate"),
                end=record.get("endDate"),
                device=record.get("sourceName"),
                created=record.get("creationDate"),
            )
            if sample is None:
                skipped += 1
                continue
            source.add(resolve_metric_type(sample.metric_type), [sample])

        for workout in root.iter("Workout"):
            sample = _workout_to_sample(
                duration=workout.get("duration"),
                duration_unit=workout.get("durationUnit", "min"),
                start=workout.get("startDate"),
                end=workout.get("endDate"),
                device=workout.get("sourceName"),
                created=workout.get("creationDate"),
            )
            if sample is None:
                skipped += 1
                continue
            source.add(MetricType.WORKOUT, [sample])

        logger.info(
            "Apple Health XML: loaded %s, skipped %d records",
            ", ".join(f"{m.value}={source.count(m)}" for m in MetricType),
            skipped,
        )
        return source

    # ------------------------------------------------------------------
    # JSON export parsing
    # ------------------------------------------------------------------

    @classmethod
    def from_json(cls, json_data: dict) -> "AppleHealthExportSource":
        """Parse a per-metric JSON export (iOS Shortcuts / Health Auto Export)."""
        source = cls()
        skipped = 0

        for metric_key, records in json_data.items():
            if not isinstance(records, list):
                continue
            try:
                metric_type = resolve_metric_type(metric_key)
            except UnsupportedMetricError:
                logger.debug("Apple Health JSON: ignoring metric key %r", metric_key)
                continue

            for record in records:
                if not isinstance(record, dict):
                    skipped += 1
                    continue
                start = record.get("startDate") or record.get("date")
                end = record.get("endDate") or start
                device = record.get("sourceName") or record.get("source")
                created = record.get("creationDate")
                if metric_type is MetricType.WORKOUT:
                    sample = _workout_to_sample(
                        duration=record.get("duration", record.get("value")),
                        duration_unit=record.get("durationUnit") or record.get("unit") or "min",
                        start=start,
                        end=end,
                        device=device,
                        created=created,
                    )
                else:
                    sample = _record_to_sample(
                        rec_type=metric_key,
                        value=record.get("value", record.get("qty")),
                        unit=record.get("unit", ""),
                        start=start,
                        end=end,
                        device=device,
                        created=created,
                        metric_type=metric_type,
                    )
                if sample is None:
                    skipped += 1
                    continue
                source.add(metric_type, [sample])

        logger.info(
            "Apple Health JSON: loaded %s, skipped %d records",
            ", ".join(f"{m.value}={source.count(m)}" for m in MetricType),
            skipped,
        )
        return source


# ---------------------------------------------------------------------------
# Record converters
# ---------------------------------------------------------------------------


def _record_to_sample(
    rec_type: str,
    value: object,
    unit: str,
    start: str | None,
    end: str | None,
    device: str | None,
    created: str | None,
    metric_type: MetricType | None = None,
) -> RawSample | None:
    """Convert one export record to a RawSample, or None if it is not usable.

    Records of unsupported types and records without timestamps are skipped
    here; value and unit problems are left to the normalizer so they show
    up as dropped-sample diagnostics.
    """
    if metric_type is None:
        try:
            metric_type = resolve_metric_type(rec_type)
        except UnsupportedMetricError:
            return None

    start_dt = parse_export_datetime(start)
    end_dt = parse_export_datetime(end) or start_dt
    if start_dt is None or end_dt is None:
        return None

    state = None
    if metric_type is MetricType.SLEEP and (
        rec_type == _HK_SLEEP_ANALYSIS or (isinstance(value, str) and value in _SLEEP_STAGE_MAP)
    ):
        # Category samples carry a stage, not a quantity; the value is the span.
        state = _SLEEP_STAGE_MAP.get(str(value), "unspecified")
        value = (end_dt - start_dt).total_seconds()
        unit = "s"

    return RawSample(
        metric_type=metric_type,
        value=value,  # type: ignore[arg-type]
        unit=unit or metric_type.canonical_unit,
        start_time=start_dt,
        end_time=end_dt,
        source_id=source_id_for_device(device),
        observed_at=parse_export_datetime(created),
        state=state,
    )


def _workout_to_sample(
    duration: object,
    duration_unit: str,
    start: str | None,
    end: str | None,
    device: str | None,
    created: str | None,
) -> RawSample | None:
    start_dt = parse_export_datetime(start)
    end_dt = parse_export_datetime(end)
    if start_dt is None or end_dt is None:
        return None
    if duration in (None, ""):
        duration = (end_dt - start_dt).total_seconds()
        duration_unit = "s"
    return RawSample(
        metric_type=MetricType.WORKOUT,
        value=duration,  # type: ignore[arg-type]
        unit=duration_unit,
        start_time=start_dt,
        end_time=end_dt,
        source_id=source_id_for_device(device),
        observed_at=parse_export_datetime(created),
    )
