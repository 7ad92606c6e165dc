"""Load, validate, and hot-reload the Cadence pipeline configuration.

The config lives in ``timeline_config.yaml`` alongside this module.  It is
loaded once and cached.  Call ``reload_pipeline_config()`` to re-read from
disk; no restart required.

Usage::

    from src.timeline.config_loader import get_pipeline_config

    config = get_pipeline_config()
    config.source_priority("watch")          # 2
    config.query.max_concurrent_fetches      # 4
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from src.timeline.base import FillPolicy

logger = logging.getLogger("cadence.timeline.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "timeline_config.yaml"

_TIE_BREAKS = ("most_recent", "earliest")


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class CalendarSection:
    timezone: str = "UTC"
    calendar: str = "gregorian"


@dataclass
class QuerySection:
    max_concurrent_fetches: int = 4


@dataclass
class ReconciliationSection:
    tie_break: str = "most_recent"
    heart_rate_match_window_seconds: float = 30.0


@dataclass
class AggregationSection:
    heart_rate_max_sample_weight_seconds: float = 600.0
    asleep_states: frozenset[str] = frozenset(
        {"asleep", "core", "light", "deep", "rem", "unspecified"}
    )


@dataclass
class PipelineConfig:
    """Complete, validated pipeline configuration.

    Attributes:
        version:           Config schema version string.
        calendar:          Default timezone / calendar for bucketing.
        query:             Façade fetch settings.
        fill_policy:       Default trend gap-fill policy.
        source_priorities: source_id → conflict rank (higher wins).
        reconciliation:    Tie-break and heart-rate matching settings.
        aggregation:       Daily reduction settings.
    """

    version: str = "1.0"
    calendar: CalendarSection = field(default_factory=CalendarSection)
    query: QuerySection = field(default_factory=QuerySection)
    fill_policy: FillPolicy = FillPolicy.NONE
    source_priorities: dict[str, int] = field(default_factory=dict)
    reconciliation: ReconciliationSection = field(default_factory=ReconciliationSection)
    aggregation: AggregationSection = field(default_factory=AggregationSection)
    _raw: dict = field(default_factory=dict, repr=False)

    def source_priority(self, source_id: str) -> int:
        """Return the configured rank for a source, 0 if not configured."""
        return self.source_priorities.get(source_id, 0)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when timeline_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> PipelineConfig:
    """Validate the raw YAML dict and construct a PipelineConfig.

    All problems are collected and reported together.

    Raises:
        ConfigValidationError: If any field is missing or invalid.
    """
    errors: list[str] = []

    if not isinstance(raw, dict):
        raise ConfigValidationError("timeline_config.yaml must contain a mapping")

    version = str(raw.get("version", "1.0"))

    # ── Calendar ──
    cal_raw = raw.get("calendar") or {}
    calendar = CalendarSection(
        timezone=str(cal_raw.get("timezone", "UTC")),
        calendar=str(cal_raw.get("calendar", "gregorian")),
    )

    # ── Query ──
    q_raw = raw.get("query") or {}
    try:
        max_concurrent = int(q_raw.get("max_concurrent_fetches", 4))
    except (TypeError, ValueError):
        errors.append(
            f"query.max_concurrent_fetches must be an integer, "
            f"got {q_raw.get('max_concurrent_fetches')!r}"
        )
        max_concurrent = 4
    if max_concurrent < 1:
        errors.append(f"query.max_concurrent_fetches must be >= 1, got {max_concurrent}")
    query = QuerySection(max_concurrent_fetches=max_concurrent)

    # ── Trend ──
    trend_raw = raw.get("trend") or {}
    policy_raw = trend_raw.get("fill_policy", "none")
    try:
        fill_policy = FillPolicy(str(policy_raw).lower())
    except ValueError:
        errors.append(
            f"trend.fill_policy must be one of {[p.value for p in FillPolicy]}, "
            f"got {policy_raw!r}"
        )
        fill_policy = FillPolicy.NONE

    # ── Source priorities ──
    source_priorities: dict[str, int] = {}
    for source, rank in (raw.get("source_priorities") or {}).items():
        try:
            source_priorities[str(source)] = int(rank)
        except (TypeError, ValueError):
            errors.append(f"source_priorities.{source} must be an integer, got {rank!r}")

    # ── Reconciliation ──
    rec_raw = raw.get("reconciliation") or {}
    tie_break = str(rec_raw.get("tie_break", "most_recent")).lower()
    if tie_break not in _TIE_BREAKS:
        errors.append(
            f"reconciliation.tie_break must be one of {list(_TIE_BREAKS)}, got {tie_break!r}"
        )
    try:
        hr_window = float(rec_raw.get("heart_rate_match_window_seconds", 30))
    except (TypeError, ValueError):
        errors.append("reconciliation.heart_rate_match_window_seconds must be a number")
        hr_window = 30.0
    if hr_window < 0:
        errors.append(
            f"reconciliation.heart_rate_match_window_seconds must be >= 0, got {hr_window}"
        )
    reconciliation = ReconciliationSection(
        tie_break=tie_break,
        heart_rate_match_window_seconds=hr_window,
    )

    # ── Aggregation ──
    agg_raw = raw.get("aggregation") or {}
    try:
        weight_cap = float(agg_raw.get("heart_rate_max_sample_weight_seconds", 600))
    except (TypeError, ValueError):
        errors.append("aggregation.heart_rate_max_sample_weight_seconds must be a number")
        weight_cap = 600.0
    if weight_cap <= 0:
        errors.append(
            f"aggregation.heart_rate_max_sample_weight_seconds must be > 0, got {weight_cap}"
        )
    states_raw = agg_raw.get("asleep_states")
    if states_raw is None:
        aggregation = AggregationSection(heart_rate_max_sample_weight_seconds=weight_cap)
    elif not isinstance(states_raw, list) or not states_raw:
        errors.append("aggregation.asleep_states must be a non-empty list")
        aggregation = AggregationSection(heart_rate_max_sample_weight_seconds=weight_cap)
    else:
        aggregation = AggregationSection(
            heart_rate_max_sample_weight_seconds=weight_cap,
            asleep_states=frozenset(str(s).lower() for s in states_raw),
        )

    if errors:
        raise ConfigValidationError(
            f"timeline_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return PipelineConfig(
        version=version,
        calendar=calendar,
        query=query,
        fill_policy=fill_policy,
        source_priorities=source_priorities,
        reconciliation=reconciliation,
        aggregation=aggregation,
        _raw=raw,
    )


def load_pipeline_config(path: Path | str | None = None) -> PipelineConfig:
    """Load and validate the pipeline config from disk.

    Args:
        path: Override path to YAML. Uses the bundled timeline_config.yaml by default.
    """
    target = Path(path) if path else _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded pipeline config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: PipelineConfig | None = None
_config_lock = threading.Lock()


def get_pipeline_config() -> PipelineConfig:
    """Return the global PipelineConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_pipeline_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_pipeline_config()
    return _config


def reload_pipeline_config(path: Path | str | None = None) -> PipelineConfig:
    """Reload the config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_pipeline_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded pipeline config: %s → %s", old_version, new_config.version)
    return new_config
