"""Cadence command-line entry point.

Loads an Apple Health export and prints a daily summary or a trend series
as JSON.

Run locally:
    python -m src.main summary --export export.xml --date 2026-02-23 --timezone Europe/Berlin
    python -m src.main summaries --export export.xml --start 2026-02-01 --end 2026-02-07
    python -m src.main trend --export export.json --metric steps \\
        --start 2026-02-01 --end 2026-02-28 --fill carry_forward --rolling 7
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import date

from src.config import Settings, get_settings
from src.timeline.base import DateRange, FillPolicy, MetricType
from src.timeline.bucketer import CalendarConfig
from src.timeline.config_loader import load_pipeline_config
from src.timeline.errors import TimelineError
from src.timeline.query import TimelineService
from src.timeline.sources import AppleHealthExportSource

logger = logging.getLogger("cadence")


# ---------- Logging ----------

def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


# ---------- Argument parsing ----------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cadence",
        description="Reconcile health samples and print summaries or trends as JSON.",
    )
    parser.add_argument("--export", required=True, help="Apple Health export (.xml or .json)")
    parser.add_argument("--timezone", help="IANA timezone for day bucketing")
    parser.add_argument("--config", help="Path to an alternative timeline_config.yaml")

    sub = parser.add_subparsers(dest="command", required=True)

    summary = sub.add_parser("summary", help="Summary for one day")
    summary.add_argument("--date", required=True, type=date.fromisoformat)

    summaries = sub.add_parser("summaries", help="One summary per day of a range")
    summaries.add_argument("--start", required=True, type=date.fromisoformat)
    summaries.add_argument("--end", required=True, type=date.fromisoformat)

    trend = sub.add_parser("trend", help="Trend series for one metric")
    trend.add_argument("--metric", required=True, choices=[m.value for m in MetricType])
    trend.add_argument("--start", required=True, type=date.fromisoformat)
    trend.add_argument("--end", required=True, type=date.fromisoformat)
    trend.add_argument("--fill", choices=[p.value for p in FillPolicy], default=None)
    trend.add_argument(
        "--rolling", type=int, default=None, metavar="DAYS",
        help="Trailing mean over this many days instead of daily values",
    )

    return parser


def build_service(args: argparse.Namespace, settings: Settings) -> TimelineService:
    config_path = args.config or settings.pipeline_config_path
    config = load_pipeline_config(config_path) if config_path else None
    source = AppleHealthExportSource.from_path(args.export)

    timezone_name = args.timezone or settings.default_timezone
    calendar = None
    if timezone_name:
        base_calendar = config.calendar.calendar if config else "gregorian"
        calendar = CalendarConfig(timezone=timezone_name, calendar=base_calendar)

    return TimelineService(
        source,
        config=config,
        calendar=calendar,
        max_concurrent=settings.max_concurrent_fetches,
    )


async def run(args: argparse.Namespace, service: TimelineService) -> dict:
    if args.command == "summary":
        return (await service.compute_summary(args.date)).to_dict()
    if args.command == "summaries":
        response = await service.compute_summaries(DateRange(args.start, args.end))
        return response.to_dict()
    response = await service.compute_trend(
        MetricType(args.metric),
        DateRange(args.start, args.end),
        args.fill,
        rolling_window=args.rolling,
    )
    return response.to_dict()


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    args = build_parser().parse_args(argv)

    logger.info("Starting %s v%s [%s]", settings.app_name, settings.app_version, settings.environment)
    try:
        service = build_service(args, settings)
        payload = asyncio.run(run(args, service))
    except (TimelineError, ValueError, OSError) as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1

    json.dump(payload, sys.stdout, indent=2)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
