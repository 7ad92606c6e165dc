"""Sample sources for the Cadence timeline core.

Each source implements the SampleSource ABC and answers per-metric range
queries with RawSample instances.

Available sources:
    InMemorySampleSource    — samples already held in memory
    AppleHealthExportSource — Apple Health XML / JSON export files
"""

from src.timeline.sources.apple_health import AppleHealthExportSource
from src.timeline.sources.memory import InMemorySampleSource

__all__ = [
    "AppleHealthExportSource",
    "InMemorySampleSource",
]
