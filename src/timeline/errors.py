"""Exception hierarchy for the Cadence timeline core.

Errors fall into three scopes:

    sample  — one raw sample is unusable; it is dropped and recorded, the
              batch carries on (MalformedSampleError, UnsupportedUnitError,
              UnsupportedMetricError).
    metric  — one metric type could not be fetched; the façade degrades that
              metric to absent and adds a diagnostic (AuthorizationDeniedError,
              SourceUnavailableError).
    request — nothing meaningful can be returned (InvalidRangeError,
              InvalidCalendarConfigError, InvalidFillPolicyError).

Caller cancellation is signalled with ``asyncio.CancelledError`` and is never
converted into one of these classes.
"""

from __future__ import annotations


class TimelineError(Exception):
    """Base class for every error raised by the timeline core."""


# ---------------------------------------------------------------------------
# Sample scope
# ---------------------------------------------------------------------------


class SampleError(TimelineError):
    """A single raw sample could not be normalized."""


class MalformedSampleError(SampleError):
    """Sample has inverted timestamps, a non-finite or a negative value."""


class UnsupportedUnitError(SampleError):
    """Sample unit has no conversion to the metric's canonical unit."""


class UnsupportedMetricError(SampleError):
    """Sample metric identifier (or sleep state) is not handled."""


# ---------------------------------------------------------------------------
# Metric scope
# ---------------------------------------------------------------------------


class MetricFetchError(TimelineError):
    """Fetching raw samples for one metric type failed.

    Attributes:
        metric_type: The metric whose fetch failed, when known.
    """

    def __init__(self, message: str = "", metric_type: object | None = None) -> None:
        super().__init__(message)
        self.metric_type = metric_type


class AuthorizationDeniedError(MetricFetchError):
    """The user has not granted read access for the metric type."""


class SourceUnavailableError(MetricFetchError):
    """The data source could not be reached or returned an error."""


# ---------------------------------------------------------------------------
# Request scope
# ---------------------------------------------------------------------------


class InvalidRangeError(TimelineError, ValueError):
    """Date or time range has its end before its start."""


class InvalidCalendarConfigError(TimelineError, ValueError):
    """Timezone or calendar identifier is not recognized."""


class InvalidFillPolicyError(TimelineError, ValueError):
    """Requested gap-fill policy cannot apply to the metric type."""
