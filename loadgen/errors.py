"""
Error taxonomy for the load-generation engine.

Only :class:`ConfigurationError` is ever raised out of the engine: it
means the scenario is invalid and the run never starts.  Every other
failure happens *inside* a running iteration and is absorbed into the
metrics instead of propagating:

- :class:`TransportError` - the request never produced an HTTP response
  (timeout, connection refused, DNS failure).  Recorded as a failed
  sample with status ``0``.
- :class:`CheckFailure` - a check predicate raised while evaluating a
  response.  Recorded as a failed check with an error note.
- :class:`SchedulingOverflow` - the arrival-rate pool had no free
  executor when an iteration was due.  Recorded as a dropped iteration.

Threshold violations are not exceptions at all; they surface as failed
entries in the run's :class:`~loadgen.models.Verdict`.
"""

from __future__ import annotations


class LoadgenError(Exception):
    """Base class for every engine error."""


class ConfigurationError(LoadgenError):
    """Raised when a scenario or payload template is invalid."""


class TransportError(LoadgenError):
    """A request failed below HTTP (no status code was received)."""

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind

    def describe(self) -> str:
        return f"{self.kind}: {self}"


class CheckFailure(LoadgenError):
    """A check predicate raised instead of returning a boolean."""


class SchedulingOverflow(LoadgenError):
    """The executor pool was exhausted when an iteration was due."""


class AggregatorFrozen(LoadgenError):
    """A sample arrived after the aggregator stopped accepting appends."""
