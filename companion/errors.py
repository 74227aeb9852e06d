"""Exception hierarchy for the Companion Cube engine.

Collector and summarizer failures are recovered inside a cycle (an AFK
classification and a fallback summary respectively). Validation errors are
raised back to whoever asked for the change. A concurrency guard violation
means the scheduler is broken and is never handled.
"""


class CompanionError(Exception):
    """Base class for all engine errors."""


class CollectorError(CompanionError):
    """Base class for activity collection failures."""


class CollectorUnavailable(CollectorError):
    """The activity tracker could not be reached or did not answer."""


class CollectorEmpty(CollectorError):
    """The activity tracker answered but had no events for the timeframe."""


class DiscoveryError(CompanionError):
    """Service metadata (e.g. bucket identifiers) could not be discovered."""


class SummarizerUnavailable(CompanionError):
    """The language model timed out, was unreachable or replied with garbage."""


class ValidationError(CompanionError, ValueError):
    """A category update was rejected; the store was not modified."""


class ConcurrencyGuardViolation(CompanionError, RuntimeError):
    """A second cycle was started while another one was in flight."""
