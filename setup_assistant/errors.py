"""
errors.py — Failure taxonomy for the response pipeline.

Only MalformedFeedbackRequest ever reaches an HTTP caller (as 422 via the
ValueError handler in main.py). Every other class is caught inside the
pipeline and turned into a degraded answer or a log line.
"""


class AssistantError(Exception):
    """Base class for all pipeline errors."""


class CacheLookupFailure(AssistantError):
    """Learned-response storage unavailable — the router fails open to the next tier."""


class ExternalCallError(AssistantError):
    """The external model produced no usable answer."""


class ExternalCallTimeout(ExternalCallError):
    """The external call exceeded its deadline and was cancelled."""


class ExternalCallRejected(ExternalCallError):
    """Non-2xx response, transport failure, or malformed payload."""


class MalformedFeedbackRequest(AssistantError, ValueError):
    """Feedback payload is internally inconsistent. Nothing is mutated."""


class PersistenceWriteFailure(AssistantError):
    """An interaction could not be written. Logged, never surfaced."""
