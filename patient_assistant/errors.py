"""Error taxonomy for the chat pipeline.

Only ``AuthError`` is allowed to abort a request.  Upstream failures are
degraded to an apologetic answer by the pipeline, while parse, validation
and dispatch failures are folded into regular responses / envelopes.
"""

from __future__ import annotations


class AssistantError(Exception):
    """Base class for every error raised by the assistant core."""


class AuthError(AssistantError):
    """Missing, invalid or wrong-role bearer token."""


class UpstreamError(AssistantError):
    """The language model (or another upstream) failed in a non-retryable way."""


class TransientUpstreamError(UpstreamError):
    """Timeout or transport failure that persisted after one retry."""


class ParseError(AssistantError):
    """Model output could not be turned into an action after every fallback tier."""


class ValidationError(AssistantError):
    """Action parameters do not satisfy the action's schema."""


class DispatchError(AssistantError):
    """A capability rejected the request (e.g. ownership violation)."""
