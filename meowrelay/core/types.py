"""
Shared type definitions for the meowrelay.core package.

Houses the exception hierarchy and the fixed completion sampling
parameters used across the router, the command dispatcher and the
collaborator adapters.
"""

from dataclasses import dataclass


class MeowRelayError(Exception):
    """Base class for all errors raised by meowrelay."""


class TransportError(MeowRelayError):
    """The messaging-network collaborator failed to perform an operation."""


class InvalidIdentityError(TransportError):
    """An operator-supplied chat or user identity could not be parsed."""


class CompletionError(MeowRelayError):
    """The completion service failed or returned nothing usable."""


class RateLimitError(CompletionError):
    """The provider returned a rate-limit (HTTP 429) error."""


class ContextTooLargeError(CompletionError):
    """The request payload or token count exceeds backend limits."""


class CommandUsageError(MeowRelayError):
    """An operator command was invoked with invalid arguments.

    The message is the usage line shown to the operator.
    """


class DiagnosticError(MeowRelayError):
    """A diagnostic subprocess is missing or exited unsuccessfully."""


_CONTEXT_TOO_LARGE_PHRASES = (
    "context length", "too many tokens", "maximum context",
    "token limit", "content too large", "payload too large",
)


def classify_api_error(exc: Exception) -> type[CompletionError]:
    """Classify a provider exception as a normalized completion error type.

    Returns :class:`RateLimitError` or :class:`ContextTooLargeError` if
    the exception matches the corresponding pattern, otherwise the generic
    :class:`CompletionError`.
    """
    status = getattr(exc, "status_code", None)

    if (
        status == 429
        or "429" in type(exc).__name__
        or (hasattr(exc, "code") and str(getattr(exc, "code", "")) == "429")
    ):
        return RateLimitError

    if status == 413:
        return ContextTooLargeError
    if status == 400:
        msg = str(exc).lower()
        if any(phrase in msg for phrase in _CONTEXT_TOO_LARGE_PHRASES):
            return ContextTooLargeError

    return CompletionError


@dataclass(frozen=True)
class SamplingParams:
    """Sampling parameters sent with every completion request."""
    temperature: float = 0.9
    top_p: float = 0.3
    frequency_penalty: float = 0.8
    presence_penalty: float = 0.0
    max_tokens: int = 512
    stop: tuple[str, ...] = ("You:",)


DEFAULT_SAMPLING = SamplingParams()
