"""Structured error types for agent_runtime.

Two families live here:

* Tool-level failures (``ToolErrorKind``). These never escape the dispatcher;
  they are turned into ``ToolResult.error(...)`` values and fed back to the
  model so it can self-correct.
* Run-level failures (``AgentLoopError`` and ``ProviderTransportError``).
  Only these reach the caller:

    from agent_runtime.errors import IterationLimitExceeded, ProviderAuthError

    try:
        result = await loop.run_or_raise(conversation, settings)
    except IterationLimitExceeded:
        # The model kept requesting tools
        ...
    except ProviderAuthError:
        # Bad API key, retrying won't help
        ...
"""

from __future__ import annotations

import enum
from typing import Any


class ToolErrorKind(str, enum.Enum):
    """Why a single tool call failed. Surfaced to the model, never raised."""

    VALIDATION_DENIED = "ValidationDenied"
    UNKNOWN_TOOL = "UnknownTool"
    INVALID_ARGUMENTS = "InvalidArguments"
    EXECUTION_FAILED = "ExecutionFailed"


class AgentRuntimeError(Exception):
    """Base for all agent_runtime errors."""


# ---------------------------------------------------------------------------
# Errors raised inside tool handlers / registry lookups
# ---------------------------------------------------------------------------


class UnknownToolError(AgentRuntimeError, KeyError):
    """Registry lookup for a name that was never registered."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Unknown tool: {self.name}"


class ToolDenied(AgentRuntimeError):
    """Raised by a handler when PathGuard refuses the operation."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ToolArgumentError(AgentRuntimeError, ValueError):
    """Handler-level argument problem the JSON schema could not express."""


class ConversationProtocolError(AgentRuntimeError):
    """A tool-result message references a call the previous assistant message never made."""


class RegistryFrozenError(AgentRuntimeError):
    """Attempt to register a tool after the registry snapshot was taken."""


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------


class ProviderError(AgentRuntimeError):
    """Base for everything that goes wrong talking to a provider."""

    retryable: bool = False

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class ProviderTransportError(ProviderError):
    """Network/auth/rate-limit failure. Unclassified transport errors land here."""


class ProviderRateLimitError(ProviderTransportError):
    """Transient rate limit (429). Retry with backoff."""

    retryable = True


class ProviderQuotaExhaustedError(ProviderTransportError):
    """Permanent quota/billing exhaustion. Don't retry."""


class ProviderAuthError(ProviderTransportError):
    """Authentication failed (401/403). API key invalid, missing or forbidden."""


class ProviderTransientError(ProviderTransportError):
    """Server error (500/502/503), timeout, connection reset. Retry."""

    retryable = True


class ProviderProtocolError(ProviderError):
    """Provider answered, but with a payload the adapter cannot interpret."""


# ---------------------------------------------------------------------------
# Run-level failures
# ---------------------------------------------------------------------------


class FailureKind(str, enum.Enum):
    ITERATION_LIMIT_EXCEEDED = "IterationLimitExceeded"
    RECURSION_LIMIT_EXCEEDED = "RecursionLimitExceeded"
    CANCELLED = "Cancelled"
    PROVIDER_FAILURE = "ProviderFailure"


class AgentLoopError(AgentRuntimeError):
    """A run ended in the FAILED state."""

    kind: FailureKind = FailureKind.PROVIDER_FAILURE

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class IterationLimitExceeded(AgentLoopError):
    kind = FailureKind.ITERATION_LIMIT_EXCEEDED


class RecursionLimitExceeded(AgentLoopError):
    kind = FailureKind.RECURSION_LIMIT_EXCEEDED


class RunCancelled(AgentLoopError):
    kind = FailureKind.CANCELLED


class ProviderFailure(AgentLoopError):
    kind = FailureKind.PROVIDER_FAILURE


_FAILURE_TYPES: dict[FailureKind, type[AgentLoopError]] = {
    FailureKind.ITERATION_LIMIT_EXCEEDED: IterationLimitExceeded,
    FailureKind.RECURSION_LIMIT_EXCEEDED: RecursionLimitExceeded,
    FailureKind.CANCELLED: RunCancelled,
    FailureKind.PROVIDER_FAILURE: ProviderFailure,
}


def failure_error(kind: FailureKind, message: str, cause: Exception | None = None) -> AgentLoopError:
    """Build the AgentLoopError subclass matching *kind*."""
    return _FAILURE_TYPES[kind](message, cause=cause)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


# Patterns that indicate permanent quota exhaustion (not transient rate limit).
_QUOTA_PATTERNS = [
    "quota",
    "billing",
    "insufficient",
    "exceeded your current",
    "plan and billing",
    "account deactivated",
    "account suspended",
]


def _litellm_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional litellm exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def _classify_status(status: int, error_str: str) -> type[ProviderError] | None:
    if status in (401, 403):
        return ProviderAuthError
    if status == 429:
        if any(p in error_str for p in _QUOTA_PATTERNS):
            return ProviderQuotaExhaustedError
        return ProviderRateLimitError
    if status == 402:
        return ProviderQuotaExhaustedError
    if status >= 500 or status == 408:
        return ProviderTransientError
    if 400 <= status < 500:
        return ProviderProtocolError
    return None


def classify_error(error: Exception) -> type[ProviderError]:
    """Classify any exception raised by a transport into a ProviderError subtype.

    Uses litellm exception types and httpx status codes when available,
    falls back to string matching.
    """
    error_str = str(error).lower()

    import litellm as _lt

    auth_types = _litellm_error_types(_lt, ("AuthenticationError", "PermissionDeniedError"))
    if auth_types and isinstance(error, auth_types):
        return ProviderAuthError

    budget_types = _litellm_error_types(_lt, ("BudgetExceededError",))
    if budget_types and isinstance(error, budget_types):
        return ProviderQuotaExhaustedError

    rate_types = _litellm_error_types(_lt, ("RateLimitError",))
    if rate_types and isinstance(error, rate_types):
        if any(p in error_str for p in _QUOTA_PATTERNS):
            return ProviderQuotaExhaustedError
        return ProviderRateLimitError

    transient_types = _litellm_error_types(
        _lt,
        (
            "InternalServerError",
            "ServiceUnavailableError",
            "APIConnectionError",
            "BadGatewayError",
            "Timeout",
        ),
    )
    if transient_types and isinstance(error, transient_types):
        return ProviderTransientError

    bad_request_types = _litellm_error_types(_lt, ("BadRequestError", "NotFoundError"))
    if bad_request_types and isinstance(error, bad_request_types):
        return ProviderProtocolError

    import httpx

    if isinstance(error, httpx.HTTPStatusError):
        by_status = _classify_status(error.response.status_code, error_str)
        if by_status is not None:
            return by_status
    if isinstance(error, httpx.TransportError):
        return ProviderTransientError

    # Fallback: string pattern matching
    if any(p in error_str for p in _QUOTA_PATTERNS):
        return ProviderQuotaExhaustedError
    if "401" in error_str or "authentication" in error_str or "unauthorized" in error_str:
        return ProviderAuthError
    if "403" in error_str or "forbidden" in error_str:
        return ProviderAuthError
    if ("rate" in error_str and "limit" in error_str) or "429" in error_str or "too many requests" in error_str:
        return ProviderRateLimitError
    if any(p in error_str for p in ("timeout", "timed out", "connection", "500", "502", "503", "server error")):
        return ProviderTransientError

    return ProviderTransportError


def wrap_error(error: Exception) -> ProviderError:
    """Wrap an exception in the appropriate ProviderError subclass.

    If the error is already a ProviderError, returns it unchanged.
    """
    if isinstance(error, ProviderError):
        return error
    cls = classify_error(error)
    return cls(str(error), original=error)
