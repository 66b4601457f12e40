"""Error taxonomy shared by providers, participants and the coordinator."""

from enum import Enum


class ErrorCategory(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    PARSE_ERROR = "parse_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    UNKNOWN = "unknown"


RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.NETWORK,
    ErrorCategory.TIMEOUT,
    ErrorCategory.RATE_LIMIT,
    ErrorCategory.SERVICE_UNAVAILABLE,
})

# checked in order; first hit wins
_CATEGORY_PATTERNS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.TIMEOUT, ("timed out", "timeout")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "rate_limit", "429", "too many requests")),
    (ErrorCategory.AUTHENTICATION, ("401", "403", "unauthorized", "forbidden", "authentication", "api key")),
    (ErrorCategory.SERVICE_UNAVAILABLE, ("502", "503", "504", "service unavailable", "bad gateway", "overloaded")),
    (ErrorCategory.NETWORK, ("network", "connection", "connect error", "dns", "econnreset", "econnrefused")),
    (ErrorCategory.PARSE_ERROR, ("parse", "json", "malformed", "empty response")),
]


def categorize_error(message: str) -> ErrorCategory:
    """Guess the category of an error from its message."""
    lower = message.lower()
    for category, patterns in _CATEGORY_PATTERNS:
        if any(p in lower for p in patterns):
            return category
    return ErrorCategory.UNKNOWN


class ConsensusCancelled(Exception):
    """Raised when a run is cancelled through its CancellationToken."""


class SourceValidationError(Exception):
    """Raised when no participant could extract facts from the source text."""
