"""Exception hierarchy and error classification for the Monarch Money client."""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class CauseCategory(str, Enum):
    """Discriminator used to decide retryability without string matching."""

    AUTH = "auth"
    VALIDATION = "validation"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    DEPENDENCY_DOWN = "dependency_down"
    API = "api"
    EMPTY_RESPONSE = "empty_response"


RETRYABLE_CATEGORIES = frozenset(
    {CauseCategory.NETWORK, CauseCategory.RATE_LIMIT, CauseCategory.DEPENDENCY_DOWN}
)


class MonarchError(Exception):
    """Base exception for all Monarch Money client errors."""

    cause_category: CauseCategory = CauseCategory.API

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.cause = cause
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.cause_category in RETRYABLE_CATEGORIES


class AuthError(MonarchError):
    """Missing, expired or rejected credential, or MFA required."""

    cause_category = CauseCategory.AUTH


class ValidationError(MonarchError):
    """Caller supplied malformed input before any network call."""

    cause_category = CauseCategory.VALIDATION


class NetworkError(MonarchError):
    """Connection failure, timeout or aborted request."""

    cause_category = CauseCategory.NETWORK


class RateLimitError(MonarchError):
    """Upstream answered HTTP 429 or reported throttling."""

    cause_category = CauseCategory.RATE_LIMIT


class DependencyDownError(MonarchError):
    """Upstream answered with a 5xx status."""

    cause_category = CauseCategory.DEPENDENCY_DOWN


class APIError(MonarchError):
    """GraphQL-level or client-side (4xx) error reported by the API."""

    cause_category = CauseCategory.API


class EmptyResponseError(MonarchError):
    """HTTP 200 with neither data nor errors, usually a schema mismatch."""

    cause_category = CauseCategory.EMPTY_RESPONSE


_AUTH_PATTERNS = re.compile(
    r"unauthori[sz]ed|unauthenticated|not authenticated|authentication required|"
    r"token (?:has )?expired|invalid token|session expired|permission denied",
    re.IGNORECASE,
)
_RATE_LIMIT_PATTERNS = re.compile(
    r"rate limit|too many requests|throttl", re.IGNORECASE
)
_FEATURE_UNAVAILABLE_PATTERNS = re.compile(
    r"not enabled|not available|not supported|unsupported|"
    r"does not have access|feature is disabled",
    re.IGNORECASE,
)


def classify_http_error(status_code: int, body: str = "") -> MonarchError:
    """Map a non-2xx HTTP response from the GraphQL endpoint to an error.

    Args:
        status_code: HTTP status code of the response
        body: Raw response text, surfaced for client errors

    Returns:
        Classified error instance (not raised)
    """
    if status_code in (401, 403):
        return AuthError(
            f"Session invalid or expired (HTTP {status_code})", status_code=status_code
        )
    if status_code == 429:
        return RateLimitError("Rate limit exceeded (HTTP 429)", status_code=status_code)
    if status_code >= 500:
        return DependencyDownError(
            f"Monarch API unavailable (HTTP {status_code})", status_code=status_code
        )
    return APIError(body or f"HTTP {status_code}", status_code=status_code)


def classify_graphql_error(message: str) -> MonarchError:
    """Classify the first message of a GraphQL ``errors`` array."""
    if _AUTH_PATTERNS.search(message):
        return AuthError(message)
    if _RATE_LIMIT_PATTERNS.search(message):
        return RateLimitError(message)
    return APIError(message)


def classify_network_error(exc: httpx.HTTPError) -> NetworkError:
    """Wrap an httpx transport failure as a NetworkError."""
    if isinstance(exc, httpx.TimeoutException):
        return NetworkError("Request aborted/timeout", cause=exc)
    return NetworkError(str(exc) or type(exc).__name__, cause=exc)


def extract_data(payload: Any) -> Dict[str, Any]:
    """Return the ``data`` member of a decoded GraphQL response.

    Raises:
        MonarchError: Classified from the first GraphQL error
        EmptyResponseError: If there is no data and no errors
        APIError: If the payload is not a JSON object
    """
    if not isinstance(payload, dict):
        raise APIError(f"Unexpected GraphQL response type: {type(payload).__name__}")

    errors = payload.get("errors")
    if errors and not isinstance(errors, list):
        raise APIError(str(errors))
    if errors:
        first = errors[0]
        message = first.get("message") if isinstance(first, dict) else str(first)
        raise classify_graphql_error(message or "Unknown GraphQL error")

    data = payload.get("data")
    if not data:
        raise EmptyResponseError("Empty GraphQL response")
    return data


def is_feature_unavailable(error: MonarchError) -> bool:
    """True if the error means an optional feature is off for this account."""
    if isinstance(error, EmptyResponseError):
        return True
    if isinstance(error, APIError):
        return bool(_FEATURE_UNAVAILABLE_PATTERNS.search(error.message))
    return False
