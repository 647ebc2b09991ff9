"""Failure taxonomy for remote image-model calls.

``classify_error`` maps whatever the model client raised onto a fixed set of
kinds. The first matching rule wins, in this order:

1. rate / quota signals (``rateLimited`` when a retry delay can be extracted,
   otherwise ``quotaExceeded``)
2. auth signals
3. network signals
4. server signals
5. ``unknownError``

``noImageGenerated`` never comes from the client; it is raised locally when a
call returns zero images for a target page.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum

import httpx
from google.genai import errors as genai_errors


class ErrorKind(str, Enum):
    QUOTA_EXCEEDED = "quotaExceeded"
    RATE_LIMITED = "rateLimited"
    INVALID_API_KEY = "invalidApiKey"
    NETWORK_ERROR = "networkError"
    SERVER_ERROR = "serverError"
    NO_IMAGE_GENERATED = "noImageGenerated"
    UNKNOWN_ERROR = "unknownError"
    INSUFFICIENT_WINDOW = "insufficientWindow"


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    retry_after_seconds: int | None = None


class NoImageGeneratedError(RuntimeError):
    """The model answered but produced no image for a target page."""

    def __init__(self, ordinal: int) -> None:
        super().__init__(f"No image result for page {ordinal + 1}")
        self.ordinal = ordinal


class RequestNotAttemptedError(RuntimeError):
    """A request could not be sent at all (missing credential, client setup).

    Unlike per-page failures this aborts the whole run.
    """


class RunActiveError(RuntimeError):
    """A command was rejected because a run (or a page rerun) is in progress."""


class InvalidTransitionError(ValueError):
    """A page status change outside the allowed state machine was requested."""


class PageNotFoundError(KeyError):
    """No page exists at the requested ordinal."""


_RATE_PATTERNS = ("429", "resource_exhausted", "quota", "rate limit", "too many requests")
_AUTH_PATTERNS = (
    "invalid_api_key",
    "api_key_invalid",
    "api key not valid",
    "api key missing",
    "unauthenticated",
    "permission_denied",
    "401",
    "403",
)
_NETWORK_PATTERNS = (
    "fetch failed",
    "network",
    "econnreset",
    "econnrefused",
    "etimedout",
    "connection",
    "timed out",
)
_SERVER_PATTERNS = (
    "500",
    "502",
    "503",
    "504",
    "internal",
    "unavailable",
    "overloaded",
    "server error",
)

_RETRY_PATTERNS = (
    re.compile(r"retry in\s+(\d+(?:\.\d+)?)\s*(ms)?", re.IGNORECASE),
    re.compile(r'"?retryDelay"?\s*[:=]\s*"?(\d+(?:\.\d+)?)\s*(ms)?', re.IGNORECASE),
    re.compile(r"retry[- ]after\s*[:=]?\s*(\d+(?:\.\d+)?)\s*(ms)?", re.IGNORECASE),
)


def extract_retry_after(message: str) -> int | None:
    """Pull a retry delay in whole seconds out of an error message, if any.

    Bare numbers are seconds; an ``ms`` suffix is scaled and rounded up.
    """
    for pattern in _RETRY_PATTERNS:
        m = pattern.search(message)
        if m:
            seconds = float(m.group(1))
            if m.group(2):
                seconds /= 1000
            return max(0, math.ceil(seconds))
    return None


def _contains(haystack: str, needles: tuple[str, ...]) -> bool:
    return any(n in haystack for n in needles)


def classify_error(error: BaseException | str) -> ClassifiedError:
    """Map a failure from the model client onto an ErrorKind."""
    if isinstance(error, NoImageGeneratedError):
        return ClassifiedError(ErrorKind.NO_IMAGE_GENERATED)

    message = str(error)
    lowered = message.lower()
    code = getattr(error, "code", None) if isinstance(error, genai_errors.APIError) else None

    # 1. rate / quota
    if code == 429 or _contains(lowered, _RATE_PATTERNS):
        retry_after = extract_retry_after(message)
        if retry_after is not None:
            return ClassifiedError(ErrorKind.RATE_LIMITED, retry_after)
        return ClassifiedError(ErrorKind.QUOTA_EXCEEDED)

    # 2. auth
    if code in (401, 403) or _contains(lowered, _AUTH_PATTERNS):
        return ClassifiedError(ErrorKind.INVALID_API_KEY)

    # 3. network
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)) or _contains(
        lowered, _NETWORK_PATTERNS
    ):
        return ClassifiedError(ErrorKind.NETWORK_ERROR)

    # 4. server
    if (isinstance(code, int) and code >= 500) or _contains(lowered, _SERVER_PATTERNS):
        return ClassifiedError(ErrorKind.SERVER_ERROR)

    return ClassifiedError(ErrorKind.UNKNOWN_ERROR)
