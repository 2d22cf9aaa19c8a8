"""
Utility functions for the API client.

This module provides helper functions that can be used independently
of the client classes: backoff computation, retry, error classification
and header parsing.
"""

import asyncio
import logging
import random
import re
import time
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

import httpx
from pydantic import BaseModel

from .models import ErrorClassification, ErrorKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Values at or above this are epoch timestamps, anything smaller is seconds from now
EPOCH_THRESHOLD = 1_000_000_000

# Regex to extract numeric values from headers
HEADER_VALUE_PATTERN = re.compile(r"(\d+(?:\.\d+)?)")

RATE_LIMIT_PHRASES = [
    "rate limit",
    "ratelimit",
    "too many requests",
    "quota exceeded",
    "retry after",
    "throttl",
]

LINK_PATTERN = re.compile(r'<([^>]*)>\s*;\s*rel="?([^",;]+)"?')

# Order matters: specific shapes before the generic id replacement
_ENDPOINT_PATTERNS = [
    (re.compile(r"/repos/[^/]+/[^/]+"), "/repos/{owner}/{repo}"),
    (re.compile(r"/users/[^/]+"), "/users/{username}"),
    (re.compile(r"/orgs/[^/]+"), "/orgs/{org}"),
    (re.compile(r"/[a-f0-9]{40}(?=/|$)"), "/{sha}"),
    (re.compile(r"/\d+(?=/|$)"), "/{id}"),
]


async def sleep(seconds: float) -> None:
    """Sleep without blocking the event loop; non-positive values return at once."""
    if seconds > 0:
        await asyncio.sleep(seconds)


def exponential_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    factor: float = 2.0,
    jitter: float = 0.1,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds before retry number ``attempt`` (0-based).

    The delay grows as ``base_delay * factor ** attempt``, gets up to
    ``jitter`` (as a fraction) added on top, and never exceeds ``max_delay``.
    """
    delay = min(base_delay * (factor ** attempt), max_delay)
    _rng = rng or random
    delay += delay * jitter * _rng.random()
    return min(delay, max_delay)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    factor: float = 2.0,
    should_retry: Optional[Callable[[Exception, int], bool]] = None,
) -> T:
    """
    Call ``func`` until it succeeds or ``retries`` retries are used up.

    Args:
        func: Coroutine function taking no arguments
        retries: Number of retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Upper bound for any single delay
        factor: Growth factor per retry
        should_retry: Called with (error, attempt); return False to stop early.
            Defaults to the retryable flag of ``classify_error``.

    Returns:
        Result of ``func``

    Raises:
        The last exception once retries are exhausted or ``should_retry`` says stop.
    """
    if should_retry is None:
        should_retry = lambda error, attempt: classify_error(error).retryable  # noqa: E731

    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if attempt >= retries or not should_retry(e, attempt):
                raise
            delay = exponential_backoff(attempt, base_delay, max_delay, factor)
            logger.debug(f"Attempt {attempt + 1} failed ({e}), retrying in {delay:.2f} seconds")
            await asyncio.sleep(delay)
            attempt += 1


def _to_number(value: Any) -> Optional[float]:
    if value is None:
        return None
    match = HEADER_VALUE_PATTERN.search(str(value))
    if not match:
        return None
    return float(match.group(1))


def _parse_retry_after(value: Optional[str], now: float) -> Optional[float]:
    if value is None:
        return None
    value = str(value).strip()
    if value.isdigit():
        return float(value)
    try:
        return max(0.0, parsedate_to_datetime(value).timestamp() - now)
    except (TypeError, ValueError):
        return None


def parse_rate_limit_headers(
    headers: Mapping[str, str], now: Optional[float] = None
) -> Dict[str, float]:
    """
    Extract quota information from response headers.

    Returns a dict with any of ``remaining``, ``reset_at`` (epoch seconds),
    ``limit`` and ``retry_after`` (seconds) that the headers carried. Reset
    values smaller than an epoch timestamp are taken as seconds from now.
    """
    now = time.time() if now is None else now
    lowered = {k.lower(): v for k, v in headers.items()}
    result: Dict[str, float] = {}

    for prefix in ("x-ratelimit-", "x-rate-limit-"):
        remaining = _to_number(lowered.get(prefix + "remaining"))
        if remaining is not None and "remaining" not in result:
            result["remaining"] = remaining
        limit = _to_number(lowered.get(prefix + "limit"))
        if limit is not None and "limit" not in result:
            result["limit"] = limit
        reset = _to_number(lowered.get(prefix + "reset"))
        if reset is not None and "reset_at" not in result:
            result["reset_at"] = reset if reset >= EPOCH_THRESHOLD else now + reset

    retry_after = _parse_retry_after(lowered.get("retry-after"), now)
    if retry_after is not None:
        result["retry_after"] = retry_after

    return result


def classify_response(status_code: int, headers: Optional[Mapping[str, str]] = None) -> ErrorClassification:
    """Classify an HTTP error status."""
    quota = parse_rate_limit_headers(headers or {})
    message = f"HTTP {status_code}"

    if status_code in (403, 429) and quota.get("remaining") == 0 and "reset_at" in quota:
        return ErrorClassification(
            kind=ErrorKind.RATE_LIMIT,
            retryable=True,
            status_code=status_code,
            reset_at=quota["reset_at"],
            retry_after=quota.get("retry_after"),
            message=f"{message}: rate limit exhausted",
        )

    if 400 <= status_code < 500:
        return ErrorClassification(
            kind=ErrorKind.CLIENT,
            retryable=status_code in (408, 429),
            status_code=status_code,
            retry_after=quota.get("retry_after"),
            message=message,
        )

    if status_code >= 500:
        return ErrorClassification(
            kind=ErrorKind.SERVER,
            retryable=True,
            status_code=status_code,
            retry_after=quota.get("retry_after"),
            message=message,
        )

    return ErrorClassification(kind=ErrorKind.UNKNOWN, retryable=False, status_code=status_code, message=message)


def classify_error(error: BaseException) -> ErrorClassification:
    """
    Classify an exception for retry decisions.

    Errors that already carry a classification keep it. HTTP errors are
    classified by status; connection-level failures are network errors;
    anything else is unknown and not retryable.
    """
    existing = getattr(error, "classification", None)
    if isinstance(existing, ErrorClassification):
        return existing

    response = getattr(error, "response", None)
    status_code = getattr(response, "status_code", None) if response is not None else None
    if status_code is None:
        status_code = getattr(error, "status_code", None)
    if isinstance(status_code, int):
        headers = getattr(response, "headers", None) or getattr(error, "headers", None) or {}
        return classify_response(status_code, headers)

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError)):
        return ErrorClassification(
            kind=ErrorKind.NETWORK,
            retryable=True,
            message=f"{type(error).__name__}: {error}",
        )

    return ErrorClassification(
        kind=ErrorKind.UNKNOWN,
        retryable=False,
        message=f"{type(error).__name__}: {error}",
    )


def is_rate_limit_error(error: Exception) -> bool:
    """
    Determine if an exception is related to rate limiting.

    This function checks various properties of the exception to identify
    if it's likely a rate limit error. It looks for:

    1. A classification of kind ``rate_limit``
    2. HTTP 429 status code directly on the error or on error.response
    3. Rate limit related phrases in the error message

    Args:
        error: The exception to check

    Returns:
        True if the error appears to be a rate limit error, False otherwise
    """
    classification = getattr(error, "classification", None)
    if isinstance(classification, ErrorClassification):
        if classification.kind == ErrorKind.RATE_LIMIT or classification.status_code == 429:
            return True

    if getattr(error, "status_code", None) == 429:
        return True

    response = getattr(error, "response", None)
    if getattr(response, "status_code", None) == 429:
        return True

    error_str = str(error).lower()
    return any(phrase in error_str for phrase in RATE_LIMIT_PHRASES)


def parse_link_header(link_header: Optional[str]) -> Dict[str, str]:
    """Map ``rel`` names to URLs from a ``Link`` header."""
    if not link_header:
        return {}
    return {rel.strip(): url.strip() for url, rel in LINK_PATTERN.findall(link_header)}


def sanitize_endpoint(endpoint: str) -> str:
    """Replace ids, SHAs and owner/user names so endpoints group together in metrics."""
    path = endpoint.split("?", 1)[0]
    for pattern, replacement in _ENDPOINT_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


def estimate_size(obj: Any) -> int:
    """Rough in-memory size of a JSON-like value in bytes."""
    if obj is None:
        return 0
    if isinstance(obj, BaseModel):
        return estimate_size(obj.model_dump())
    if isinstance(obj, bool):
        return 4
    if isinstance(obj, (int, float)):
        return 8
    if isinstance(obj, str):
        return len(obj) * 2
    if isinstance(obj, (bytes, bytearray)):
        return len(obj)
    if isinstance(obj, dict):
        return sum(len(str(k)) * 2 + estimate_size(v) for k, v in obj.items())
    if isinstance(obj, (list, tuple, set, frozenset)):
        return sum(estimate_size(item) for item in obj)
    return 0


def format_duration(seconds: float) -> str:
    """Human readable duration, e.g. ``250ms``, ``1.5s``, ``2.0m``, ``1.0h``."""
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"

