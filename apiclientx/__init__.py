"""
Resilient client for rate-limited REST APIs with caching, retries and metrics.
"""

from importlib.metadata import PackageNotFoundError, version

from .cache import RequestCache
from .client import ApiClient
from .core import RateLimiter
from .exceptions import (
    ClientClosedError,
    ClientError,
    ConstructionError,
    ExhaustedRetriesError,
    InvalidCredentialError,
    RequestCancelledError,
    RequestFailedError,
    RequestValidationError,
    TransientError,
)
from .metrics import MetricsCollector
from .models import (
    ApiResponse,
    BatchResult,
    ClientConfig,
    ErrorClassification,
    ErrorKind,
    RateLimitConfig,
    RateLimiterStats,
    RequestDescriptor,
    RequestOptions,
)
from .utils import classify_error, exponential_backoff, is_rate_limit_error, retry_with_backoff

try:
    __version__ = version("apiclientx")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    'ApiClient',
    'RateLimiter',
    'RequestCache',
    'MetricsCollector',
    'ClientConfig',
    'RateLimitConfig',
    'RequestOptions',
    'RequestDescriptor',
    'ApiResponse',
    'BatchResult',
    'ErrorClassification',
    'ErrorKind',
    'RateLimiterStats',
    'ClientError',
    'ConstructionError',
    'InvalidCredentialError',
    'RequestValidationError',
    'ClientClosedError',
    'RequestCancelledError',
    'RequestFailedError',
    'TransientError',
    'ExhaustedRetriesError',
    'classify_error',
    'exponential_backoff',
    'is_rate_limit_error',
    'retry_with_backoff',
]
