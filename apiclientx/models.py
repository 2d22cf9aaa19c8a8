"""
Data models and configuration for the API client.

All configuration is explicit: unknown options are rejected at construction
instead of being silently ignored.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Defaults for a GitHub-style REST service
DEFAULT_BASE_URL = "https://api.github.com"
DEFAULT_API_VERSION = "2022-11-28"
DEFAULT_USER_AGENT = "apiclientx/1.0"
DEFAULT_MAX_REQUESTS = 5000
DEFAULT_TIME_WINDOW = 3600.0
DEFAULT_BURST_SIZE = 100
MAX_QUOTA_WAIT_SECONDS = 3600.0
MAX_WAIT_CHUNK_SECONDS = 60.0

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"})


class ErrorKind(str, Enum):
    """Category of a failed request, used for retry decisions and metrics."""

    CLIENT = "client"
    SERVER = "server"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    UNKNOWN = "unknown"


class ErrorClassification(BaseModel):
    """Classification of a single failure."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    retryable: bool = False
    status_code: Optional[int] = None
    reset_at: Optional[float] = None
    retry_after: Optional[float] = None
    message: str = ""

    @property
    def quota_exhausted(self) -> bool:
        return self.kind == ErrorKind.RATE_LIMIT and self.reset_at is not None


class RateLimitConfig(BaseModel):
    """Local budget for the rate limiter."""

    model_config = ConfigDict(extra="forbid")

    max_requests: int = Field(default=DEFAULT_MAX_REQUESTS, gt=0)
    time_window: float = Field(default=DEFAULT_TIME_WINDOW, gt=0)
    burst_size: int = Field(default=DEFAULT_BURST_SIZE, gt=0)
    # Fraction of the remote quota kept in reserve (0.1 keeps 10% unused)
    buffer_ratio: float = Field(default=0.0, ge=0, lt=1)
    max_wait_chunk: float = Field(default=MAX_WAIT_CHUNK_SECONDS, gt=0)

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.max_requests / self.time_window


class ClientConfig(BaseModel):
    """
    Configuration for ApiClient.

    ``token`` is checked against the known credential formats when the client
    is built. Passing an option that is not declared here raises a validation
    error.
    """

    model_config = ConfigDict(extra="forbid")

    token: Optional[str] = Field(default=None, repr=False)
    base_url: str = DEFAULT_BASE_URL
    timeout: float = Field(default=30.0, gt=0, description="Per-request HTTP timeout in seconds")
    retry_attempts: int = Field(default=3, ge=1, description="Total attempts per request")
    user_agent: str = DEFAULT_USER_AGENT
    api_version: Optional[str] = DEFAULT_API_VERSION
    accept: str = "application/vnd.github+json"
    token_pattern: Optional[str] = Field(
        default=None, description="Regex overriding the built-in GitHub token formats"
    )

    cache_ttl: float = Field(default=300.0, gt=0, description="Seconds a cached GET response stays valid")
    cache_size: int = Field(default=1000, gt=0)
    cache_max_memory: Optional[int] = Field(default=None, gt=0, description="Estimated bytes")

    backoff_base: float = Field(default=1.0, ge=0)
    backoff_max: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    backoff_jitter: float = Field(default=0.1, ge=0, le=1)
    max_quota_wait: float = Field(default=MAX_QUOTA_WAIT_SECONDS, ge=0)

    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    metrics_history_size: int = Field(default=1000, gt=0)

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {value!r}")
        return value.rstrip("/")


class RequestOptions(BaseModel):
    """Per-request options."""

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = Field(default=None, gt=0)
    deadline: Optional[float] = Field(default=None, gt=0, description="Overall budget in seconds")
    cancel_event: Optional[asyncio.Event] = None
    use_cache: bool = True
    cache_ttl: Optional[float] = Field(default=None, gt=0)


class RequestDescriptor(BaseModel):
    """A single request as issued by the caller."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    method: str
    path: str
    data: Optional[Any] = None
    options: RequestOptions = Field(default_factory=RequestOptions)

    def cache_key(self) -> Optional[str]:
        """Signature used for caching; only read requests have one."""
        if self.method != "GET":
            return None
        payload = json.dumps(self.data, sort_keys=True, default=str)
        return f"{self.method}:{self.path}:{payload}"


class ApiResponse(BaseModel):
    """A response from the remote service."""

    status_code: int
    headers: Dict[str, str] = Field(default_factory=dict)
    data: Any = None
    url: str = ""
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400


class BatchResult(BaseModel):
    """Outcome of one item in a batch."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    index: int
    success: bool
    response: Optional[ApiResponse] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    exception: Optional[Exception] = Field(default=None, exclude=True, repr=False)


class RateLimitState(BaseModel):
    """Remote quota as last reported by the service."""

    remaining: int = Field(default=DEFAULT_MAX_REQUESTS, ge=0)
    reset_at: float = Field(default_factory=lambda: time.time() + DEFAULT_TIME_WINDOW)
    limit: int = Field(default=DEFAULT_MAX_REQUESTS, gt=0)
    burst: int = Field(default=DEFAULT_BURST_SIZE, gt=0)
    # True while reset_at is a local guess rather than a value the service sent
    estimated: bool = True


class RateLimitStatus(BaseModel):
    remaining: int
    reset_at: float
    limit: int
    local_tokens: float
    local_capacity: int
    queue_length: int
    percentage_used: float
    can_make_request: bool


class RateLimiterStats(BaseModel):
    """Rate limiter statistics"""

    total_requests: int
    total_wait_time: float
    max_wait_time: float
    rate_limit_hits: int
    current_queue_size: int
    remote_remaining: int
    remote_limit: int
    remote_reset_at: float
    last_update: Optional[float] = None


class MemoryUsage(BaseModel):
    bytes: int
    mb: float


class CacheStats(BaseModel):
    hits: int
    misses: int
    sets: int
    deletes: int
    evictions: int
    hit_rate: float
    size: int
    max_size: int
    memory_usage: MemoryUsage


@dataclass
class CacheEntry:
    """A cached value and its lifetime."""

    key: str
    value: Any
    stored_at: float
    ttl: float
    size: int = 0

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


class RequestCounts(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: float = 0.0
    failure_rate: float = 0.0
    requests_per_second: float = 0.0
    by_method: Dict[str, int] = Field(default_factory=dict)
    by_status: Dict[int, int] = Field(default_factory=dict)
    by_endpoint: Dict[str, int] = Field(default_factory=dict)


class ResponseTimes(BaseModel):
    """Response time statistics in milliseconds."""

    count: int = 0
    total_time: float = 0.0
    average_time: float = 0.0
    min_time: float = 0.0
    max_time: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


class ErrorCounts(BaseModel):
    total: int = 0
    by_kind: Dict[str, int] = Field(default_factory=dict)
    by_message: Dict[str, int] = Field(default_factory=dict)
    retryable: int = 0
    non_retryable: int = 0


class CacheCounts(BaseModel):
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0


class RateLimitDelays(BaseModel):
    delays: int = 0
    total_delay_time: float = 0.0
    average_delay: float = 0.0


class MetricsSnapshot(BaseModel):
    """Point-in-time view of everything the metrics collector has recorded."""

    uptime_seconds: float = 0.0
    requests: RequestCounts = Field(default_factory=RequestCounts)
    responses: ResponseTimes = Field(default_factory=ResponseTimes)
    errors: ErrorCounts = Field(default_factory=ErrorCounts)
    cache: CacheCounts = Field(default_factory=CacheCounts)
    rate_limit: RateLimitDelays = Field(default_factory=RateLimitDelays)
    health_score: int = 100


class MetricsEvent(BaseModel):
    id: str
    type: str
    timestamp: float
    data: Dict[str, Any] = Field(default_factory=dict)


class PerformanceIssue(BaseModel):
    type: str
    severity: str
    message: str
    recommendation: str


class PerformanceSummary(BaseModel):
    health: int
    average_response_time: float
    requests_per_second: float
    success_rate: float
    cache_hit_rate: float
    issues: List[PerformanceIssue] = Field(default_factory=list)


class ClientMetrics(BaseModel):
    metrics: MetricsSnapshot
    rate_limit: RateLimitStatus
    cache: CacheStats


class TokenValidation(BaseModel):
    valid: bool
    user: Optional[Dict[str, Any]] = None
    rate_limit: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


RequestTransform = Callable[[RequestDescriptor], RequestDescriptor]
ResponseTransform = Callable[[ApiResponse], ApiResponse]
