"""
Request, response, error and cache metrics for the API client.
"""

import logging
import math
import threading
import time
import uuid
from collections import deque
from typing import Any, Deque, List, Optional, Union

from .models import (
    CacheCounts,
    ErrorClassification,
    ErrorCounts,
    ErrorKind,
    MetricsEvent,
    MetricsSnapshot,
    PerformanceIssue,
    PerformanceSummary,
    RateLimitDelays,
    RequestCounts,
    ResponseTimes,
)
from .utils import classify_error, sanitize_endpoint

logger = logging.getLogger(__name__)

# Health thresholds
TARGET_SUCCESS_RATE = 95.0
TARGET_ERROR_RATE = 5.0
SLOW_RESPONSE_MS = 2000.0
TARGET_CACHE_HIT_RATE = 60.0
FREQUENT_DELAY_RATIO = 0.1


def _classify_message(message: str) -> ErrorClassification:
    """Best-effort classification for errors only known by their message."""
    text = message.lower()
    if "timeout" in text or "timed out" in text:
        return ErrorClassification(kind=ErrorKind.NETWORK, retryable=True, message=message)
    if "rate limit" in text or "429" in text:
        return ErrorClassification(kind=ErrorKind.RATE_LIMIT, retryable=True, message=message)
    if "network" in text or "connection" in text:
        return ErrorClassification(kind=ErrorKind.NETWORK, retryable=True, message=message)
    if any(code in text for code in ("500", "502", "503", "504")):
        return ErrorClassification(kind=ErrorKind.SERVER, retryable=True, message=message)
    if any(code in text for code in ("400", "401", "403", "404", "422")):
        return ErrorClassification(kind=ErrorKind.CLIENT, retryable=False, message=message)
    return ErrorClassification(kind=ErrorKind.UNKNOWN, retryable=False, message=message)


def _percentile(sorted_values: List[float], pct: float) -> float:
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100 * len(sorted_values)))
    return sorted_values[rank - 1]


class MetricsCollector:
    """
    Accumulates metrics for one client.

    Counters only grow until ``reset()`` is called. Every recording method is
    safe to call from concurrent requests.
    """

    def __init__(self, tracking_enabled: bool = True, history_size: int = 1000):
        self.tracking_enabled = tracking_enabled
        self.history_size = history_size
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Discard everything recorded so far."""
        with self._lock:
            self._requests = RequestCounts()
            self._errors = ErrorCounts()
            self._cache = CacheCounts()
            self._delays = RateLimitDelays()
            self._response_count = 0
            self._total_time = 0.0
            self._min_time = math.inf
            self._max_time = 0.0
            self._recent_times: Deque[float] = deque(maxlen=self.history_size)
            self._history: Deque[MetricsEvent] = deque(maxlen=self.history_size)
            self._start_time = time.time()
        logger.debug("Metrics reset")

    def record_request(self, method: str, endpoint: str) -> None:
        """Record that a request is being sent over the network."""
        if not self.tracking_enabled:
            return

        method = method.upper()
        clean = sanitize_endpoint(endpoint)
        with self._lock:
            self._requests.total += 1
            self._requests.by_method[method] = self._requests.by_method.get(method, 0) + 1
            self._requests.by_endpoint[clean] = self._requests.by_endpoint.get(clean, 0) + 1
            self._add_event("request", method=method, endpoint=clean)

    def record_response(self, status: int, response_time_ms: float) -> None:
        """Record a response status and how long it took in milliseconds."""
        if not self.tracking_enabled:
            return

        response_time_ms = max(0.0, float(response_time_ms))
        with self._lock:
            self._response_count += 1
            self._total_time += response_time_ms
            self._min_time = min(self._min_time, response_time_ms)
            self._max_time = max(self._max_time, response_time_ms)
            self._recent_times.append(response_time_ms)

            self._requests.by_status[status] = self._requests.by_status.get(status, 0) + 1
            if 200 <= status < 400:
                self._requests.successful += 1
            else:
                self._requests.failed += 1
            self._add_event("response", status=status, response_time=response_time_ms)

    def record_error(
        self,
        error: Union[ErrorClassification, BaseException, str],
        method: str = "UNKNOWN",
        endpoint: str = "",
    ) -> None:
        """Record a failed attempt, tagged by its classification."""
        if not self.tracking_enabled:
            return

        if isinstance(error, ErrorClassification):
            classification = error
        elif isinstance(error, BaseException):
            classification = classify_error(error)
        else:
            classification = _classify_message(str(error))

        message = classification.message or str(error)
        kind = classification.kind.value
        with self._lock:
            self._errors.total += 1
            self._errors.by_kind[kind] = self._errors.by_kind.get(kind, 0) + 1
            self._errors.by_message[message] = self._errors.by_message.get(message, 0) + 1
            if classification.retryable:
                self._errors.retryable += 1
            else:
                self._errors.non_retryable += 1
            self._add_event(
                "error",
                kind=kind,
                message=message,
                method=method.upper(),
                endpoint=sanitize_endpoint(endpoint),
                status_code=classification.status_code,
            )

    def record_cache_hit(self) -> None:
        if not self.tracking_enabled:
            return
        with self._lock:
            self._cache.hits += 1
            self._update_hit_rate()

    def record_cache_miss(self) -> None:
        if not self.tracking_enabled:
            return
        with self._lock:
            self._cache.misses += 1
            self._update_hit_rate()

    def record_rate_limit_delay(self, delay_seconds: float) -> None:
        """Record time a request spent waiting for the rate limiter."""
        if not self.tracking_enabled:
            return
        with self._lock:
            self._delays.delays += 1
            self._delays.total_delay_time += delay_seconds
            self._delays.average_delay = self._delays.total_delay_time / self._delays.delays
            self._add_event("rate_limit", delay=delay_seconds)

    def get_stats(self) -> MetricsSnapshot:
        """Snapshot of all metrics, including the derived health score."""
        with self._lock:
            uptime = max(time.time() - self._start_time, 1e-9)
            requests = self._requests.model_copy(deep=True)
            completed = requests.successful + requests.failed
            if completed:
                requests.success_rate = round(requests.successful / completed * 100, 2)
                requests.failure_rate = round(requests.failed / completed * 100, 2)
            requests.requests_per_second = round(requests.total / uptime, 2) if requests.total else 0.0

            recent = sorted(self._recent_times)
            responses = ResponseTimes(
                count=self._response_count,
                total_time=self._total_time,
                average_time=round(self._total_time / self._response_count, 2) if self._response_count else 0.0,
                min_time=0.0 if self._min_time == math.inf else self._min_time,
                max_time=self._max_time,
                p50=_percentile(recent, 50),
                p95=_percentile(recent, 95),
                p99=_percentile(recent, 99),
            )

            snapshot = MetricsSnapshot(
                uptime_seconds=round(uptime, 3),
                requests=requests,
                responses=responses,
                errors=self._errors.model_copy(deep=True),
                cache=self._cache.model_copy(),
                rate_limit=self._delays.model_copy(),
            )

        snapshot.health_score = self.calculate_health_score(snapshot)
        return snapshot

    def get_history(self, limit: int = 100, event_type: Optional[str] = None) -> List[MetricsEvent]:
        """Most recent events, oldest first."""
        with self._lock:
            events = [e for e in self._history if event_type is None or e.type == event_type]
        return events[-limit:] if limit > 0 else []

    @staticmethod
    def calculate_health_score(stats: MetricsSnapshot) -> int:
        """
        Overall health from 0 to 100.

        The score only goes down as the success rate drops, the error rate or
        average response time grows, or the cache hit rate drops.
        """
        score = 100.0

        completed = stats.requests.successful + stats.requests.failed
        if completed and stats.requests.success_rate < TARGET_SUCCESS_RATE:
            score -= (TARGET_SUCCESS_RATE - stats.requests.success_rate) * 2

        error_rate = stats.errors.total / max(1, stats.requests.total) * 100
        if error_rate > TARGET_ERROR_RATE:
            score -= (error_rate - TARGET_ERROR_RATE) * 3

        if stats.responses.average_time > SLOW_RESPONSE_MS:
            score -= min(30.0, (stats.responses.average_time - SLOW_RESPONSE_MS) / 100)

        lookups = stats.cache.hits + stats.cache.misses
        if lookups and stats.cache.hit_rate < TARGET_CACHE_HIT_RATE:
            score -= min(10.0, (TARGET_CACHE_HIT_RATE - stats.cache.hit_rate) / 6)

        return int(max(0, min(100, round(score))))

    def get_performance_summary(self) -> PerformanceSummary:
        stats = self.get_stats()
        return PerformanceSummary(
            health=stats.health_score,
            average_response_time=stats.responses.average_time,
            requests_per_second=stats.requests.requests_per_second,
            success_rate=stats.requests.success_rate,
            cache_hit_rate=stats.cache.hit_rate,
            issues=self.identify_issues(stats),
        )

    @staticmethod
    def identify_issues(stats: MetricsSnapshot) -> List[PerformanceIssue]:
        issues = []
        completed = stats.requests.successful + stats.requests.failed

        if completed and stats.requests.success_rate < TARGET_SUCCESS_RATE:
            issues.append(PerformanceIssue(
                type="LOW_SUCCESS_RATE",
                severity="HIGH",
                message=f"Success rate is {stats.requests.success_rate}%, below {TARGET_SUCCESS_RATE}% threshold",
                recommendation="Check error patterns and the validity of the requests being sent",
            ))

        if stats.responses.average_time > SLOW_RESPONSE_MS:
            issues.append(PerformanceIssue(
                type="SLOW_RESPONSE_TIME",
                severity="MEDIUM",
                message=f"Average response time is {stats.responses.average_time}ms, above {SLOW_RESPONSE_MS:.0f}ms threshold",
                recommendation="Reduce payload sizes or lean more on caching",
            ))

        lookups = stats.cache.hits + stats.cache.misses
        if lookups and stats.cache.hit_rate < TARGET_CACHE_HIT_RATE:
            issues.append(PerformanceIssue(
                type="LOW_CACHE_HIT_RATE",
                severity="LOW",
                message=f"Cache hit rate is {stats.cache.hit_rate}%, below {TARGET_CACHE_HIT_RATE}% threshold",
                recommendation="Review cache TTL and size settings",
            ))

        if stats.rate_limit.delays > stats.requests.total * FREQUENT_DELAY_RATIO:
            issues.append(PerformanceIssue(
                type="FREQUENT_RATE_LIMITING",
                severity="MEDIUM",
                message=f"{stats.rate_limit.delays} rate limit delays over {stats.requests.total} requests",
                recommendation="Pace requests more evenly or reduce batch concurrency",
            ))

        return issues

    def _update_hit_rate(self) -> None:
        lookups = self._cache.hits + self._cache.misses
        self._cache.hit_rate = round(self._cache.hits / lookups * 100, 2) if lookups else 0.0

    def _add_event(self, event_type: str, **data: Any) -> None:
        now = time.time()
        self._history.append(MetricsEvent(
            id=f"{int(now * 1000)}-{uuid.uuid4().hex[:9]}",
            type=event_type,
            timestamp=now,
            data=data,
        ))
