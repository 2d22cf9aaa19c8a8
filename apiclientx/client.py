"""
Resilient client for a rate-limited REST service.

ApiClient ties together the rate limiter, the response cache and the metrics
collector around an httpx connection pool. For most use cases this is the
only class you need.
"""

import asyncio
import copy
import logging
import re
import time
from typing import Any, AsyncIterator, Coroutine, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl, urlsplit

import httpx
from pydantic import ValidationError

from .cache import RequestCache
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
    HTTP_METHODS,
    ApiResponse,
    BatchResult,
    ClientConfig,
    ClientMetrics,
    ErrorClassification,
    ErrorKind,
    PerformanceSummary,
    RequestDescriptor,
    RequestOptions,
    RequestTransform,
    ResponseTransform,
    TokenValidation,
)
from .utils import (
    classify_error,
    classify_response,
    exponential_backoff,
    format_duration,
    parse_link_header,
    sleep,
)

logger = logging.getLogger(__name__)

# Personal, OAuth, user-to-server, server-to-server, refresh and fine-grained tokens
GITHUB_TOKEN_PATTERN = re.compile(
    r"^(gh[pous]_[A-Za-z0-9]{36}|ghr_[A-Za-z0-9]{76}|github_pat_[A-Za-z0-9_]{82})$"
)

# Extra wait after a reported quota reset before trying again
QUOTA_RESET_BUFFER_SECONDS = 1.0

DEFAULT_BATCH_CONCURRENCY = 10

BATCH_ITEM_FIELDS = frozenset({"method", "path", "data", "options"})


class ApiClient:
    """
    Authenticated client with caching, rate limiting, retries and metrics.

    Example:
        ```python
        async with ApiClient(token="ghp_...") as client:
            repo = await client.request("GET", "/repos/octocat/hello-world")
            print(repo.data["full_name"])
            print(client.get_metrics().metrics.health_score)
        ```

    Args:
        config: Full configuration; keyword options are merged on top of it
        rate_limiter: Limiter shared with other clients using the same credential.
            By default each client owns its own.
        transport: httpx transport to send requests through (tests use
            ``httpx.MockTransport``)
        request_transforms: Functions applied in order to every request before it is sent
        response_transforms: Functions applied in order to every response after it arrives
        **options: Any ``ClientConfig`` field

    Raises:
        InvalidCredentialError: The token is missing or malformed
        ConstructionError: The configuration is invalid or has unknown options
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        request_transforms: Sequence[RequestTransform] = (),
        response_transforms: Sequence[ResponseTransform] = (),
        **options: Any,
    ):
        try:
            if config is None:
                config = ClientConfig(**options)
            elif options:
                config = ClientConfig(**{**config.model_dump(), **options})
        except ValidationError as e:
            raise ConstructionError(f"Invalid client configuration: {e}") from e

        self.config = config
        self._validate_token()

        self._owns_rate_limiter = rate_limiter is None
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit)
        self.cache = RequestCache(
            ttl=config.cache_ttl,
            max_size=config.cache_size,
            max_memory_bytes=config.cache_max_memory,
        )
        self.metrics = MetricsCollector(history_size=config.metrics_history_size)

        self.request_transforms: List[RequestTransform] = list(request_transforms)
        self.response_transforms: List[ResponseTransform] = list(response_transforms)

        self._transport = transport
        self._owns_transport = True
        self._http = httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
            headers=self._default_headers(),
            transport=transport,
        )
        self._closed = False

    def _validate_token(self) -> None:
        token = self.config.token
        if not token:
            raise InvalidCredentialError("API token is required")

        if self.config.token_pattern:
            try:
                pattern = re.compile(self.config.token_pattern)
            except re.error as e:
                raise ConstructionError(f"Invalid token_pattern: {e}") from e
        else:
            pattern = GITHUB_TOKEN_PATTERN

        if not pattern.fullmatch(token):
            raise InvalidCredentialError("Invalid API token format")

    def _default_headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.config.token}",
            "Accept": self.config.accept,
            "User-Agent": self.config.user_agent,
        }
        if self.config.api_version:
            headers["X-GitHub-Api-Version"] = self.config.api_version
        return headers

    @property
    def is_authenticated(self) -> bool:
        return bool(self.config.token) and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def request(
        self,
        method: str,
        path: str,
        data: Optional[Any] = None,
        options: Optional[Union[RequestOptions, Mapping[str, Any]]] = None,
    ) -> ApiResponse:
        """
        Send one request.

        GET responses are served from the cache while fresh. Everything else
        waits for the rate limiter and is retried according to the retry
        policy.

        Args:
            method: HTTP verb
            path: Resource path relative to the base URL
            data: Query parameters for GET, JSON body otherwise. Never modified.
            options: ``RequestOptions`` or a dict of its fields

        Returns:
            The response

        Raises:
            RequestValidationError: The request is malformed
            RequestFailedError: The request failed with a non-retryable error
            ExhaustedRetriesError: Every attempt failed with a retryable error
            RequestCancelledError: The cancel event fired or the deadline passed
            ClientClosedError: The client has been shut down
        """
        self._ensure_open()
        descriptor = self._build_descriptor(method, path, data, options)

        cache_key = descriptor.cache_key() if descriptor.options.use_cache else None
        if cache_key is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.metrics.record_cache_hit()
                logger.debug(f"Cache hit for {descriptor.method} {descriptor.path}")
                return cached
            self.metrics.record_cache_miss()

        return await self._run_cancellable(self._execute(descriptor, cache_key), descriptor.options)

    async def get(self, path: str, params: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> ApiResponse:
        return await self.request("GET", path, params, **kwargs)

    async def post(self, path: str, data: Optional[Any] = None, **kwargs: Any) -> ApiResponse:
        return await self.request("POST", path, data, **kwargs)

    async def patch(self, path: str, data: Optional[Any] = None, **kwargs: Any) -> ApiResponse:
        return await self.request("PATCH", path, data, **kwargs)

    async def put(self, path: str, data: Optional[Any] = None, **kwargs: Any) -> ApiResponse:
        return await self.request("PUT", path, data, **kwargs)

    async def delete(self, path: str, data: Optional[Any] = None, **kwargs: Any) -> ApiResponse:
        return await self.request("DELETE", path, data, **kwargs)

    def _build_descriptor(
        self,
        method: str,
        path: str,
        data: Optional[Any],
        options: Optional[Union[RequestOptions, Mapping[str, Any]]],
    ) -> RequestDescriptor:
        if not isinstance(method, str) or method.upper() not in HTTP_METHODS:
            raise RequestValidationError(f"Unsupported HTTP method: {method!r}")
        method = method.upper()

        if not isinstance(path, str) or not path.strip():
            raise RequestValidationError("Request path must be a non-empty string")
        path = path.strip()
        if "://" in path or path.startswith("//"):
            raise RequestValidationError(f"Request path must be relative to the base URL: {path!r}")
        if not path.startswith("/"):
            path = f"/{path}"

        if method == "GET" and data is not None and not isinstance(data, Mapping):
            raise RequestValidationError("GET data must be a mapping of query parameters")

        if options is None:
            request_options = RequestOptions()
        elif isinstance(options, RequestOptions):
            request_options = options
        else:
            try:
                request_options = RequestOptions(**options)
            except (TypeError, ValidationError) as e:
                raise RequestValidationError(f"Invalid request options: {e}") from e

        return RequestDescriptor(
            method=method,
            path=path,
            data=copy.deepcopy(data),
            options=request_options,
        )

    async def _execute(self, descriptor: RequestDescriptor, cache_key: Optional[str]) -> ApiResponse:
        descriptor = self._apply_request_transforms(descriptor)
        attempts = self.config.retry_attempts
        last_error: Optional[RequestFailedError] = None

        for attempt in range(attempts):
            waited = await self.rate_limiter.wait_for_token()
            if waited > 0:
                self.metrics.record_rate_limit_delay(waited)

            try:
                response = await self._send(descriptor)
            except RequestFailedError as error:
                error.attempts = attempt + 1
                last_error = error
                self.metrics.record_error(error.classification, descriptor.method, descriptor.path)

                if not error.retryable:
                    raise
                if attempt == attempts - 1:
                    break

                delay = self._retry_delay(error.classification, attempt)
                if delay is None:
                    break
                logger.warning(
                    f"{descriptor.method} {descriptor.path} failed ({error.classification.message}), "
                    f"attempt {attempt + 2}/{attempts} in {format_duration(delay)}"
                )
                await sleep(delay)
                continue

            if cache_key is not None and response.ok:
                self.cache.set(
                    cache_key,
                    response.model_copy(update={"from_cache": True}),
                    ttl=descriptor.options.cache_ttl,
                )
            return response

        raise ExhaustedRetriesError(last_error, last_error.attempts) from last_error

    def _retry_delay(self, classification: ErrorClassification, attempt: int) -> Optional[float]:
        """Seconds to wait before the next attempt, or None when the quota resets too late to wait for."""
        if classification.quota_exhausted:
            wait = classification.reset_at - time.time() + QUOTA_RESET_BUFFER_SECONDS
            if wait > self.config.max_quota_wait:
                logger.warning(
                    f"Rate limit exhausted, reset in {format_duration(wait)} exceeds "
                    f"max_quota_wait of {format_duration(self.config.max_quota_wait)}"
                )
                return None
            if wait > 0:
                logger.warning(f"Rate limit exhausted, waiting {format_duration(wait)} for reset")
                return wait

        if classification.retry_after is not None:
            return min(classification.retry_after, self.config.max_quota_wait)

        return exponential_backoff(
            attempt,
            base_delay=self.config.backoff_base,
            max_delay=self.config.backoff_max,
            factor=self.config.backoff_factor,
            jitter=self.config.backoff_jitter,
        )

    async def _send(self, descriptor: RequestDescriptor) -> ApiResponse:
        """Make a single HTTP attempt and turn the outcome into a response or a classified error."""
        options = descriptor.options
        is_get = descriptor.method == "GET"
        request = self._http.build_request(
            descriptor.method,
            descriptor.path,
            params=descriptor.data if is_get and descriptor.data else None,
            json=descriptor.data if not is_get and descriptor.data is not None else None,
            headers=options.headers or None,
            timeout=options.timeout if options.timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )

        self.metrics.record_request(descriptor.method, descriptor.path)
        start = time.perf_counter()
        try:
            http_response = await self._http.send(request)
        except Exception as e:
            classification = classify_error(e)
            error_class = TransientError if classification.retryable else RequestFailedError
            raise error_class(
                f"{descriptor.method} {descriptor.path} failed: {classification.message}",
                classification,
            ) from e

        elapsed_ms = (time.perf_counter() - start) * 1000
        self.metrics.record_response(http_response.status_code, elapsed_ms)
        self.rate_limiter.update_from_headers(http_response.headers)

        response = ApiResponse(
            status_code=http_response.status_code,
            headers=dict(http_response.headers.items()),
            data=self._parse_body(http_response),
            url=str(http_response.url),
        )
        response = self._apply_response_transforms(descriptor, response)

        if response.status_code >= 400:
            classification = classify_response(response.status_code, response.headers)
            detail = self._error_detail(response)
            if detail:
                classification.message = f"{classification.message}: {detail}"
            error_class = TransientError if classification.retryable else RequestFailedError
            raise error_class(
                f"{descriptor.method} {descriptor.path} returned {classification.message}",
                classification,
                response,
            )
        return response

    def _apply_request_transforms(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        for transform in self.request_transforms:
            try:
                descriptor = transform(descriptor)
            except Exception as e:
                raise RequestFailedError(
                    f"Request transform failed for {descriptor.method} {descriptor.path}: {e}",
                    ErrorClassification(kind=ErrorKind.UNKNOWN, retryable=False, message=f"{type(e).__name__}: {e}"),
                ) from e
        return descriptor

    def _apply_response_transforms(self, descriptor: RequestDescriptor, response: ApiResponse) -> ApiResponse:
        for transform in self.response_transforms:
            try:
                response = transform(response)
            except Exception as e:
                raise RequestFailedError(
                    f"Response transform failed for {descriptor.method} {descriptor.path}: {e}",
                    ErrorClassification(
                        kind=ErrorKind.UNKNOWN,
                        retryable=False,
                        status_code=response.status_code,
                        message=f"{type(e).__name__}: {e}",
                    ),
                    response,
                ) from e
        return response

    @staticmethod
    def _parse_body(http_response: httpx.Response) -> Any:
        if not http_response.content:
            return None
        if "json" in http_response.headers.get("content-type", ""):
            try:
                return http_response.json()
            except ValueError:
                logger.debug("Response declared JSON but could not be decoded")
        return http_response.text

    @staticmethod
    def _error_detail(response: ApiResponse) -> str:
        if isinstance(response.data, dict):
            return str(response.data.get("message", ""))
        if isinstance(response.data, str):
            return response.data[:200]
        return ""

    async def _run_cancellable(self, operation: Coroutine[Any, Any, ApiResponse], options: RequestOptions) -> ApiResponse:
        """Run ``operation`` until it finishes, the cancel event fires or the deadline passes."""
        cancel_event = options.cancel_event
        if cancel_event is None and options.deadline is None:
            return await operation

        if cancel_event is not None and cancel_event.is_set():
            operation.close()
            raise RequestCancelledError("Request cancelled before it was sent")

        task = asyncio.ensure_future(operation)
        watchers = {task}
        cancel_waiter = None
        if cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            watchers.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(watchers, timeout=options.deadline, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task in done:
            return task.result()

        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError("Request cancelled")
        raise RequestCancelledError(f"Request deadline of {options.deadline}s exceeded")

    async def batch_request(
        self,
        requests: Iterable[Union[RequestDescriptor, Mapping[str, Any]]],
        concurrency: Optional[int] = None,
        fail_fast: bool = False,
    ) -> List[BatchResult]:
        """
        Run many requests with bounded concurrency.

        Every item goes through ``request()``, so the cache and the rate
        limiter apply exactly as they do for single calls.

        Args:
            requests: ``RequestDescriptor`` objects or dicts with ``method``,
                ``path`` and optionally ``data`` and ``options``
            concurrency: Maximum requests in flight. Defaults to the rate
                limiter's recommendation, capped at 10.
            fail_fast: Raise the first error and cancel the rest instead of
                collecting per-item results

        Returns:
            One result per item, in input order
        """
        items = list(requests)
        if not items:
            return []

        if concurrency is None:
            concurrency = min(self.rate_limiter.recommended_batch_size(), DEFAULT_BATCH_CONCURRENCY)
        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def run(index: int, item: Union[RequestDescriptor, Mapping[str, Any]]) -> BatchResult:
            async with semaphore:
                try:
                    response = await self._request_item(item)
                except ClientError as e:
                    if fail_fast:
                        raise
                    return BatchResult(
                        index=index,
                        success=False,
                        error=str(e),
                        status_code=getattr(e, "status_code", None),
                        exception=e,
                    )
                return BatchResult(index=index, success=True, response=response, status_code=response.status_code)

        tasks = [asyncio.ensure_future(run(index, item)) for index, item in enumerate(items)]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _request_item(self, item: Union[RequestDescriptor, Mapping[str, Any]]) -> ApiResponse:
        if isinstance(item, RequestDescriptor):
            return await self.request(item.method, item.path, item.data, item.options)
        if not isinstance(item, Mapping):
            raise RequestValidationError(f"Batch items must be RequestDescriptor or dict, got {type(item).__name__}")

        unknown = set(item) - BATCH_ITEM_FIELDS
        if unknown:
            raise RequestValidationError(f"Unknown batch item fields: {', '.join(sorted(unknown))}")
        if "path" not in item:
            raise RequestValidationError("Batch item is missing 'path'")
        return await self.request(item.get("method", "GET"), item["path"], item.get("data"), item.get("options"))

    async def paginate(
        self,
        path: str,
        data: Optional[Mapping[str, Any]] = None,
        options: Optional[Union[RequestOptions, Mapping[str, Any]]] = None,
        max_pages: Optional[int] = None,
    ) -> AsyncIterator[ApiResponse]:
        """
        Iterate over the pages of a list endpoint by following ``Link: rel="next"``.

        Example:
            ```python
            async for page in client.paginate("/repos/octocat/hello-world/issues", {"per_page": 100}):
                for issue in page.data:
                    ...
            ```
        """
        pages = 0
        next_path: Optional[str] = path
        next_params = data
        while next_path is not None:
            response = await self.request("GET", next_path, next_params, options)
            yield response
            pages += 1
            if max_pages is not None and pages >= max_pages:
                return

            next_url = parse_link_header(response.headers.get("link")).get("next")
            if not next_url:
                return
            next_path, next_params = self._relative_request(next_url)

    def _relative_request(self, url: str) -> Tuple[str, Optional[Dict[str, str]]]:
        """Turn an absolute pagination URL back into a path and query parameters."""
        target = urlsplit(url)
        base = urlsplit(self.config.base_url)
        if target.netloc and target.netloc != base.netloc:
            raise RequestValidationError(f"Refusing to follow pagination link to another host: {url}")

        path = target.path
        if base.path and path.startswith(base.path):
            path = path[len(base.path):] or "/"
        params = dict(parse_qsl(target.query)) or None
        return path, params

    async def validate_token(self) -> TokenValidation:
        """Check the token against the service by fetching the authenticated user."""
        try:
            response = await self.request("GET", "/user", options=RequestOptions(use_cache=False))
        except RequestFailedError as e:
            return TokenValidation(valid=False, error=str(e), status_code=e.status_code)

        return TokenValidation(
            valid=True,
            user=response.data if isinstance(response.data, dict) else None,
            rate_limit={
                "remaining": response.headers.get("x-ratelimit-remaining"),
                "reset": response.headers.get("x-ratelimit-reset"),
            },
            status_code=response.status_code,
        )

    def get_metrics(self) -> ClientMetrics:
        """Metrics, rate limit status and cache statistics in one snapshot."""
        return ClientMetrics(
            metrics=self.metrics.get_stats(),
            rate_limit=self.rate_limiter.get_status(),
            cache=self.cache.get_stats(),
        )

    def get_performance_summary(self) -> PerformanceSummary:
        return self.metrics.get_performance_summary()

    def reset(self) -> None:
        """
        Clear the cache and metrics.

        The rate limiter is reset too unless it was passed in and may be
        shared with other clients.
        """
        self.cache.clear()
        self.cache.reset_stats()
        self.metrics.reset()
        if self._owns_rate_limiter:
            self.rate_limiter.reset()
        logger.info("Client state reset")

    async def shutdown(self) -> None:
        """Close the connection pool and drop all cached state. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        if self._owns_transport:
            await self._http.aclose()
        self.cache.clear()
        self.metrics.reset()
        logger.info("Client shut down")

    def with_options(self, **overrides: Any) -> "ApiClient":
        """
        Create a new client with modified options.

        The new client gets its own cache and metrics. It also gets its own
        rate limiter unless this client was given a shared one. An injected
        transport stays shared and is only closed by this client.
        """
        derived = ApiClient(
            self.config,
            rate_limiter=None if self._owns_rate_limiter else self.rate_limiter,
            transport=self._transport,
            request_transforms=self.request_transforms,
            response_transforms=self.response_transforms,
            **overrides,
        )
        derived._owns_transport = self._transport is None
        return derived

    def _ensure_open(self) -> None:
        if self._closed:
            raise ClientClosedError("Client has been shut down")
