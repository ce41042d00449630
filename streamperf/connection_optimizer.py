"""HTTP request optimization for segment and manifest traffic.

Wraps an httpx.AsyncClient with CDN endpoint selection and failover,
short-window request batching, connection headers, request-type timeouts
and retry strategies.
"""

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any, Optional

import httpx

from streamperf.config import StreamPerfConfig, get_config
from streamperf.event_bus import EventBus, PerformanceEvent
from streamperf.exceptions import ConfigurationError, OptimizerClosedError, RequestFailure
from streamperf.models import EndpointMetrics, HostConnectionStats, OptimizerMetrics

logger = logging.getLogger(__name__)

RETRY_STRATEGIES = ("linear", "exponential", "adaptive")

SEGMENT_SUFFIXES = (".ts", ".m4s", ".mp4")
MANIFEST_SUFFIXES = (".m3u8", ".mpd")
UNBATCHABLE_SUFFIXES = (".m3u8", ".ts", ".mp4", ".m4s")

PROBE_TIMEOUT = 5.0

DEFAULT_HEADERS = {
    "compression": ("Accept-Encoding", "gzip, deflate, br"),
    "cache": ("Cache-Control", "max-age=300"),
    "keep_alive": ("Connection", "keep-alive"),
}


def url_suffix(url: str) -> str:
    """Lower-cased file extension of the URL path."""
    return PurePosixPath(httpx.URL(url).path).suffix.lower()


@dataclass
class _QueuedRequest:
    url: str
    method: str
    options: dict[str, Any]
    future: asyncio.Future


class ConnectionOptimizer:
    """Executes requests with batching, CDN failover and retries.

    The client is borrowed unless none is given, in which case the
    optimizer creates one and closes it in aclose().
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[StreamPerfConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config or get_config()
        self.event_bus = event_bus or EventBus()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()

        self.primary_endpoints: list[str] = list(self.config.cdn_primary_endpoints)
        self.fallback_endpoints: list[str] = list(self.config.cdn_fallback_endpoints)
        self.current_endpoint: Optional[str] = (
            self.primary_endpoints[0] if self.primary_endpoints else None
        )
        self.failed_endpoints: set[str] = set()
        self.endpoint_metrics: dict[str, EndpointMetrics] = {}
        self.host_stats: dict[str, HostConnectionStats] = {}

        self.batching_enabled = self.config.batching_enabled
        self.batch_size = self.config.batch_size
        self.retry_strategy = self.config.retry_strategy

        self.metrics = OptimizerMetrics()
        self.closed = False

        self._pending_batches: dict[str, list[_QueuedRequest]] = {}
        self._batch_timers: dict[str, asyncio.TimerHandle] = {}
        self._batch_tasks: set[asyncio.Task] = set()
        self._lock = threading.Lock()

        logger.info(
            f"Connection optimizer initialized: {len(self.primary_endpoints)} primary, "
            f"{len(self.fallback_endpoints)} fallback endpoints, current={self.current_endpoint}"
        )

    # Endpoint management

    @property
    def all_endpoints(self) -> list[str]:
        return self.primary_endpoints + self.fallback_endpoints

    def add_cdn_endpoint(self, url: str, primary: bool = True) -> None:
        url = url.rstrip("/")
        with self._lock:
            endpoints = self.primary_endpoints if primary else self.fallback_endpoints
            if url in self.all_endpoints:
                return
            endpoints.append(url)
            if self.current_endpoint is None:
                self.current_endpoint = url
        logger.info(f"Added {'primary' if primary else 'fallback'} CDN endpoint: {url}")

    def remove_cdn_endpoint(self, url: str) -> None:
        url = url.rstrip("/")
        with self._lock:
            self.primary_endpoints = [e for e in self.primary_endpoints if e != url]
            self.fallback_endpoints = [e for e in self.fallback_endpoints if e != url]
            self.failed_endpoints.discard(url)
            self.endpoint_metrics.pop(url, None)
        if self.current_endpoint == url:
            self.current_endpoint = self.select_best_endpoint()
        logger.info(f"Removed CDN endpoint: {url}")

    def is_cdn_host(self, url: str) -> bool:
        """Whether the URL already points at a configured endpoint's host."""
        return self.endpoint_for_url(url) is not None

    def endpoint_for_url(self, url: str) -> Optional[str]:
        host = httpx.URL(url).host
        for endpoint in self.all_endpoints:
            if httpx.URL(endpoint).host == host:
                return endpoint
        return None

    def select_best_endpoint(self) -> Optional[str]:
        """Pick the highest scoring endpoint that has not failed.

        Endpoints with at least one success are ranked by score; otherwise
        the first unmeasured endpoint wins, then the first available one.
        When every endpoint has failed the failed set is cleared and the
        first configured endpoint is returned.
        """
        with self._lock:
            endpoints = self.all_endpoints
            available = [e for e in endpoints if e not in self.failed_endpoints]
            if not available:
                if endpoints:
                    logger.info("All CDN endpoints failed, resetting failed set")
                self.failed_endpoints.clear()
                return endpoints[0] if endpoints else None

            proven = [
                e
                for e in available
                if e in self.endpoint_metrics and self.endpoint_metrics[e].successful_requests > 0
            ]
            if proven:
                return max(proven, key=lambda e: self.endpoint_metrics[e].score)
            unmeasured = [e for e in available if e not in self.endpoint_metrics]
            return unmeasured[0] if unmeasured else available[0]

    def record_endpoint_result(self, endpoint: str, latency_ms: float, success: bool) -> None:
        """Fold one attempt into an endpoint's rolling metrics.

        Crossing the reliability threshold marks the endpoint failed and
        triggers failover.
        """
        if self.closed:
            return
        if endpoint not in self.all_endpoints:
            logger.debug(f"Ignoring result for unconfigured endpoint: {endpoint}")
            return
        with self._lock:
            metrics = self.endpoint_metrics.setdefault(endpoint, EndpointMetrics())
            first = metrics.total_requests == 0
            metrics.total_requests += 1
            if success:
                metrics.successful_requests += 1
            metrics.success_rate = metrics.successful_requests / metrics.total_requests
            metrics.latency = latency_ms if first else (metrics.latency + latency_ms) / 2
            metrics.last_used = time.time()

            newly_failed = (
                endpoint not in self.failed_endpoints
                and metrics.total_requests >= self.config.endpoint_min_requests
                and metrics.success_rate < self.config.endpoint_min_success_rate
            )
            if newly_failed:
                self.failed_endpoints.add(endpoint)

        logger.debug(
            f"Endpoint {'success' if success else 'failure'}: {endpoint}",
            extra={"endpoint": endpoint, "latency_ms": round(latency_ms, 1)},
        )
        if newly_failed:
            logger.warning(
                f"Marking CDN endpoint as failed: {endpoint} "
                f"(success rate: {metrics.success_rate:.0%})",
                extra={"endpoint": endpoint},
            )
            self.trigger_failover(endpoint)

    def trigger_failover(self, failed_endpoint: str) -> Optional[str]:
        """Switch away from a failed endpoint.

        A failed endpoint that is not serving traffic only stays in the
        failed set; the current endpoint is kept while it is healthy.

        Returns:
            The newly selected endpoint, or None if nothing changed
        """
        previous = self.current_endpoint
        if (
            previous is not None
            and previous != failed_endpoint
            and previous not in self.failed_endpoints
        ):
            logger.info(
                f"CDN endpoint {failed_endpoint} failed while not in use, keeping {previous}",
                extra={"endpoint": failed_endpoint},
            )
            return None

        logger.info(f"CDN failover triggered for: {failed_endpoint}", extra={"endpoint": failed_endpoint})
        new_endpoint = self.select_best_endpoint()
        if new_endpoint is None or new_endpoint == previous:
            logger.warning(f"No alternative CDN endpoint for {failed_endpoint}")
            return None

        with self._lock:
            self.metrics.cdn_failovers += 1
        self.current_endpoint = new_endpoint
        logger.info(f"CDN failover completed: {previous} -> {new_endpoint}")
        self.event_bus.emit(
            PerformanceEvent.CDN_FAILOVER,
            {"from": previous, "to": new_endpoint, "reason": "performance"},
        )
        return new_endpoint

    async def probe_endpoint(self, endpoint: str) -> bool:
        """Send a HEAD request to an endpoint's probe path and record the result."""
        start = time.perf_counter()
        try:
            response = await self.client.head(
                f"{endpoint}{self.config.endpoint_probe_path}",
                headers={"Cache-Control": "no-cache"},
                timeout=PROBE_TIMEOUT,
            )
            ok = response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"CDN endpoint probe failed for {endpoint}: {e}")
            self.record_endpoint_result(endpoint, 0.0, False)
            return False

        self.record_endpoint_result(endpoint, (time.perf_counter() - start) * 1000.0, ok)
        return ok

    def build_cdn_url(self, url: str, endpoint: str) -> str:
        """Move a URL onto an endpoint's scheme, host and port."""
        target = httpx.URL(endpoint)
        return str(httpx.URL(url).copy_with(scheme=target.scheme, host=target.host, port=target.port))

    async def apply_cdn_optimization(self, url: str) -> str:
        """Rewrite a URL onto the current healthy endpoint."""
        if not self.all_endpoints or self.is_cdn_host(url):
            return url

        current = self.current_endpoint
        if current is not None and current not in self.failed_endpoints:
            if not self.config.validate_endpoints or await self.probe_endpoint(current):
                return self.build_cdn_url(url, current)

        best = self.select_best_endpoint()
        if best is None:
            logger.warning("No CDN endpoints available, using original URL")
            return url
        self.current_endpoint = best
        return self.build_cdn_url(url, best)

    # Request preparation

    def timeout_for_url(self, url: str) -> float:
        suffix = url_suffix(url)
        if suffix in SEGMENT_SUFFIXES:
            return self.config.segment_timeout
        if suffix in MANIFEST_SUFFIXES:
            return self.config.manifest_timeout
        return self.config.request_timeout

    def apply_connection_optimization(self, url: str, options: dict[str, Any]) -> dict[str, Any]:
        """Add connection headers and a request-type timeout.

        Caller-supplied headers and timeout take precedence.
        """
        headers: dict[str, str] = {}
        enabled = {
            "compression": self.config.compression_enabled,
            "cache": self.config.cache_enabled,
            "keep_alive": self.config.keep_alive_enabled,
        }
        for key, (name, value) in DEFAULT_HEADERS.items():
            if enabled[key]:
                headers[name] = value
        headers.update(options.get("headers") or {})

        optimized = dict(options)
        optimized["headers"] = headers
        optimized.setdefault("timeout", self.timeout_for_url(url))
        return optimized

    def should_batch(self, url: str, method: str) -> bool:
        if not self.batching_enabled or method.upper() != "GET":
            return False
        return url_suffix(url) not in UNBATCHABLE_SUFFIXES

    @staticmethod
    def batch_key(url: str, method: str) -> str:
        parsed = httpx.URL(url)
        origin = f"{parsed.scheme}://{parsed.host}"
        if parsed.port is not None:
            origin += f":{parsed.port}"
        return f"{method.upper()}:{origin}{parsed.path}"

    # Retries

    def compute_retry_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay before the retry following a failed attempt.

        Args:
            attempt: Zero-based index of the attempt that failed
            error: The error that attempt raised

        Returns:
            Delay in seconds
        """
        base = self.config.retry_delay
        if self.retry_strategy == "linear":
            return base * (attempt + 1)
        if self.retry_strategy == "exponential":
            return base * (2 ** attempt)

        if isinstance(error, httpx.TimeoutException):
            base *= 0.5
        elif isinstance(error, httpx.TransportError):
            base *= 2
        delay = base * (2 ** attempt)
        return delay + random.uniform(0, 0.1 * delay)

    async def _request_with_retries(self, method: str, url: str, options: dict[str, Any]) -> httpx.Response:
        endpoint = self.endpoint_for_url(url)
        last_error: Optional[Exception] = None
        attempts = self.config.max_attempts

        for attempt in range(attempts):
            if attempt > 0:
                delay = self.compute_retry_delay(attempt - 1, last_error)
                logger.info(f"Retry attempt {attempt}/{attempts - 1} for {url} in {delay:.2f}s")
                await asyncio.sleep(delay)

            start = time.perf_counter()
            try:
                response = await self.client.request(method, url, **options)
                response.raise_for_status()
            except httpx.HTTPError as e:
                last_error = e
                latency_ms = (time.perf_counter() - start) * 1000.0
                logger.warning(f"Request attempt {attempt + 1} failed for {url}: {e}")
                self._record_host_result(url, False)
                if endpoint is not None:
                    self.record_endpoint_result(endpoint, latency_ms, False)
                continue

            latency_ms = (time.perf_counter() - start) * 1000.0
            self._record_host_result(url, True)
            if endpoint is not None:
                self.record_endpoint_result(endpoint, latency_ms, True)
            return response

        raise RequestFailure(
            f"Request failed after {attempts} attempts: {last_error}", url=url, attempts=attempts
        ) from last_error

    # Execution

    async def optimize_request(self, url: str, method: str = "GET", **options: Any) -> httpx.Response:
        """Execute a request through batching, CDN rewrite and retries.

        Args:
            url: Absolute request URL
            method: HTTP method
            **options: Extra httpx request arguments (headers, params, timeout, ...)

        Returns:
            The successful response

        Raises:
            RequestFailure: If every attempt failed
            OptimizerClosedError: If the optimizer has been destroyed
        """
        if self.closed:
            raise OptimizerClosedError("Connection optimizer is closed", url=url)

        with self._lock:
            self.metrics.total_requests += 1

        if self.should_batch(url, method):
            return await self._enqueue(url, method.upper(), options)
        return await self._execute(url, method.upper(), options)

    async def _execute(self, url: str, method: str, options: dict[str, Any]) -> httpx.Response:
        start = time.perf_counter()
        try:
            target = await self.apply_cdn_optimization(url)
            response = await self._request_with_retries(
                method, target, self.apply_connection_optimization(target, options)
            )
        except RequestFailure:
            self._record_request_result((time.perf_counter() - start) * 1000.0, False)
            raise

        self._record_request_result((time.perf_counter() - start) * 1000.0, True)
        return response

    async def _enqueue(self, url: str, method: str, options: dict[str, Any]) -> httpx.Response:
        loop = asyncio.get_running_loop()
        key = self.batch_key(url, method)
        future = loop.create_future()

        batch = self._pending_batches.setdefault(key, [])
        batch.append(_QueuedRequest(url=url, method=method, options=options, future=future))

        if key not in self._batch_timers:
            self._batch_timers[key] = loop.call_later(
                self.config.batch_timeout, self._flush_batch, key
            )
        if len(batch) >= self.batch_size:
            self._flush_batch(key)

        return await future

    def _flush_batch(self, key: str) -> None:
        timer = self._batch_timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        batch = self._pending_batches.pop(key, None)
        if not batch:
            return

        with self._lock:
            self.metrics.batched_requests += len(batch)
            self.metrics.batches_flushed += 1
        logger.debug(f"Processing batch of {len(batch)} requests for: {key}")

        loop = asyncio.get_running_loop()
        for queued in batch:
            task = loop.create_task(self._run_queued(queued))
            self._batch_tasks.add(task)
            task.add_done_callback(self._batch_tasks.discard)

    def flush_pending(self) -> int:
        """Flush every queued batch now, cancelling its timer.

        Returns:
            Number of batches flushed
        """
        if self.closed:
            return 0
        keys = list(self._pending_batches)
        for key in keys:
            self._flush_batch(key)
        return len(keys)

    async def _run_queued(self, queued: _QueuedRequest) -> None:
        try:
            response = await self._execute(queued.url, queued.method, queued.options)
        except Exception as e:
            if not queued.future.done():
                queued.future.set_exception(e)
            return
        if not queued.future.done():
            queued.future.set_result(response)

    # Bookkeeping

    def _record_request_result(self, latency_ms: float, success: bool) -> None:
        if self.closed:
            return
        with self._lock:
            if success:
                self.metrics.successful_requests += 1
            else:
                self.metrics.failed_requests += 1
            completed = self.metrics.successful_requests + self.metrics.failed_requests
            if completed == 1:
                self.metrics.average_latency = latency_ms
            else:
                self.metrics.average_latency = (self.metrics.average_latency + latency_ms) / 2

    def _record_host_result(self, url: str, success: bool) -> None:
        if self.closed:
            return
        host = httpx.URL(url).host
        with self._lock:
            stats = self.host_stats.setdefault(host, HostConnectionStats())
            stats.total_requests += 1
            stats.last_used = time.time()
            if success:
                stats.success_count += 1
                self.metrics.connection_reuses += 1

    # Runtime configuration

    def set_batching_enabled(self, enabled: bool) -> None:
        self.batching_enabled = enabled
        logger.info(f"Request batching {'enabled' if enabled else 'disabled'}")

    def set_batch_size(self, size: int) -> None:
        self.batch_size = max(1, size)
        logger.info(f"Batch size set to: {self.batch_size}")

    def set_retry_strategy(self, strategy: str) -> None:
        """Select the retry strategy.

        Raises:
            ConfigurationError: If the strategy is not linear, exponential or adaptive
        """
        if strategy not in RETRY_STRATEGIES:
            raise ConfigurationError(f"Unknown retry strategy: {strategy!r}")
        self.retry_strategy = strategy
        logger.info(f"Retry strategy set to: {strategy}")

    # Reporting

    @property
    def pending_timers(self) -> int:
        return len(self._batch_timers)

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            data = self.metrics.to_dict()
        total = data["total_requests"]
        data["success_rate"] = data["successful_requests"] / total * 100 if total else 0.0
        data["batching_rate"] = data["batched_requests"] / total * 100 if total else 0.0
        return data

    def get_cdn_status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "current": self.current_endpoint,
                "primary": list(self.primary_endpoints),
                "fallback": list(self.fallback_endpoints),
                "failed": sorted(self.failed_endpoints),
                "metrics": {e: m.to_dict() | {"score": m.score} for e, m in self.endpoint_metrics.items()},
                "failovers": self.metrics.cdn_failovers,
            }

    def get_connection_pool_status(self) -> dict[str, Any]:
        with self._lock:
            hosts = {
                host: {
                    "total_requests": stats.total_requests,
                    "success_count": stats.success_count,
                    "success_rate": stats.success_rate,
                    "last_used": stats.last_used,
                }
                for host, stats in self.host_stats.items()
            }
            return {
                "hosts": hosts,
                "total_hosts": len(hosts),
                "connection_reuses": self.metrics.connection_reuses,
            }

    def reset_metrics(self) -> None:
        with self._lock:
            self.metrics = OptimizerMetrics()
        logger.info("Connection optimizer metrics reset")

    # Shutdown

    def destroy(self) -> None:
        """Cancel batch timers and fail queued requests. Idempotent.

        Requests already executing may finish, but their outcome is no
        longer recorded.
        """
        if self.closed:
            return
        logger.info("Destroying connection optimizer")
        self.closed = True

        for timer in self._batch_timers.values():
            timer.cancel()
        self._batch_timers.clear()

        pending = self._pending_batches
        self._pending_batches = {}
        for batch in pending.values():
            for queued in batch:
                if not queued.future.done():
                    queued.future.set_exception(
                        OptimizerClosedError("Connection optimizer closed before flush", url=queued.url)
                    )

        with self._lock:
            self.endpoint_metrics.clear()
            self.host_stats.clear()

    async def aclose(self) -> None:
        """Destroy and close the HTTP client if this optimizer created it."""
        self.destroy()
        if self._owns_client:
            await self.client.aclose()
