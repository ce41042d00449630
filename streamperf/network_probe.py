"""Timed-I/O network probes built on httpx."""

import asyncio
import logging
import time
from typing import Optional

import httpx

from streamperf.exceptions import ProbeFailure
from streamperf.interfaces.network import INetworkProbe

logger = logging.getLogger(__name__)


class HttpNetworkProbe(INetworkProbe):
    """Estimates bandwidth, latency and loss against a probe URL.

    The probe URL should serve a small payload; the requested size is
    passed as a ``bytes`` query parameter so a cooperative endpoint can
    size its response, but throughput is always computed from the bytes
    actually received.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        probe_url: Optional[str],
        payload_sizes: Optional[list[int]] = None,
        timeout: float = 5.0,
        latency_count: int = 3,
        loss_count: int = 10,
    ):
        """Initialize probe.

        Args:
            client: Host HTTP client used for all probe traffic
            probe_url: Endpoint to probe; None disables probing
            payload_sizes: Payload sizes (bytes) requested for bandwidth tests
            timeout: Per-request timeout in seconds
            latency_count: Sequential round-trips for latency
            loss_count: Parallel requests for packet loss
        """
        self.client = client
        self.probe_url = probe_url
        self.payload_sizes = payload_sizes or [1024, 2048, 4096]
        self.timeout = timeout
        self.latency_count = latency_count
        self.loss_count = loss_count

    def _require_url(self) -> str:
        if not self.probe_url:
            raise ProbeFailure("No probe URL configured")
        return self.probe_url

    async def measure_bandwidth(self) -> float:
        """Estimate throughput from timed payload fetches.

        Returns:
            Average bandwidth in bits per second

        Raises:
            ProbeFailure: If no payload could be fetched
        """
        url = self._require_url()
        results: list[float] = []

        for size in self.payload_sizes:
            try:
                start = time.perf_counter()
                response = await self.client.get(
                    url,
                    params={"bytes": size, "t": int(time.time() * 1000)},
                    headers={"Cache-Control": "no-cache"},
                    timeout=self.timeout,
                )
                response.raise_for_status()
                received = len(response.content)
                duration = time.perf_counter() - start
            except httpx.HTTPError as e:
                logger.warning(f"Bandwidth test failed for size {size}: {e}")
                continue

            if duration > 0 and received > 0:
                results.append(received * 8 / duration)

        if not results:
            raise ProbeFailure("All bandwidth probes failed")
        return sum(results) / len(results)

    async def measure_latency(self) -> float:
        """Estimate latency from sequential HEAD round-trips.

        Returns:
            Average latency in milliseconds

        Raises:
            ProbeFailure: If every round-trip failed
        """
        url = self._require_url()
        measurements: list[float] = []

        for _ in range(self.latency_count):
            try:
                start = time.perf_counter()
                await self.client.head(
                    url, headers={"Cache-Control": "no-cache"}, timeout=self.timeout
                )
                measurements.append((time.perf_counter() - start) * 1000.0)
            except httpx.HTTPError as e:
                logger.warning(f"Latency measurement failed: {e}")

        if not measurements:
            raise ProbeFailure("All latency probes failed")
        return sum(measurements) / len(measurements)

    async def _probe_once(self, url: str) -> bool:
        try:
            response = await self.client.head(
                url, headers={"Cache-Control": "no-cache"}, timeout=self.timeout
            )
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    async def measure_packet_loss(self) -> float:
        """Estimate loss as the failed share of parallel small requests.

        Returns:
            Loss ratio in [0.0, 1.0]
        """
        url = self._require_url()
        results = await asyncio.gather(
            *(self._probe_once(url) for _ in range(self.loss_count)),
            return_exceptions=True,
        )
        success_count = sum(1 for result in results if result is True)
        return max(0.0, 1.0 - success_count / self.loss_count)
