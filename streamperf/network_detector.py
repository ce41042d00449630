"""Network condition detection and streaming parameter recommendations.

Periodically probes bandwidth, latency and packet loss, keeps bounded
histories of each, classifies link stability and trend, and derives the
streaming parameters a player should use on the current link.
"""

import logging
import threading
import time
from typing import Any, Optional

import numpy as np

from streamperf.config import StreamPerfConfig, get_config
from streamperf.event_bus import EventBus, PerformanceEvent
from streamperf.exceptions import ProbeFailure
from streamperf.interfaces.network import INetworkProbe
from streamperf.models import (
    NETWORK_CLASSES,
    ConnectionInfo,
    NetworkClass,
    NetworkConditions,
    StreamingRecommendations,
)
from streamperf.ring_buffer import RingBuffer
from streamperf.scheduler import PeriodicTimer

logger = logging.getLogger(__name__)

# Bandwidth classification thresholds (bits per second, lower bounds)
BANDWIDTH_EXCELLENT = 10_000_000
BANDWIDTH_GOOD = 5_000_000
BANDWIDTH_FAIR = 2_000_000

# Latency classification thresholds (milliseconds, upper bounds)
LATENCY_EXCELLENT = 50
LATENCY_GOOD = 100
LATENCY_FAIR = 200

# Packet loss classification thresholds (ratio, upper bounds)
LOSS_EXCELLENT = 0.001
LOSS_GOOD = 0.01
LOSS_FAIR = 0.03
LOSS_POOR = 0.05

# Bandwidth estimates for platform effective connection types
EFFECTIVE_TYPE_BANDWIDTH = {
    "slow-2g": 50_000,
    "2g": 250_000,
    "3g": 1_500_000,
    "4g": 10_000_000,
}

# Quality ladders by minimum bandwidth (Mbps)
QUALITY_TIERS: list[tuple[float, list[str]]] = [
    (25.0, ["4K", "1080p", "720p", "480p"]),
    (10.0, ["1080p", "720p", "480p", "360p"]),
    (5.0, ["720p", "480p", "360p"]),
    (2.0, ["480p", "360p", "240p"]),
    (0.0, ["360p", "240p"]),
]


def coefficient_of_variation(values: list[float]) -> float:
    """Population standard deviation divided by the mean.

    Returns 0.0 for fewer than two values or a non-positive mean.
    """
    if len(values) < 2:
        return 0.0
    arr = np.asarray(values, dtype=float)
    mean = float(np.mean(arr))
    if mean <= 0:
        return 0.0
    return float(np.std(arr)) / mean


def recommended_quality_levels(bandwidth: float) -> list[str]:
    """Quality ladder the link can sustain.

    Args:
        bandwidth: Bandwidth in bits per second
    """
    mbps = bandwidth / 1_000_000
    for minimum, levels in QUALITY_TIERS:
        if mbps >= minimum:
            return list(levels)
    return list(QUALITY_TIERS[-1][1])


class NetworkConditionDetector:
    """Tracks link quality and proposes streaming parameters."""

    def __init__(
        self,
        probe: Optional[INetworkProbe] = None,
        config: Optional[StreamPerfConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize detector.

        Args:
            probe: Network probe; without one only passive updates apply
            config: Configuration (defaults to global config)
            event_bus: Bus receiving network_condition_change events
        """
        self.probe = probe
        self.config = config or get_config()
        self.event_bus = event_bus or EventBus()

        self.conditions = NetworkConditions()
        self.recommendations = StreamingRecommendations(
            quality_levels=recommended_quality_levels(0.0)
        )

        size = self.config.history_size
        self.bandwidth_history = RingBuffer(capacity=size)
        self.latency_history = RingBuffer(capacity=size)
        self.packet_loss_history = RingBuffer(capacity=size)
        self.measurement_count = 0
        self.last_measurement: Optional[float] = None
        self.bandwidth_known = False

        self._timer: Optional[PeriodicTimer] = None
        self._lock = threading.Lock()

    # Detection lifecycle

    @property
    def is_detecting(self) -> bool:
        return self._timer is not None and self._timer.is_active

    def start_detection(self) -> None:
        """Start periodic probing on the running event loop."""
        if self.is_detecting:
            return
        if self.probe is None:
            logger.info("No network probe configured, relying on passive updates")
            return

        logger.info(
            f"Starting network condition detection (every {self.config.network_probe_interval}s)"
        )
        self._timer = PeriodicTimer(
            "network-probe",
            self.config.network_probe_interval,
            self.perform_measurement,
            run_immediately=True,
        )
        self._timer.start()

    def stop_detection(self) -> None:
        """Stop periodic probing."""
        if self._timer is None:
            return
        self._timer.stop()
        self._timer = None
        logger.info("Stopped network condition detection")

    @property
    def pending_timers(self) -> int:
        return 1 if self.is_detecting else 0

    # Measurement

    async def _measure(self, name: str, measure, fallback: float) -> tuple[float, bool]:
        try:
            return float(await measure()), True
        except ProbeFailure as e:
            logger.warning(f"{name} probe incomplete, keeping {fallback}: {e}")
        except Exception as e:
            logger.warning(f"{name} probe failed, keeping {fallback}: {e}")
        return fallback, False

    async def perform_measurement(self) -> bool:
        """Run one probe cycle and update conditions.

        Never raises: failed probes keep their last known value.

        Returns:
            True if at least one probe produced a fresh value
        """
        if self.probe is None:
            return False

        start = time.perf_counter()
        bandwidth, bw_ok = await self._measure(
            "Bandwidth", self.probe.measure_bandwidth, self.conditions.bandwidth
        )
        latency, lat_ok = await self._measure(
            "Latency", self.probe.measure_latency, self.conditions.latency
        )
        packet_loss, loss_ok = await self._measure(
            "Packet loss", self.probe.measure_packet_loss, self.conditions.packet_loss
        )

        if not (bw_ok or lat_ok or loss_ok):
            logger.warning("Network measurement produced no fresh values")
            return False

        if bw_ok:
            self.bandwidth_known = True
        self.update_conditions(bandwidth, latency, packet_loss)
        self.notify()

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        logger.debug(f"Network measurement completed in {elapsed_ms:.0f}ms")
        return True

    async def measure_now(self) -> dict[str, Any]:
        """Force an immediate measurement and return the resulting state."""
        logger.info("Performing immediate network measurement")
        await self.perform_measurement()
        return self.get_conditions()

    def update_conditions(self, bandwidth: float, latency: float, packet_loss: float) -> None:
        """Record a measurement and recompute derived state.

        Args:
            bandwidth: Bits per second
            latency: Milliseconds
            packet_loss: Loss ratio in [0.0, 1.0]
        """
        now = time.time()
        with self._lock:
            self.conditions.bandwidth = bandwidth
            self.conditions.latency = latency
            self.conditions.packet_loss = min(1.0, max(0.0, packet_loss))

            self.bandwidth_history.append(bandwidth, now)
            self.latency_history.append(latency, now)
            self.packet_loss_history.append(self.conditions.packet_loss, now)

            self.measurement_count += 1
            self.last_measurement = now
            if bandwidth > 0:
                self.bandwidth_known = True

        self.analyze_conditions()
        self.generate_recommendations()

    def handle_connection_change(self, info: ConnectionInfo) -> None:
        """Apply a platform connection-change notification immediately.

        Args:
            info: Connection type, effective type, downlink (Mbps), rtt (ms)
        """
        with self._lock:
            self.conditions.connection_type = info.type or "unknown"
            self.conditions.effective_type = info.effective_type or "unknown"

            if info.downlink:
                self.conditions.bandwidth = info.downlink * 1_000_000
                self.bandwidth_known = True
            elif info.effective_type in EFFECTIVE_TYPE_BANDWIDTH:
                self.conditions.bandwidth = EFFECTIVE_TYPE_BANDWIDTH[info.effective_type]
                self.bandwidth_known = True

            if info.rtt:
                self.conditions.latency = info.rtt

        logger.info(
            f"Network API update: type={self.conditions.connection_type} "
            f"effective={self.conditions.effective_type} "
            f"bandwidth={self.conditions.bandwidth / 1_000_000:.2f}Mbps "
            f"latency={self.conditions.latency:.0f}ms"
        )
        self.analyze_conditions()
        self.generate_recommendations()
        self.notify()

    # Analysis

    def analyze_conditions(self) -> None:
        """Classify stability and trend from the histories."""
        bandwidth_values = self.bandwidth_history.values()
        latency_values = self.latency_history.values()

        cv = max(
            coefficient_of_variation(bandwidth_values),
            coefficient_of_variation(latency_values),
        )
        if cv > self.config.unstable_cv_threshold:
            stability = "unstable"
        elif cv > self.config.fluctuating_cv_threshold:
            stability = "fluctuating"
        else:
            stability = "stable"

        trend = self.conditions.trend
        if len(bandwidth_values) >= 5:
            recent = float(np.mean(bandwidth_values[-3:]))
            older = float(np.mean(bandwidth_values[-6:-3]))
            change = (recent - older) / older if older > 0 else 0.0
            if change > self.config.trend_threshold:
                trend = "improving"
            elif change < -self.config.trend_threshold:
                trend = "degrading"
            else:
                trend = "stable"

        with self._lock:
            self.conditions.stability = stability
            self.conditions.trend = trend

        logger.debug(
            f"Network analysis: bandwidth={self.conditions.bandwidth / 1_000_000:.2f}Mbps "
            f"latency={self.conditions.latency:.0f}ms "
            f"loss={self.conditions.packet_loss * 100:.2f}% "
            f"cv={cv:.3f} stability={stability} trend={trend}"
        )

    def generate_recommendations(self) -> StreamingRecommendations:
        """Derive streaming parameters from the current conditions."""
        with self._lock:
            bandwidth = self.conditions.bandwidth
            packet_loss = self.conditions.packet_loss
            stability = self.conditions.stability

        if stability == "unstable" or packet_loss > LOSS_FAIR:
            buffer_size, max_buffer_length = 60, 120
        elif bandwidth > BANDWIDTH_GOOD:
            buffer_size, max_buffer_length = 20, 40
        else:
            buffer_size, max_buffer_length = 30, 60

        if packet_loss > LOSS_POOR:
            segment_retries = 5
        elif packet_loss > LOSS_FAIR:
            segment_retries = 3
        else:
            segment_retries = 1

        if stability == "unstable":
            adaptation_speed = "slow"
        elif stability == "stable" and bandwidth > BANDWIDTH_GOOD:
            adaptation_speed = "fast"
        else:
            adaptation_speed = "normal"

        if bandwidth > BANDWIDTH_EXCELLENT and stability == "stable":
            prefetch_segments = 5
        elif bandwidth < BANDWIDTH_FAIR or stability == "unstable":
            prefetch_segments = 1
        else:
            prefetch_segments = 3

        recommendations = StreamingRecommendations(
            buffer_size=buffer_size,
            max_buffer_length=max_buffer_length,
            segment_retries=segment_retries,
            quality_levels=recommended_quality_levels(bandwidth),
            adaptation_speed=adaptation_speed,
            prefetch_segments=prefetch_segments,
        )
        with self._lock:
            self.recommendations = recommendations
        return recommendations

    def get_network_class(self) -> NetworkClass:
        """Classify the link as the worst of its bandwidth, latency and loss classes."""
        with self._lock:
            bandwidth = self.conditions.bandwidth
            latency = self.conditions.latency
            packet_loss = self.conditions.packet_loss

        if bandwidth >= BANDWIDTH_EXCELLENT:
            bandwidth_class = 0
        elif bandwidth >= BANDWIDTH_GOOD:
            bandwidth_class = 1
        elif bandwidth >= BANDWIDTH_FAIR:
            bandwidth_class = 2
        else:
            bandwidth_class = 3

        if latency <= LATENCY_EXCELLENT:
            latency_class = 0
        elif latency <= LATENCY_GOOD:
            latency_class = 1
        elif latency <= LATENCY_FAIR:
            latency_class = 2
        else:
            latency_class = 3

        if packet_loss <= LOSS_EXCELLENT:
            loss_class = 0
        elif packet_loss <= LOSS_GOOD:
            loss_class = 1
        elif packet_loss <= LOSS_FAIR:
            loss_class = 2
        else:
            loss_class = 3

        return NETWORK_CLASSES[max(bandwidth_class, latency_class, loss_class)]

    # Reporting

    def notify(self) -> None:
        """Publish the current conditions to network_condition_change handlers."""
        self.event_bus.emit(PerformanceEvent.NETWORK_CONDITION_CHANGE, self.get_conditions())

    def get_conditions(self) -> dict[str, Any]:
        """Get conditions, recommendations, class and measurement bookkeeping."""
        network_class = self.get_network_class()
        with self._lock:
            return {
                "conditions": self.conditions.to_dict(),
                "recommendations": self.recommendations.to_dict(),
                "network_class": network_class,
                "measurements": {
                    "count": self.measurement_count,
                    "last_measurement": self.last_measurement,
                },
            }

    def get_streaming_parameters(self) -> dict[str, Any]:
        """Get the streaming parameters for the current conditions."""
        network_class = self.get_network_class()
        with self._lock:
            params = self.recommendations.to_dict()
            params.update(
                network_class=network_class,
                stability=self.conditions.stability,
                trend=self.conditions.trend,
            )
        return params

    def reset(self) -> None:
        """Forget all measurements and derived state."""
        with self._lock:
            self.conditions = NetworkConditions()
            self.recommendations = StreamingRecommendations(
                quality_levels=recommended_quality_levels(0.0)
            )
            self.bandwidth_history.clear()
            self.latency_history.clear()
            self.packet_loss_history.clear()
            self.measurement_count = 0
            self.last_measurement = None
            self.bandwidth_known = False
