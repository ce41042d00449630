"""Performance orchestrator.

Owns one instance of each performance component plus the event bus they
share, drives the periodic ticks, and exposes the boundary API a player
integration talks to.
"""

import logging
import time
from typing import Any, Callable, Optional

import httpx

from streamperf.buffer_management import BufferHealthMonitor
from streamperf.config import StreamPerfConfig, get_config
from streamperf.connection_optimizer import ConnectionOptimizer
from streamperf.event_bus import EventBus, Handler, PerformanceEvent
from streamperf.gc_config import get_gc_stats
from streamperf.interfaces.metrics import IMemoryProbe
from streamperf.interfaces.network import INetworkProbe
from streamperf.metrics import QualityMetricsTracker, SegmentMetricsTracker
from streamperf.models import ConnectionInfo, OptimizationOpportunity
from streamperf.network_detector import NetworkConditionDetector
from streamperf.network_probe import HttpNetworkProbe
from streamperf.resource_manager import ResourceLifecycleManager
from streamperf.scheduler import PeriodicTimer

logger = logging.getLogger(__name__)


class PerformanceOrchestrator:
    """Coordinates buffer, network, resource and connection components."""

    # Overall score weights
    BUFFER_WEIGHT = 0.30
    SEGMENT_WEIGHT = 0.25
    QUALITY_WEIGHT = 0.25
    NETWORK_WEIGHT = 0.20

    # Network tier scores
    FAST_NETWORK_SCORE = 100
    MEDIUM_NETWORK_SCORE = 70
    SLOW_NETWORK_SCORE = 30

    # Optimization rule thresholds
    LOW_BUFFER_HEALTH = 50
    LOW_ADAPTATION_SCORE = 60

    def __init__(
        self,
        config: Optional[StreamPerfConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        network_probe: Optional[INetworkProbe] = None,
        memory_probe: Optional[IMemoryProbe] = None,
        revoke_blob_url: Optional[Callable[[str], None]] = None,
        is_attached: Optional[Callable[[Any], bool]] = None,
        clock: Callable[[], float] = time.time,
        install_exit_hook: bool = True,
    ):
        """Initialize orchestrator and its components.

        Args:
            config: Configuration shared by every component
            client: HTTP client for requests and probing; one is created if omitted
            network_probe: Probe for the detector; built from ``probe_url`` if omitted
            memory_probe: Memory reader for the resource manager
            revoke_blob_url: Callback releasing a blob URL
            is_attached: Predicate telling whether an element is still live
            clock: Time source for resource aging
            install_exit_hook: Sweep resources at interpreter exit
        """
        self.config = config or get_config()
        self.event_bus = EventBus()

        self.buffer_monitor = BufferHealthMonitor(self.config, self.event_bus)
        self.segment_metrics = SegmentMetricsTracker(
            history_size=self.config.segment_history_size,
            slow_load_ms=self.config.slow_segment_load_ms,
        )
        self.quality_metrics = QualityMetricsTracker(
            history_size=self.config.quality_history_size,
            oscillation_window=self.config.oscillation_window,
            oscillation_penalty=self.config.oscillation_penalty,
        )
        self.connection_optimizer = ConnectionOptimizer(client, self.config, self.event_bus)

        if network_probe is None and self.config.probe_url:
            network_probe = HttpNetworkProbe(
                self.connection_optimizer.client,
                self.config.probe_url,
                payload_sizes=self.config.probe_payload_sizes,
                timeout=self.config.probe_timeout,
                latency_count=self.config.latency_probe_count,
                loss_count=self.config.packet_loss_probe_count,
            )
        self.network_detector = NetworkConditionDetector(network_probe, self.config, self.event_bus)
        self.resource_manager = ResourceLifecycleManager(
            self.config,
            self.event_bus,
            memory_probe=memory_probe,
            revoke_blob_url=revoke_blob_url,
            is_attached=is_attached,
            clock=clock,
            install_exit_hook=install_exit_hook,
        )

        self.network_snapshot: dict[str, Any] = self.network_detector.get_conditions()
        self.is_monitoring = False
        self.destroyed = False
        self._timers: list[PeriodicTimer] = []

    # Monitoring lifecycle

    def start_monitoring(self) -> None:
        """Start the periodic ticks and network probing on the running loop."""
        if self.destroyed:
            raise RuntimeError("Orchestrator has been destroyed")
        if self.is_monitoring:
            return

        logger.info("Starting performance monitoring")
        self._timers = [
            PeriodicTimer("buffer", self.config.buffer_tick_interval, self._buffer_tick),
            PeriodicTimer("network", self.config.network_tick_interval, self._network_tick),
            PeriodicTimer("memory", self.config.memory_tick_interval, self._memory_tick),
        ]
        for timer in self._timers:
            timer.start()
        self.network_detector.start_detection()
        self.is_monitoring = True

    def stop_monitoring(self) -> None:
        """Cancel every periodic tick, the network probe timer and batch timers.

        Queued batchable requests are flushed rather than dropped.
        """
        self.connection_optimizer.flush_pending()
        if not self.is_monitoring:
            return
        logger.info("Stopping performance monitoring")
        for timer in self._timers:
            timer.stop()
        self._timers = []
        self.network_detector.stop_detection()
        self.is_monitoring = False

    def pending_timer_count(self) -> int:
        """Number of live timers, including batch-flush timers."""
        active = sum(1 for timer in self._timers if timer.is_active)
        return active + self.network_detector.pending_timers + self.connection_optimizer.pending_timers

    def destroy(self) -> None:
        """Stop monitoring and release every resource. Idempotent."""
        if self.destroyed:
            return
        logger.info("Destroying performance orchestrator")
        self.connection_optimizer.destroy()
        self.stop_monitoring()
        self.resource_manager.destroy()
        self.event_bus.clear()
        self.destroyed = True

    async def aclose(self) -> None:
        """Destroy and close the HTTP client if the orchestrator created it."""
        self.destroy()
        await self.connection_optimizer.aclose()

    # Ticks

    def _buffer_tick(self) -> None:
        self.buffer_monitor.evaluate()
        self.segment_metrics.refresh()
        self.quality_metrics.refresh()
        self.check_optimization_opportunities()

    def _network_tick(self) -> None:
        self.network_snapshot = self.network_detector.get_conditions()

    def _memory_tick(self) -> None:
        manager = self.resource_manager
        manager.update_memory_metrics()
        manager.check_memory_pressure()
        manager.maybe_perform_scheduled_cleanup()
        manager.optimize_garbage_collection()

        recommendations = manager.monitor_resource_usage()
        for recommendation in recommendations:
            if recommendation.priority == "medium":
                manager.apply_recommendation(recommendation)

        urgent = [r.to_dict() for r in recommendations if r.priority in ("high", "critical")]
        if urgent:
            logger.warning(f"{len(urgent)} urgent resource recommendations")
            self.event_bus.emit(PerformanceEvent.RESOURCE_RECOMMENDATIONS, urgent)

    # Write API

    def record_segment_load(self, load_time_ms: float, success: bool = True) -> None:
        self.segment_metrics.record_segment_load(load_time_ms, success)

    def record_quality_switch(self, from_quality: float, to_quality: float, reason: str = "unknown") -> None:
        self.quality_metrics.record_quality_switch(from_quality, to_quality, reason)

    def record_buffer_stall(self, duration_ms: float = 0.0) -> None:
        self.buffer_monitor.record_buffer_stall(duration_ms)

    def record_gap_jump(self) -> None:
        self.buffer_monitor.record_gap_jump()

    def update_buffer_level(self, seconds: float) -> None:
        self.buffer_monitor.update_buffer_level(seconds)

    def handle_connection_change(self, info: ConnectionInfo) -> None:
        self.network_detector.handle_connection_change(info)
        self.network_snapshot = self.network_detector.get_conditions()

    # Events

    def on(self, event: PerformanceEvent | str, handler: Handler) -> None:
        self.event_bus.on(event, handler)

    def off(self, event: PerformanceEvent | str, handler: Handler) -> None:
        self.event_bus.off(event, handler)

    # Scoring and advice

    def network_tier_score(self) -> Optional[int]:
        """Score the link by bandwidth tier, or None before any bandwidth data."""
        if not self.network_detector.bandwidth_known:
            return None
        bandwidth = self.network_detector.conditions.bandwidth
        if bandwidth > self.config.fast_connection_bps:
            return self.FAST_NETWORK_SCORE
        if bandwidth > self.config.slow_connection_bps:
            return self.MEDIUM_NETWORK_SCORE
        return self.SLOW_NETWORK_SCORE

    def compute_overall_score(self) -> int:
        """Weighted blend of the available factor scores.

        Factors without data are left out of both the weighted sum and the
        total weight, so the result stays within [0, 100].

        Returns:
            Overall score, 0 when no factor has data
        """
        factors = [
            (self.buffer_monitor.health_score, self.BUFFER_WEIGHT),
            (self.segment_metrics.success_rate, self.SEGMENT_WEIGHT),
            (self.quality_metrics.adaptation_score, self.QUALITY_WEIGHT),
            (self.network_tier_score(), self.NETWORK_WEIGHT),
        ]
        present = [(value, weight) for value, weight in factors if value is not None]
        total_weight = sum(weight for _, weight in present)
        if total_weight == 0:
            return 0
        score = sum(value * weight for value, weight in present) / total_weight
        return round(min(100.0, max(0.0, score)))

    @staticmethod
    def status_for_score(score: int) -> str:
        if score >= 80:
            return "excellent"
        if score >= 60:
            return "good"
        if score >= 40:
            return "fair"
        return "poor"

    def check_optimization_opportunities(self) -> list[OptimizationOpportunity]:
        """Evaluate the optimization rules and publish each one that fires.

        Opportunities are advisory; nothing about playback is changed here.
        """
        opportunities: list[OptimizationOpportunity] = []
        detector = self.network_detector

        health = self.buffer_monitor.health_score
        if health is not None and health < self.LOW_BUFFER_HEALTH:
            current = detector.recommendations.buffer_size
            opportunities.append(
                OptimizationOpportunity(
                    type="buffer",
                    action="increase_buffer_size",
                    reason="Low buffer health detected",
                    priority="high",
                    proposal={
                        "buffer_size": self.resource_manager.optimize_buffer_size(
                            detector.conditions, current
                        )
                    },
                )
            )

        if detector.bandwidth_known and detector.conditions.bandwidth < self.config.slow_connection_bps:
            opportunities.append(
                OptimizationOpportunity(
                    type="quality",
                    action="reduce_quality",
                    reason="Slow network connection detected",
                    priority="high",
                    proposal={"quality_levels": list(detector.recommendations.quality_levels)},
                )
            )

        average_load = self.segment_metrics.average_load_time
        if average_load is not None and average_load > self.config.slow_segment_load_ms:
            opportunities.append(
                OptimizationOpportunity(
                    type="cdn",
                    action="try_alternative_cdn",
                    reason="Slow segment loading detected",
                    priority="medium",
                    proposal={"current_endpoint": self.connection_optimizer.current_endpoint},
                )
            )

        adaptation = self.quality_metrics.adaptation_score
        if adaptation is not None and adaptation < self.LOW_ADAPTATION_SCORE:
            opportunities.append(
                OptimizationOpportunity(
                    type="adaptation",
                    action="stabilize_quality",
                    reason="Quality oscillation detected",
                    priority="medium",
                    proposal={"adaptation_speed": "slow"},
                )
            )

        for opportunity in opportunities:
            logger.debug(f"Optimization opportunity: {opportunity.action} ({opportunity.reason})")
            self.event_bus.emit(PerformanceEvent.OPTIMIZATION_APPLIED, opportunity.to_dict())
        return opportunities

    # Reporting

    def get_performance_summary(self) -> dict[str, Any]:
        score = self.compute_overall_score()
        conditions = self.network_detector.conditions
        memory = self.resource_manager.metrics
        segments = self.segment_metrics.get_summary()
        quality = self.quality_metrics.get_summary()

        return {
            "overall": {"score": score, "status": self.status_for_score(score)},
            "buffer": self.buffer_monitor.get_summary(),
            "network": {
                "bandwidth_mbps": round(conditions.bandwidth / 1_000_000, 2),
                "latency_ms": conditions.latency,
                "packet_loss": conditions.packet_loss,
                "type": conditions.effective_type,
                "stability": conditions.stability,
                "trend": conditions.trend,
                "class": self.network_detector.get_network_class(),
            },
            "segments": {
                "average_load_time": segments["average_load_time"],
                "success_rate": segments["success_rate"],
                "failed": segments["failed"],
                "total": segments["total"],
            },
            "quality": quality,
            "memory": {
                "heap_used_mb": round(memory.heap_used / (1024 * 1024)),
                "pressure": memory.memory_pressure,
                "blob_urls": len(self.resource_manager.blob_urls),
            },
        }

    def get_streaming_parameters(self) -> dict[str, Any]:
        return self.network_detector.get_streaming_parameters()

    def export_performance_data(self) -> dict[str, Any]:
        """Full snapshot of every component for offline analysis."""
        return {
            "timestamp": time.time(),
            "summary": self.get_performance_summary(),
            "network": self.network_detector.get_conditions(),
            "segments": self.segment_metrics.get_summary(),
            "resources": self.resource_manager.get_resource_usage_report(),
            "connections": {
                "metrics": self.connection_optimizer.get_metrics(),
                "cdn": self.connection_optimizer.get_cdn_status(),
                "pool": self.connection_optimizer.get_connection_pool_status(),
            },
            "timers": {
                timer.name: {
                    "ticks": timer.ticks,
                    "skipped": timer.skipped_ticks,
                    "failed": timer.failed_ticks,
                }
                for timer in self._timers
            },
            "gc": get_gc_stats(),
            "config": self.config.model_dump(),
        }

    # Request and resource pass-throughs

    async def optimize_request(self, url: str, method: str = "GET", **options: Any) -> httpx.Response:
        return await self.connection_optimizer.optimize_request(url, method, **options)

    def register_blob_url(self, url: str, size: int = 0, type: str = "unknown", source: str = "unknown") -> None:
        self.resource_manager.register_blob_url(url, size=size, type=type, source=source)

    def unregister_blob_url(self, url: str) -> bool:
        return self.resource_manager.unregister_blob_url(url)

    def register_media_element(self, element: Any) -> None:
        self.resource_manager.register_media_element(element)

    def unregister_media_element(self, element: Any) -> bool:
        return self.resource_manager.unregister_media_element(element)

    def register_player_instance(self, instance: Any) -> None:
        self.resource_manager.register_player_instance(instance)

    def unregister_player_instance(self, instance: Any) -> bool:
        return self.resource_manager.unregister_player_instance(instance)

    def register_event_listeners(self, element: Any, listeners: list[dict[str, Any]]) -> int:
        return self.resource_manager.register_event_listeners(element, listeners)

    def unregister_event_listeners(self, element: Any) -> int:
        return self.resource_manager.unregister_event_listeners(element)
