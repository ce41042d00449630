"""Data structures shared by the performance components."""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional

Stability = Literal["stable", "fluctuating", "unstable"]
Trend = Literal["improving", "degrading", "stable"]
NetworkClass = Literal["excellent", "good", "fair", "poor"]
AdaptationSpeed = Literal["slow", "normal", "fast"]
MemoryPressure = Literal["low", "medium", "high", "critical"]

NETWORK_CLASSES: tuple[NetworkClass, ...] = ("excellent", "good", "fair", "poor")
PRESSURE_LEVELS: tuple[MemoryPressure, ...] = ("low", "medium", "high", "critical")


@dataclass(frozen=True)
class Sample:
    """A single measurement held in a bounded history."""

    value: float
    timestamp: float


@dataclass
class NetworkConditions:
    """Latest view of the network link.

    Attributes:
        bandwidth: Estimated throughput in bits per second
        latency: Round-trip latency in milliseconds
        packet_loss: Lost request ratio in [0.0, 1.0]
        stability: Coefficient-of-variation classification
        trend: Direction of recent bandwidth change
        connection_type: Platform connection type (wifi, cellular, ...)
        effective_type: Platform effective type (slow-2g, 2g, 3g, 4g)
    """

    bandwidth: float = 0.0
    latency: float = 0.0
    packet_loss: float = 0.0
    stability: Stability = "stable"
    trend: Trend = "stable"
    connection_type: str = "unknown"
    effective_type: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectionInfo:
    """Platform connection-change notification payload.

    Attributes:
        type: Connection type reported by the platform
        effective_type: Effective connection class (e.g. "4g")
        downlink: Downlink estimate in megabits per second
        rtt: Round-trip time estimate in milliseconds
    """

    type: str = "unknown"
    effective_type: str = "unknown"
    downlink: float = 0.0
    rtt: float = 0.0


@dataclass
class StreamingRecommendations:
    """Streaming parameters proposed to the player."""

    buffer_size: int = 30
    max_buffer_length: int = 60
    segment_retries: int = 3
    quality_levels: list[str] = field(default_factory=list)
    adaptation_speed: AdaptationSpeed = "normal"
    prefetch_segments: int = 3

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BufferHealthState:
    """Buffer level and stall bookkeeping."""

    current_level: float = 0.0
    target_level: float = 30.0
    stalls: int = 0
    stall_duration_total: float = 0.0
    last_stall_timestamp: Optional[float] = None
    gap_jumps: int = 0
    health_score: Optional[int] = None
    level_reported: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class QualitySwitch:
    """One entry of the quality history."""

    quality: float
    timestamp: float
    reason: str = "unknown"


@dataclass
class BlobUrlRecord:
    """Tracking metadata for a registered blob URL."""

    created: float
    last_accessed: float
    size: int = 0
    type: str = "unknown"
    source: str = "unknown"


@dataclass
class ListenerRecord:
    """A listener attached to a tracked element."""

    event: str
    handler: Any
    options: Any = None
    registered: float = 0.0


@dataclass
class SubtitleCacheEntry:
    """Cached subtitle payload for one language."""

    data: Any
    created: float
    size: int = 0
    last_accessed: float = 0.0


@dataclass
class MemoryMetrics:
    """Memory usage and resource counters.

    heap_* values are bytes as reported by the memory probe.
    """

    heap_used: int = 0
    heap_total: int = 0
    heap_limit: int = 0
    total_blob_urls: int = 0
    total_blob_size: int = 0
    total_event_listeners: int = 0
    memory_pressure: MemoryPressure = "low"
    last_cleanup: float = 0.0
    cleanup_count: int = 0
    blob_cleanups: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ResourceRecommendation:
    """Advisory cleanup recommendation produced by resource monitoring."""

    type: str
    priority: Literal["medium", "high", "critical"]
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EndpointMetrics:
    """Rolling health of a CDN endpoint."""

    latency: float = 0.0
    success_rate: float = 0.0
    total_requests: int = 0
    successful_requests: int = 0
    last_used: float = 0.0

    @property
    def score(self) -> float:
        """Selection score: reliability weighted by responsiveness."""
        return self.success_rate * (1000.0 / (self.latency + 100.0))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class HostConnectionStats:
    """Per-host connection reuse bookkeeping."""

    total_requests: int = 0
    success_count: int = 0
    last_used: float = 0.0

    @property
    def success_rate(self) -> float:
        return (self.success_count / self.total_requests * 100.0) if self.total_requests else 0.0


@dataclass
class OptimizerMetrics:
    """Request-level counters for the connection optimizer."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    batched_requests: int = 0
    batches_flushed: int = 0
    cdn_failovers: int = 0
    average_latency: float = 0.0
    connection_reuses: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class OptimizationOpportunity:
    """Advisory event payload; applying it is the consumer's decision."""

    type: Literal["buffer", "quality", "cdn", "adaptation"]
    action: str
    reason: str
    priority: Literal["high", "medium"]
    proposal: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class HeapUsage:
    """Memory reading from a memory probe, in bytes."""

    used: int
    total: int
    limit: int

    @property
    def usage_ratio(self) -> float:
        return self.used / self.limit if self.limit > 0 else 0.0
