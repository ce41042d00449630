"""streamperf - Performance control for adaptive media streaming.

This package contains the buffer, network, resource and connection
components plus the orchestrator that coordinates them for one playback
session.
"""

from streamperf.buffer_management import BufferHealthMonitor
from streamperf.config import StreamPerfConfig, get_config
from streamperf.connection_optimizer import ConnectionOptimizer
from streamperf.event_bus import EventBus, PerformanceEvent
from streamperf.exceptions import (
    ConfigurationError,
    OptimizerClosedError,
    ProbeFailure,
    RequestFailure,
    StreamPerfError,
)
from streamperf.network_detector import NetworkConditionDetector
from streamperf.orchestrator import PerformanceOrchestrator
from streamperf.resource_manager import ResourceLifecycleManager

__version__ = "0.1.0"

__all__ = [
    # Components
    "BufferHealthMonitor",
    "NetworkConditionDetector",
    "ResourceLifecycleManager",
    "ConnectionOptimizer",
    "PerformanceOrchestrator",
    # Events
    "EventBus",
    "PerformanceEvent",
    # Configuration
    "StreamPerfConfig",
    "get_config",
    # Errors
    "StreamPerfError",
    "ProbeFailure",
    "RequestFailure",
    "OptimizerClosedError",
    "ConfigurationError",
]
