"""Internal interfaces for streamperf components.

Abstract Base Classes (ABCs) defining contracts for buffer monitoring,
network probing, memory probing, and the opaque resource handles the
player hands to the resource manager.
"""

from streamperf.interfaces.buffer import IBufferHealthMonitor
from streamperf.interfaces.metrics import IMemoryProbe
from streamperf.interfaces.network import INetworkProbe
from streamperf.interfaces.resources import IEventTarget, IMediaElement, IPlayerInstance

__all__ = [
    # Buffer interfaces
    "IBufferHealthMonitor",
    # Probe interfaces
    "INetworkProbe",
    "IMemoryProbe",
    # Resource handle interfaces
    "IMediaElement",
    "IEventTarget",
    "IPlayerInstance",
]
