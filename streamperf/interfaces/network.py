"""Network probe interface definitions."""

from abc import ABC, abstractmethod


class INetworkProbe(ABC):
    """Performs timed I/O to estimate link quality."""

    @abstractmethod
    async def measure_bandwidth(self) -> float:
        """Estimate throughput.

        Returns:
            Bandwidth in bits per second

        Raises:
            ProbeFailure: If no payload could be fetched
        """
        pass

    @abstractmethod
    async def measure_latency(self) -> float:
        """Estimate round-trip latency.

        Returns:
            Average latency in milliseconds

        Raises:
            ProbeFailure: If every round-trip failed
        """
        pass

    @abstractmethod
    async def measure_packet_loss(self) -> float:
        """Estimate loss from a burst of parallel small requests.

        Returns:
            Loss ratio in [0.0, 1.0]
        """
        pass
