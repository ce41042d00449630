"""Memory probe interface definitions."""

from abc import ABC, abstractmethod

from streamperf.models import HeapUsage


class IMemoryProbe(ABC):
    """Reports memory usage of the host process."""

    @abstractmethod
    def read(self) -> HeapUsage:
        """Take a memory reading.

        Returns:
            HeapUsage with used/total/limit in bytes
        """
        pass
