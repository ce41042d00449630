"""Process memory probing.

Uses psutil for process-level memory usage. Resident set size stands in
for "heap used", virtual size for "heap total", and the memory available
to the process (an explicit limit or total system memory) for the limit.
"""

import logging
from typing import Optional

import psutil

from streamperf.interfaces.metrics import IMemoryProbe
from streamperf.models import HeapUsage

logger = logging.getLogger(__name__)


class PsutilMemoryProbe(IMemoryProbe):
    """Reads memory usage of the current process."""

    def __init__(self, limit_bytes: Optional[int] = None) -> None:
        """Initialize memory probe.

        Args:
            limit_bytes: Memory budget for the process; defaults to total
                system memory
        """
        self.process = psutil.Process()
        self.limit_bytes = limit_bytes or psutil.virtual_memory().total
        self.baseline_bytes: Optional[int] = None

    def read(self) -> HeapUsage:
        """Take a memory reading.

        Returns:
            HeapUsage with RSS as used, VMS as total, and the budget as limit
        """
        memory_info = self.process.memory_info()
        usage = HeapUsage(
            used=memory_info.rss,
            total=memory_info.vms,
            limit=self.limit_bytes,
        )
        if self.baseline_bytes is None:
            self.baseline_bytes = usage.used
            logger.info(f"Memory baseline set to {usage.used / (1024 * 1024):.1f}MB")
        return usage

    def growth_mb(self) -> float:
        """Memory growth since the first reading, in MB."""
        if self.baseline_bytes is None:
            return 0.0
        current = self.process.memory_info().rss
        return (current - self.baseline_bytes) / (1024 * 1024)
