"""Garbage collection helpers for long playback sessions.

Collection is only ever requested, never required: the resource manager
calls these during aggressive cleanup and long-session optimization.
"""

import gc
import logging

logger = logging.getLogger(__name__)


def request_collection() -> int:
    """Request a full garbage collection (best effort).

    Returns:
        Number of unreachable objects found, or 0 if collection failed
    """
    try:
        collected = gc.collect()
    except Exception as e:
        logger.warning(f"Forced garbage collection failed: {e}")
        return 0

    logger.info(f"Forced garbage collection released {collected} objects")
    return collected


def get_gc_stats() -> dict[str, int | dict[str, int]]:
    """Get current garbage collection statistics.

    Returns:
        Dictionary with collection counts:
        - gen0: Generation 0 collections (short-lived objects)
        - gen1: Generation 1 collections
        - gen2: Generation 2 collections (expensive, long-lived objects)
        - current_counts: pending allocations per generation
    """
    counts = gc.get_count()
    stats = gc.get_stats()

    return {
        "gen0": stats[0]["collections"] if stats else 0,
        "gen1": stats[1]["collections"] if len(stats) > 1 else 0,
        "gen2": stats[2]["collections"] if len(stats) > 2 else 0,
        "current_counts": {
            "gen0": counts[0],
            "gen1": counts[1],
            "gen2": counts[2],
        },
    }
