"""
Timing and resource sampling for maintenance passes.

`profile_block` measures wall-clock duration and, when psutil is available,
CPU percent and RSS of the current process around a block of work. The
clustering pass uses it to report how long each table rewrite took.

Usage:
    with profile_block("cluster:blocks") as stats:
        cluster_table()
    log.info("done", extra={"seconds": stats.duration_seconds})
"""

from __future__ import annotations

import contextlib
import time
from dataclasses import dataclass, field
from typing import Any, Generator, Optional

import psutil


@dataclass
class ProfileStats:
    """
    Container for profiling measurements.
    """

    label: str
    start_ts: float = field(default=0.0)
    end_ts: float = field(default=0.0)
    duration_seconds: float = field(default=0.0)
    rss_before_bytes: Optional[int] = field(default=None)
    rss_after_bytes: Optional[int] = field(default=None)
    cpu_percent: Optional[float] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "duration_seconds": round(self.duration_seconds, 3),
            "rss_before_bytes": self.rss_before_bytes,
            "rss_after_bytes": self.rss_after_bytes,
            "cpu_percent": round(self.cpu_percent, 1) if self.cpu_percent is not None else None,
            **self.extra,
        }


@contextlib.contextmanager
def profile_block(label: str, sample_resources: bool = True) -> Generator[ProfileStats, None, None]:
    """
    Context manager to time a block of code.

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block.
    sample_resources : bool
        Whether to sample RSS and CPU percent through psutil.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process() if sample_resources else None

    if process is not None:
        # cpu_percent needs a priming call
        process.cpu_percent(interval=None)
        stats.rss_before_bytes = process.memory_info().rss

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts
        if process is not None:
            stats.cpu_percent = process.cpu_percent(interval=None)
            stats.rss_after_bytes = process.memory_info().rss


__all__ = ["ProfileStats", "profile_block"]
