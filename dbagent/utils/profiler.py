"""
Profiling utilities for dbagent.

Measures a block of work that fans out to worker processes:
- Wall-clock time (perf_counter)
- Peak RSS of the current process plus all of its children (psutil), sampled by a
  background thread since workers come and go during the block
- CPU percent of the current process

Usage:
    from dbagent.utils.profiler import profile_block

    with profile_block("select_users") as stats:
        asyncio.run(run_query())

    print(stats.duration_seconds, stats.peak_rss_bytes)
"""

from __future__ import annotations

import contextlib
import threading
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
    peak_rss_bytes: Optional[int] = field(default=None)
    peak_children: int = field(default=0)
    cpu_percent: Optional[float] = field(default=None)
    extra: dict[str, Any] = field(default_factory=dict)


def tree_rss_bytes(process: psutil.Process) -> tuple[int, int]:
    """Return (RSS of ``process`` and its descendants, number of descendants)."""
    total = process.memory_info().rss
    children = process.children(recursive=True)
    for child in children:
        try:
            total += child.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return total, len(children)


@contextlib.contextmanager
def profile_block(label: str, sample_interval_ms: int = 50) -> Generator[ProfileStats, None, None]:
    """
    Context manager to profile a block of code together with its child processes.

    Parameters
    ----------
    label : str
        Human-friendly label for the profiled block.
    sample_interval_ms : int
        Interval in milliseconds for RSS sampling.
    """
    stats = ProfileStats(label=label)
    process = psutil.Process()
    peak_rss, peak_children = tree_rss_bytes(process)
    stop_sampling = threading.Event()

    def _sample_memory() -> None:
        nonlocal peak_rss, peak_children
        while not stop_sampling.is_set():
            try:
                rss, children = tree_rss_bytes(process)
            except psutil.Error:
                rss, children = 0, 0
            peak_rss = max(peak_rss, rss)
            peak_children = max(peak_children, children)
            stop_sampling.wait(timeout=sample_interval_ms / 1000.0)

    # CPU percent needs a priming call
    process.cpu_percent(interval=None)

    sampler = threading.Thread(target=_sample_memory, daemon=True)
    sampler.start()

    stats.start_ts = time.perf_counter()
    try:
        yield stats
    finally:
        stats.end_ts = time.perf_counter()
        stats.duration_seconds = stats.end_ts - stats.start_ts

        stop_sampling.set()
        sampler.join(timeout=1.0)

        stats.peak_rss_bytes = peak_rss if peak_rss > 0 else None
        stats.peak_children = peak_children
        stats.cpu_percent = process.cpu_percent(interval=None)


__all__ = ["ProfileStats", "profile_block", "tree_rss_bytes"]
