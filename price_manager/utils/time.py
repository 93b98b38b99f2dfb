"""Time utilities (epoch clock, elapsed formatting)."""
from __future__ import annotations
import time


def epoch_now() -> float:
    return time.time()


def format_elapsed(start_ts: float, end_ts: float | None = None) -> str:
    end = end_ts if end_ts is not None else epoch_now()
    ms = int((end - start_ts) * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{(end - start_ts)/60:.2f}m"

__all__ = ["epoch_now", "format_elapsed"]
