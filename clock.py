import time
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds"""
    return int(time.time() * 1000)


def is_fresh(last_seen: int, now: int, ttl_ms: int) -> bool:
    """Liveness check shared by listing, lookups and sweeps"""
    return now - last_seen <= ttl_ms
