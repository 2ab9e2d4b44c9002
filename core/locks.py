"""
core/locks.py -- Per-key mutual exclusion over a fixed lock pool.

KeyedLocks maps a string key onto one of a fixed number of threading.Locks
(striping by hash). Two requests touching the same principal (or the same
rate-limit counter) always land on the same lock and serialize. Different
keys usually get different locks; a collision only costs some extra waiting.
FastAPI runs sync handlers in a thread pool, which is why these are thread
locks rather than asyncio locks.

Memory is fixed at construction. Client IPs are unbounded (IPv6, spoofed
X-Forwarded-For), so nothing here is allocated per key.

Hold at most one lock from a pool at a time: two keys can share a stripe,
and threading.Lock is not reentrant.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager

DEFAULT_POOL_SIZE = 256


class KeyedLocks:
    def __init__(self, size: int = DEFAULT_POOL_SIZE) -> None:
        if size <= 0:
            raise ValueError("lock pool size must be positive")
        self._locks = [threading.Lock() for _ in range(size)]

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self.get(key):
            yield
