"""Per-aggregate locks serialising read-modify-write cycles in one process.

Row locks (``SELECT ... FOR UPDATE``) protect the data on backends that
support them; these locks additionally serialise competing requests inside
one process, which is the only protection SQLite gets.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager
from typing import ClassVar

BATTLE = "battle"
COMMUNITY = "community"
REBELLION = "rebellion"
TERRITORY = "territory"


class AggregateLocks:
    """Registry of re-entrant locks keyed by ``(kind, id)``.

    Locks are created on first use and never removed; the key space is
    bounded by the number of aggregates touched in the process lifetime.
    """

    _registry_lock: ClassVar[threading.Lock] = threading.Lock()
    _locks: ClassVar[dict[tuple[str, Hashable], threading.RLock]] = {}

    @classmethod
    def get(cls, kind: str, identifier: Hashable) -> threading.RLock:
        key = (kind, identifier)
        with cls._registry_lock:
            lock = cls._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                cls._locks[key] = lock
            return lock

    @classmethod
    @contextmanager
    def hold(cls, kind: str, identifier: Hashable) -> Iterator[None]:
        lock = cls.get(kind, identifier)
        with lock:
            yield

    @classmethod
    def clear(cls) -> None:
        """Forget every lock. Only safe while no lock is held."""
        with cls._registry_lock:
            cls._locks.clear()
