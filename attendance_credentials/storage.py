"""
Persistence contract for the credential core

Components never touch dictionaries directly; they go through a ``Store``
whose conditional writes are atomic. Swapping the in-memory store for a
database-backed one must not change any business logic.
"""

import threading
import time
from typing import Any, Dict, Iterator, Optional, Protocol, Tuple


class Store(Protocol):
    def get(self, namespace: str, key: str) -> Optional[Any]: ...
    def put_if_absent(self, namespace: str, key: str, value: Any) -> bool: ...
    def compare_and_swap(self, namespace: str, key: str, expected: Any, new: Any) -> bool: ...
    def scan(self, namespace: str) -> Iterator[Tuple[str, Any]]: ...


class InMemoryStore:
    """
    Process-local store

    A single re-entrant lock serializes every conditional write, so
    ``put_if_absent`` and ``compare_and_swap`` behave like a unique
    constraint and a conditional update in a database.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def get(self, namespace: str, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(namespace, {}).get(key)

    def put_if_absent(self, namespace: str, key: str, value: Any) -> bool:
        """Store ``value`` unless ``key`` already exists; returns True if stored"""
        with self._lock:
            bucket = self._data.setdefault(namespace, {})
            if key in bucket:
                return False
            bucket[key] = value
            return True

    def compare_and_swap(self, namespace: str, key: str, expected: Any, new: Any) -> bool:
        """
        Replace the value at ``key`` only if it currently equals ``expected``

        ``expected=None`` matches a missing key; ``new=None`` removes it.
        """
        with self._lock:
            bucket = self._data.setdefault(namespace, {})
            if bucket.get(key) != expected:
                return False
            if new is None:
                bucket.pop(key, None)
            else:
                bucket[key] = new
            return True

    def scan(self, namespace: str) -> Iterator[Tuple[str, Any]]:
        """Iterate a consistent copy of one namespace"""
        with self._lock:
            items = list(self._data.get(namespace, {}).items())
        return iter(items)

    def count(self, namespace: str) -> int:
        with self._lock:
            return len(self._data.get(namespace, {}))


class Clock(Protocol):
    def now_ms(self) -> int: ...


class SystemClock:
    """Wall clock in epoch milliseconds that never steps backwards"""

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            self._last = max(self._last, time.time_ns() // 1_000_000)
            return self._last
