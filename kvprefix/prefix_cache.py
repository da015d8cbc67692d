"""Table of cached prefix blocks keyed by their token-prefix hash."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, ClassVar

import numpy as np


@dataclass(eq=False)
class KVLocation:
    """Where a cached block's keys and values live."""

    device_id: int
    block_id: int
    is_remote: bool = False
    local_k: Any = field(default=None, repr=False)
    local_v: Any = field(default=None, repr=False)
    remote_host_k: np.ndarray | None = field(default=None, repr=False)
    remote_host_v: np.ndarray | None = field(default=None, repr=False)


@dataclass
class _Entry:
    location: KVLocation | None = None
    ref_cnt: int = 0


def compute_prefix_hash(tokens: Iterable[int]) -> str:
    """Key for a token prefix: each token followed by a comma."""
    return "".join(f"{token}," for token in tokens)


class PrefixCacheManager:
    """Thread-safe map from prefix hash to block location with reference counts."""

    _shared: ClassVar[PrefixCacheManager | None] = None
    _shared_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._table: dict[str, _Entry] = {}

    @classmethod
    def shared(cls) -> PrefixCacheManager:
        """The process-wide manager instance."""
        with cls._shared_lock:
            if cls._shared is None:
                cls._shared = cls()
            return cls._shared

    def lookup(self, key: str) -> KVLocation | None:
        """Location cached under key, or None."""
        with self._lock:
            entry = self._table.get(key)
            return None if entry is None else entry.location

    def insert(self, key: str, location: KVLocation) -> None:
        """Store location under key with a reference count of one."""
        with self._lock:
            entry = self._table.setdefault(key, _Entry())
            entry.location = location
            entry.ref_cnt = 1

    def retain(self, key: str) -> None:
        """Add one reference to key."""
        with self._lock:
            self._table.setdefault(key, _Entry()).ref_cnt += 1

    def release(self, key: str) -> None:
        """Drop one reference from key; RuntimeError if it goes below zero."""
        with self._lock:
            entry = self._table.setdefault(key, _Entry())
            entry.ref_cnt -= 1
            if entry.ref_cnt < 0:
                raise RuntimeError("release(): ref_cnt < 0")

    def ref_count(self, key: str) -> int:
        """Current reference count of key (zero when unknown)."""
        with self._lock:
            entry = self._table.get(key)
            return 0 if entry is None else entry.ref_cnt

    def can_evict(self, key: str) -> bool:
        """True when nothing references key."""
        return self.ref_count(key) == 0