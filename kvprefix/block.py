"""KV cache blocks and the queue of blocks that are free for reuse."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

import numpy as np


@dataclass(eq=False)
class KVCacheBlock:
    """A fixed-size slab of key/value storage owned by one device."""

    block_id: int
    device_id: int
    ref_cnt: int = 0
    is_remote: bool = False
    k: np.ndarray | None = field(default=None, repr=False)
    v: np.ndarray | None = field(default=None, repr=False)
    block_hash: str | None = None

    def incr_ref(self) -> None:
        """Add one reference to the block."""
        self.ref_cnt += 1

    def decr_ref(self) -> None:
        """Drop one reference from the block."""
        self.ref_cnt -= 1

    def reset_hash(self) -> None:
        """Forget the content hash attached to the block."""
        self.block_hash = None

    def __str__(self) -> str:
        return (
            f"[KVCacheBlock] id={self.block_id} dev={self.device_id} "
            f"ref_cnt={self.ref_cnt} is_remote={int(self.is_remote)}"
        )


class FreeBlockQueue:
    """First-in, first-out queue of blocks that can be handed out."""

    def __init__(self, blocks: Iterable[KVCacheBlock]) -> None:
        self._queue: deque[KVCacheBlock] = deque(blocks)

    def popleft(self) -> KVCacheBlock:
        """Take the oldest free block; raise RuntimeError when none is left."""
        if not self._queue:
            raise RuntimeError("No free blocks available")
        return self._queue.popleft()

    def append(self, block: KVCacheBlock | None) -> None:
        """Return a block to the tail of the queue; None is ignored."""
        if block is None:
            return
        self._queue.append(block)

    def __len__(self) -> int:
        return len(self._queue)