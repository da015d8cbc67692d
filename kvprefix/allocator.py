"""Per-device pool of KV cache blocks."""

from __future__ import annotations

import numpy as np

from .block import FreeBlockQueue, KVCacheBlock


class KVAllocator:
    """Owns one contiguous K pool and one V pool, carved into blocks."""

    def __init__(
        self, device_id: int, num_blocks: int, tokens_per_block: int, head_dim: int
    ) -> None:
        if num_blocks < 0 or tokens_per_block < 0 or head_dim < 0:
            raise ValueError("pool dimensions must not be negative")
        self.device_id = device_id
        self.num_blocks = num_blocks
        self.tokens_per_block = tokens_per_block
        self.head_dim = head_dim

        shape = (num_blocks, tokens_per_block, head_dim)
        self.k_base = np.zeros(shape, dtype=np.float32)
        self.v_base = np.zeros(shape, dtype=np.float32)

        self._blocks = [
            KVCacheBlock(
                block_id=i,
                device_id=device_id,
                k=self.k_base[i],
                v=self.v_base[i],
            )
            for i in range(num_blocks)
        ]
        self._free = FreeBlockQueue(self._blocks)

    @property
    def block_bytes(self) -> int:
        """Size in bytes of one block's K (or V) storage."""
        return self.tokens_per_block * self.head_dim * np.dtype(np.float32).itemsize

    def allocate(self) -> KVCacheBlock:
        """Hand out the oldest free block; raise RuntimeError when exhausted."""
        return self._free.popleft()

    def free(self, block: KVCacheBlock) -> None:
        """Return a block to the pool with its references cleared."""
        block.reset_hash()
        block.ref_cnt = 0
        self._free.append(block)

    def get_block(self, block_id: int) -> KVCacheBlock:
        """Return the block with the given id."""
        if not 0 <= block_id < len(self._blocks):
            raise IndexError(f"block id {block_id} out of range")
        return self._blocks[block_id]

    def __len__(self) -> int:
        """Number of blocks currently free."""
        return len(self._free)