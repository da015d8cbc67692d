"""Deterministic toy projection of tokens into query, key and value vectors."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from .block import KVCacheBlock

_WEIGHT_SEED = 42
_MASK32 = 0xFFFFFFFF


class _MersenneTwister:
    """32-bit Mersenne Twister seeded from a single integer."""

    _N = 624
    _M = 397

    def __init__(self, seed: int) -> None:
        state = [seed & _MASK32]
        for i in range(1, self._N):
            prev = state[-1]
            state.append((1812433253 * (prev ^ (prev >> 30)) + i) & _MASK32)
        self._state = state
        self._index = self._N

    def _twist(self) -> None:
        mt = self._state
        n, m = self._N, self._M
        for i in range(n):
            y = (mt[i] & 0x80000000) | (mt[(i + 1) % n] & 0x7FFFFFFF)
            mt[i] = mt[(i + m) % n] ^ (y >> 1) ^ (0x9908B0DF if y & 1 else 0)
        self._index = 0

    def next_u32(self) -> int:
        if self._index >= self._N:
            self._twist()
        y = self._state[self._index]
        self._index += 1
        y ^= y >> 11
        y ^= (y << 7) & 0x9D2C5680
        y ^= (y << 15) & 0xEFC60000
        y ^= y >> 18
        return y & _MASK32


def _uniform(gen: _MersenneTwister, low: float, high: float, count: int) -> np.ndarray:
    """Single-precision uniform samples in [low, high)."""
    raw = np.fromiter((gen.next_u32() for _ in range(count)), dtype=np.float64, count=count)
    canonical = raw.astype(np.float32) / np.float32(2.0**32)
    below_one = np.nextafter(np.float32(1.0), np.float32(0.0))
    canonical = np.where(canonical >= np.float32(1.0), below_one, canonical).astype(np.float32)
    low32 = np.float32(low)
    span = np.float32(high) - low32
    return (canonical * span + low32).astype(np.float32)


class KVComputer:
    """Embeds tokens and projects them with fixed random weights."""

    def __init__(self, embed_dim: int, head_dim: int, tokens_per_block: int) -> None:
        self.embed_dim = embed_dim
        self.head_dim = head_dim
        self.tokens_per_block = tokens_per_block

        gen = _MersenneTwister(_WEIGHT_SEED)
        size = embed_dim * head_dim
        shape = (embed_dim, head_dim)
        self.q_weight = _uniform(gen, -0.1, 0.1, size).reshape(shape)
        self.k_weight = _uniform(gen, -0.1, 0.1, size).reshape(shape)
        self.v_weight = _uniform(gen, -0.1, 0.1, size).reshape(shape)

    def embed_token(self, token_id: int) -> np.ndarray:
        """Embedding of a token; the same token always gives the same vector."""
        return _uniform(_MersenneTwister(token_id), -1.0, 1.0, self.embed_dim)

    def project(self, vec: Sequence[float] | np.ndarray, weight: np.ndarray) -> np.ndarray:
        """Multiply an embedding by an embed_dim x head_dim weight matrix."""
        vec = np.asarray(vec, dtype=np.float32)
        if vec.shape != (self.embed_dim,):
            raise ValueError(f"expected a vector of length {self.embed_dim}")
        return (vec @ np.asarray(weight, dtype=np.float32)).astype(np.float32)

    def query(self, token_id: int) -> np.ndarray:
        """Query vector of a token."""
        return self.project(self.embed_token(token_id), self.q_weight)

    def compute_and_fill(self, block: KVCacheBlock, tokens: Sequence[int]) -> None:
        """Write each token's key and value rows into the block, in order."""
        if len(tokens) > self.tokens_per_block:
            raise ValueError(
                f"{len(tokens)} tokens do not fit a block of {self.tokens_per_block}"
            )
        if block.k is None or block.v is None:
            raise ValueError("block has no storage")
        for row, token in enumerate(tokens):
            embedding = self.embed_token(token)
            block.k[row] = self.project(embedding, self.k_weight)
            block.v[row] = self.project(embedding, self.v_weight)