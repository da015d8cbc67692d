"""Scaled-free dot-product attention over cached and freshly computed KV blocks."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from .block import KVCacheBlock
from .prefix_cache import KVLocation


def softmax(logits: Sequence[float] | np.ndarray) -> np.ndarray:
    """Numerically stable softmax over the last axis, in single precision."""
    x = np.asarray(logits, dtype=np.float32)
    if x.ndim == 0 or x.shape[-1] == 0:
        raise ValueError("softmax needs at least one logit")
    shifted = np.exp(x - x.max(axis=-1, keepdims=True))
    return (shifted / shifted.sum(axis=-1, keepdims=True)).astype(np.float32)


def _rows(data: Any, head_dim: int, what: str) -> np.ndarray:
    arr = np.asarray(data, dtype=np.float32)
    if arr.size == 0:
        return arr.reshape(0, head_dim)
    if arr.ndim != 2 or arr.shape[1] != head_dim:
        raise ValueError(f"{what} must have shape (n, {head_dim}), got {arr.shape}")
    return arr


def _key_width(k: Any) -> int:
    arr = np.asarray(k, dtype=np.float32)
    if arr.ndim != 2:
        raise ValueError(f"keys must be a 2-D array, got shape {arr.shape}")
    return arr.shape[1]


def attention_forward(q: Any, k: Any, v: Any) -> np.ndarray:
    """Attention of every query over all key/value rows; returns (num_q, head_dim)."""
    head_dim = _key_width(k)
    keys = _rows(k, head_dim, "keys")
    values = _rows(v, head_dim, "values")
    if keys.shape != values.shape:
        raise ValueError("keys and values must have the same shape")
    if keys.shape[0] == 0:
        raise ValueError("attention needs at least one key/value row")
    queries = _rows(q, head_dim, "queries")
    if queries.shape[0] == 0:
        return np.zeros((0, head_dim), dtype=np.float32)
    weights = softmax(queries @ keys.T)
    return (weights @ values).astype(np.float32)


def attention_blockwise_forward(
    q: Any, k_blocks: Sequence[Any], v_blocks: Sequence[Any]
) -> np.ndarray:
    """Attention over KV stored as a list of blocks, taken in the given order."""
    if len(k_blocks) != len(v_blocks):
        raise ValueError("there must be as many value blocks as key blocks")
    if not k_blocks:
        raise ValueError("attention needs at least one block")
    head_dim = _key_width(k_blocks[0])
    keys = np.concatenate([_rows(b, head_dim, "key block") for b in k_blocks])
    values = np.concatenate([_rows(b, head_dim, "value block") for b in v_blocks])
    return attention_forward(q, keys, values)


def _block_rows(data: Any, tokens_per_block: int, head_dim: int, what: str) -> np.ndarray:
    if data is None:
        raise ValueError(f"{what} has no storage")
    arr = np.asarray(data, dtype=np.float32).reshape(-1, head_dim)
    if arr.shape[0] < tokens_per_block:
        raise ValueError(
            f"{what} holds {arr.shape[0]} rows, fewer than {tokens_per_block}"
        )
    return arr[:tokens_per_block]


@dataclass
class AttentionInput:
    """Queries plus the cached blocks and new rows they attend to."""

    query: Any
    head_dim: int
    tokens_per_block: int = 0
    cached_blocks: list[KVCacheBlock] = field(default_factory=list)
    k_new: Any = field(default_factory=list)
    v_new: Any = field(default_factory=list)


class AttentionExecutor:
    """Runs attention for one head of fixed width."""

    def __init__(self, head_dim: int) -> None:
        if head_dim <= 0:
            raise ValueError("head_dim must be positive")
        self.head_dim = head_dim

    def run(self, attention_input: AttentionInput) -> np.ndarray:
        """Attend over the cached blocks first, then the newly computed rows."""
        inp = attention_input
        if inp.head_dim != self.head_dim:
            raise ValueError(
                f"input head_dim {inp.head_dim} differs from executor's {self.head_dim}"
            )
        k_parts = [
            _block_rows(block.k, inp.tokens_per_block, self.head_dim, "cached block keys")
            for block in inp.cached_blocks
        ]
        v_parts = [
            _block_rows(block.v, inp.tokens_per_block, self.head_dim, "cached block values")
            for block in inp.cached_blocks
        ]
        k_new = _rows(inp.k_new, self.head_dim, "new keys")
        v_new = _rows(inp.v_new, self.head_dim, "new values")
        if k_new.shape != v_new.shape:
            raise ValueError("new keys and values must have the same shape")
        keys = np.concatenate([*k_parts, k_new])
        values = np.concatenate([*v_parts, v_new])
        return attention_forward(_rows(inp.query, self.head_dim, "queries"), keys, values)

    def run_dense(self, q: Any, k: Any, v: Any) -> np.ndarray:
        """Attention over contiguous key and value matrices."""
        keys = _rows(k, self.head_dim, "keys")
        values = _rows(v, self.head_dim, "values")
        return attention_forward(_rows(q, self.head_dim, "queries"), keys, values)

    def run_blockwise(
        self,
        q: Any,
        uncached_blocks: Sequence[KVCacheBlock],
        cached_locations: Sequence[KVLocation | None],
        tokens_per_block: int,
        device_id: int,
    ) -> np.ndarray:
        """Attention over cached locations followed by freshly filled blocks.

        A cached location on ``device_id`` is read from its local storage; one
        on another device is read from its host-side copy.
        """
        k_blocks: list[np.ndarray] = []
        v_blocks: list[np.ndarray] = []
        for loc in cached_locations:
            if loc is None:
                raise ValueError("cached location is missing")
            if loc.device_id == device_id:
                k_src, v_src = loc.local_k, loc.local_v
            else:
                k_src, v_src = loc.remote_host_k, loc.remote_host_v
            k_blocks.append(_block_rows(k_src, tokens_per_block, self.head_dim, "cached keys"))
            v_blocks.append(_block_rows(v_src, tokens_per_block, self.head_dim, "cached values"))
        for block in uncached_blocks:
            k_blocks.append(_block_rows(block.k, tokens_per_block, self.head_dim, "block keys"))
            v_blocks.append(_block_rows(block.v, tokens_per_block, self.head_dim, "block values"))
        queries = _rows(q, self.head_dim, "queries")
        return attention_blockwise_forward(queries, k_blocks, v_blocks)