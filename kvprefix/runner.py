"""Serve prompts through the prefix cache, reusing KV blocks of shared prefixes."""

from __future__ import annotations

import argparse
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import numpy as np

from .allocator import KVAllocator
from .attention import AttentionExecutor
from .computer import KVComputer
from .prefix_cache import KVLocation, PrefixCacheManager, compute_prefix_hash

DEFAULT_PROMPTS: tuple[tuple[int, ...], ...] = (
    (1, 2, 3, 4),
    (1, 2, 5, 6),
    (3, 4, 7, 8),
)


@dataclass(frozen=True)
class BlockEvent:
    """Outcome of looking up one block-sized slice of a prompt."""

    start: int
    end: int
    hit: bool
    device_id: int
    block_id: int


@dataclass
class PromptResult:
    """Everything observed while serving one prompt."""

    index: int
    prompt: tuple[int, ...]
    device_id: int
    events: list[BlockEvent] = field(default_factory=list)
    num_queries: int = 0
    cached_kv: int = 0
    new_kv: int = 0
    outputs: np.ndarray = field(default_factory=lambda: np.zeros((0, 0), dtype=np.float32))

    @property
    def total_kv(self) -> int:
        """Number of key/value rows attended over."""
        return self.cached_kv + self.new_kv


class PrefixCacheRunner:
    """Splits prompts into blocks, reuses cached prefixes and runs attention."""

    def __init__(
        self,
        num_devices: int = 1,
        num_blocks: int = 16,
        tokens_per_block: int = 2,
        embed_dim: int = 32,
        head_dim: int = 16,
    ) -> None:
        if num_devices < 1:
            raise ValueError("need at least one device")
        if tokens_per_block < 1:
            raise ValueError("tokens_per_block must be positive")
        self.num_devices = num_devices
        self.tokens_per_block = tokens_per_block
        self.head_dim = head_dim
        self.allocators = [
            KVAllocator(device, num_blocks, tokens_per_block, head_dim)
            for device in range(num_devices)
        ]
        self.computers = [
            KVComputer(embed_dim, head_dim, tokens_per_block) for _ in range(num_devices)
        ]
        self.executors = [AttentionExecutor(head_dim) for _ in range(num_devices)]
        self.cache = PrefixCacheManager()

    def process(self, prompt_index: int, prompt: Iterable[int]) -> PromptResult:
        """Serve one prompt on the device chosen by its index."""
        tokens = tuple(prompt)
        device = prompt_index % self.num_devices
        allocator = self.allocators[device]
        computer = self.computers[device]
        executor = self.executors[device]
        tpb = self.tokens_per_block

        result = PromptResult(index=prompt_index, prompt=tokens, device_id=device)
        cached: list[KVLocation] = []
        uncached = []
        queries: list[np.ndarray] = []

        for start in range(0, len(tokens), tpb):
            end = min(start + tpb, len(tokens))
            block_tokens = tokens[start:end]
            key = compute_prefix_hash(tokens[:end])

            location = self.cache.lookup(key)
            if location is not None:
                self.cache.retain(key)
                cached.append(location)
                result.events.append(
                    BlockEvent(start, end, True, location.device_id, location.block_id)
                )
                continue

            block = allocator.allocate()
            computer.compute_and_fill(block, block_tokens)
            location = KVLocation(
                device_id=device,
                block_id=block.block_id,
                local_k=block.k,
                local_v=block.v,
                remote_host_k=np.array(block.k, dtype=np.float32, copy=True),
                remote_host_v=np.array(block.v, dtype=np.float32, copy=True),
            )
            self.cache.insert(key, location)
            self.cache.retain(key)
            uncached.append(block)
            queries.extend(computer.query(token) for token in block_tokens)
            result.events.append(BlockEvent(start, end, False, device, block.block_id))

        result.num_queries = len(queries)
        result.cached_kv = len(cached) * tpb
        result.new_kv = len(uncached) * tpb

        if cached or uncached:
            q = (
                np.stack(queries)
                if queries
                else np.zeros((0, self.head_dim), dtype=np.float32)
            )
            result.outputs = executor.run_blockwise(q, uncached, cached, tpb, device)
        else:
            result.outputs = np.zeros((0, self.head_dim), dtype=np.float32)
        return result

    def run(self, prompts: Iterable[Iterable[int]]) -> list[PromptResult]:
        """Serve prompts in order; prompt i goes to device i mod num_devices."""
        return [self.process(index, prompt) for index, prompt in enumerate(prompts)]


def format_result(result: PromptResult) -> str:
    """Human-readable report of one served prompt."""
    lines = ["==== Prompt " + f"{result.index}: " + "".join(f"{t} " for t in result.prompt)]
    for event in result.events:
        span = f"  Block [{event.start},{event.end}): "
        if event.hit:
            lines.append(f"{span}Hit → GPU{event.device_id}, block_id={event.block_id}")
        else:
            lines.append(f"{span}Miss → Allocated")
    lines.append(
        f"[DEBUG] query size = {result.num_queries}, cache KV = {result.cached_kv}, "
        f"new KV = {result.new_kv}, total KV = {result.total_kv}"
    )
    for i, row in enumerate(result.outputs):
        lines.append(f"Attention output {i}: " + "".join(f"{float(v):g} " for v in row))
    return "\n".join(lines) + "\n"


def _parse_prompt(text: str) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in text.split(",") if part.strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a comma-separated token list: {text!r}") from None


def main(argv: Sequence[str] | None = None) -> int:
    """Serve prompts through the prefix cache and print what happened."""
    parser = argparse.ArgumentParser(prog="kvprefix-run")
    parser.add_argument("prompts", nargs="*", type=_parse_prompt,
                        help="prompts as comma-separated token ids")
    parser.add_argument("--devices", type=int, default=1)
    parser.add_argument("--blocks", type=int, default=16)
    parser.add_argument("--tokens-per-block", type=int, default=2)
    parser.add_argument("--embed-dim", type=int, default=32)
    parser.add_argument("--head-dim", type=int, default=16)
    args = parser.parse_args(argv)

    prompts = args.prompts or list(DEFAULT_PROMPTS)
    runner = PrefixCacheRunner(
        args.devices, args.blocks, args.tokens_per_block, args.embed_dim, args.head_dim
    )
    for index, prompt in enumerate(prompts):
        print(format_result(runner.process(index, prompt)), end="")
    return 0