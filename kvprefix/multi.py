"""Serve prompts round-robin across several devices that share one prefix cache."""

from __future__ import annotations

import argparse
from collections.abc import Iterable, Sequence

from .runner import DEFAULT_PROMPTS, PrefixCacheRunner, PromptResult, format_result


def round_robin_device(prompt_index: int, num_devices: int) -> int:
    """Device that serves the prompt at prompt_index."""
    if num_devices < 1:
        raise ValueError("need at least one device")
    if prompt_index < 0:
        raise ValueError("prompt index must not be negative")
    return prompt_index % num_devices


def run_multi_device(
    prompts: Iterable[Iterable[int]] = DEFAULT_PROMPTS,
    num_devices: int = 2,
    num_blocks: int = 16,
    tokens_per_block: int = 2,
    embed_dim: int = 32,
    head_dim: int = 16,
) -> list[PromptResult]:
    """Serve prompts in order, spreading them over num_devices devices.

    Blocks cached by one device are reused by the others through their
    host-side copies.
    """
    runner = PrefixCacheRunner(num_devices, num_blocks, tokens_per_block, embed_dim, head_dim)
    results = []
    for index, prompt in enumerate(prompts):
        result = runner.process(index, prompt)
        if result.device_id != round_robin_device(index, num_devices):
            raise RuntimeError(f"prompt {index} was served on an unexpected device")
        results.append(result)
    return results


def _parse_prompt(text: str) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in text.split(",") if part.strip())
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"not a comma-separated token list: {text!r}"
        ) from None


def main(argv: Sequence[str] | None = None) -> int:
    """Serve prompts across several devices and print what happened."""
    parser = argparse.ArgumentParser(prog="kvprefix-multi")
    parser.add_argument("prompts", nargs="*", type=_parse_prompt,
                        help="prompts as comma-separated token ids")
    parser.add_argument("--devices", type=int, default=2)
    parser.add_argument("--blocks", type=int, default=16)
    parser.add_argument("--tokens-per-block", type=int, default=2)
    parser.add_argument("--embed-dim", type=int, default=32)
    parser.add_argument("--head-dim", type=int, default=16)
    args = parser.parse_args(argv)

    prompts = args.prompts or list(DEFAULT_PROMPTS)
    results = run_multi_device(
        prompts,
        args.devices,
        args.blocks,
        args.tokens_per_block,
        args.embed_dim,
        args.head_dim,
    )
    for result in results:
        print(format_result(result), end="")
    return 0