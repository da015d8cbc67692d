"""Prefix-keyed KV cache blocks, allocation, blockwise attention and a block directory."""

__version__ = "0.1.0"

__all__ = ["__version__"]