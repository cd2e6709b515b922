"""Token counting utilities."""

from __future__ import annotations

import math
from typing import Callable


def estimate_tokens(text: str) -> int:
    """Rough estimate: one token per 4 characters, rounded up."""
    return math.ceil(len(text) / 4)


def create_token_counter(mode: str = "estimate") -> Callable[[str], int]:
    """Factory for token counters.

    Modes:
        "estimate" - ceil(len(text) / 4) (zero deps)
        "tiktoken" - requires the tiktoken extra
        "callable:module.path:func" - custom callable
    """
    if mode == "estimate":
        return estimate_tokens

    if mode == "tiktoken":
        try:
            import tiktoken
        except ImportError:
            raise ImportError(
                "tiktoken not installed. Install with: pip install metamemory[tiktoken]"
            )
        enc = tiktoken.get_encoding("cl100k_base")
        return lambda text: len(enc.encode(text))

    if mode.startswith("callable:"):
        parts = mode[len("callable:"):].rsplit(":", 1)
        if len(parts) != 2:
            raise ValueError(f"Invalid callable spec: {mode}. Expected callable:module:func")
        module_path, func_name = parts
        import importlib
        mod = importlib.import_module(module_path)
        return getattr(mod, func_name)

    raise ValueError(f"Unknown token counter mode: {mode}")
