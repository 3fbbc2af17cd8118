"""Token counting per model family.

Counters are pure: the same text always costs the same, and they keep no per-call
state, so a single instance is shared by every concurrent request.
"""

import logging
from functools import lru_cache
from typing import Callable, Protocol, runtime_checkable

import tiktoken

logger = logging.getLogger(__name__)


@runtime_checkable
class TokenCounter(Protocol):
    def __call__(self, text: str) -> int:
        ...


@lru_cache(maxsize=None)
def _encoding(name: str) -> "tiktoken.Encoding":
    return tiktoken.get_encoding(name)


class TiktokenCounter:
    """Counts tokens with a tiktoken encoding, loaded on first use."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name

    def __call__(self, text: str) -> int:
        if not text:
            return 0
        return len(_encoding(self.encoding_name).encode(text, disallowed_special=()))

    def __repr__(self) -> str:
        return f"TiktokenCounter({self.encoding_name!r})"


class EstimatingCounter:
    """Roughly four characters per token."""

    def __init__(self, chars_per_token: int = 4):
        self.chars_per_token = chars_per_token

    def __call__(self, text: str) -> int:
        if not text:
            return 0
        return (len(text) + self.chars_per_token - 1) // self.chars_per_token


_FACTORIES: dict[str, Callable[[str], TokenCounter]] = {
    # There is no public tokenizer for Claude; the OpenAI encoding is the estimate.
    "claude": lambda model: TiktokenCounter("cl100k_base"),
    "openai": lambda model: TiktokenCounter("o200k_base" if model.startswith(("gpt-4o", "o1")) else "cl100k_base"),
    "estimate": lambda model: EstimatingCounter(),
}


def register_token_counter(family: str, factory: Callable[[str], TokenCounter]) -> None:
    _FACTORIES[family] = factory
    get_token_counter.cache_clear()


@lru_cache(maxsize=64)
def get_token_counter(family: str, model: str = "") -> TokenCounter:
    """Return the counter for a model family, falling back to the estimate."""
    factory = _FACTORIES.get(family)
    if factory is None:
        logger.warning("No token counter registered for %r, using estimate", family)
        factory = _FACTORIES["estimate"]
    return factory(model)
