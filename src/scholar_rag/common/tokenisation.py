"""scholar_rag.common.tokenisation

Token counting utilities.

Token usage reported by the workflow is an estimate used for accounting, not
billing. This module keeps the estimate behind a minimal interface so the
concrete counter can be selected via configuration.

Classes
-------
TokenCounter
    Minimal protocol defining the token-counting interface.
HeuristicTokenCounter
    Dependency-free approximate counter (characters per token).
TiktokenTokenCounter
    Exact counter backed by the ``tiktoken`` library.

Functions
---------
create_token_counter
    Build a counter from the ``tokenization`` configuration section.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Protocol


class TokenCounter(Protocol):
    """A minimal interface for token counting."""

    def count(self, text: str) -> int:
        """Return the number of tokens in ``text``."""


@dataclass(frozen=True)
class HeuristicTokenCounter:
    """Approximate token counter using a fixed characters-per-token ratio.

    Counts are rounded up, so any non-empty text counts as at least one token.

    Attributes
    ----------
    chars_per_token : int
        Approximate number of characters per token. Defaults to ``4``.
    """

    chars_per_token: int = 4

    def count(self, text: str) -> int:
        if not text:
            return 0
        cpt = max(1, int(self.chars_per_token))
        return math.ceil(len(text) / cpt)


@dataclass(frozen=True)
class TiktokenTokenCounter:
    """Token counter backed by the ``tiktoken`` library.

    Attributes
    ----------
    encoding_name : str
        Name of the ``tiktoken`` encoding.
    _enc : Any
        Internal ``tiktoken`` encoding object.
    """

    encoding_name: str
    _enc: Any

    @classmethod
    def from_encoding_name(cls, encoding_name: str) -> "TiktokenTokenCounter":
        import tiktoken  # type: ignore

        enc = tiktoken.get_encoding(encoding_name)
        return cls(encoding_name=encoding_name, _enc=enc)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._enc.encode(text))


def create_token_counter(config: Mapping[str, Any] | None = None) -> TokenCounter:
    """Create a token counter from a ``tokenization`` configuration mapping.

    Parameters
    ----------
    config : Mapping[str, Any] or None, optional
        Mapping with ``type`` (``"heuristic"`` or ``"tiktoken"``) plus
        ``chars_per_token`` or ``encoding``. Defaults to the heuristic counter.

    Returns
    -------
    TokenCounter
        Configured counter.

    Raises
    ------
    ValueError
        If an unknown tokenization type is configured.
    """
    cfg = dict(config or {})
    kind = str(cfg.get("type") or "heuristic").lower().replace("-", "_")

    if kind in {"heuristic", "char", "chars"}:
        try:
            cpt = int(cfg.get("chars_per_token", 4))
        except (TypeError, ValueError):
            cpt = 4
        return HeuristicTokenCounter(chars_per_token=cpt)

    if kind in {"tiktoken", "openai", "openai_like"}:
        enc = cfg.get("encoding") or "cl100k_base"
        return TiktokenTokenCounter.from_encoding_name(str(enc))

    raise ValueError(f"Unknown tokenization type: {kind!r}")


__all__ = [
    "TokenCounter",
    "HeuristicTokenCounter",
    "TiktokenTokenCounter",
    "create_token_counter",
]
