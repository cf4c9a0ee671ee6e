"""Token counting and token-window splitting.

Counts are used for cost accounting and for the per-chunk ``token_count``
column, so they must come from one deterministic encoding regardless of which
embedding provider is in use.
"""

import logging
from typing import Any, List, Optional

import tiktoken

logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"


class Tokenizer:
    """Thin adapter over a tiktoken encoding.

    The encoding is loaded on first use; tiktoken downloads and caches the
    BPE ranks the first time an encoding is requested.
    """

    def __init__(self, encoding: Optional[Any] = None, encoding_name: str = DEFAULT_ENCODING):
        self._encoding = encoding
        self.encoding_name = encoding_name

    @property
    def encoding(self) -> Any:
        if self._encoding is None:
            logger.info(f"Loading tokenizer encoding {self.encoding_name}")
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        return self._encoding

    def count_tokens(self, text: str) -> int:
        """Number of tokens in ``text``, special tokens included."""
        return len(self.encoding.encode(text, allowed_special="all"))

    def split(self, text: str, max_tokens: int) -> List[str]:
        """
        Split ``text`` into consecutive windows of at most ``max_tokens`` tokens.

        Args:
            text: Input text
            max_tokens: Upper bound on tokens per window

        Returns:
            List of text windows; ``[text]`` when it already fits. Windows
            end on UTF-8 character boundaries, so a character encoded as
            several byte-level tokens is never cut in two. A single
            character wider than ``max_tokens`` gets a window of its own.
        """
        if max_tokens < 1:
            raise ValueError("max_tokens must be positive")

        tokens = self.encoding.encode(text, allowed_special="all")
        if len(tokens) <= max_tokens:
            return [text]

        windows = []
        start = 0
        while start < len(tokens):
            end = self._char_boundary(tokens, start, min(start + max_tokens, len(tokens)))
            window = self.encoding.decode(tokens[start:end])
            if window.strip():
                windows.append(window)
            start = end
        return windows

    def _char_boundary(self, tokens: List[int], start: int, end: int) -> int:
        """Largest end <= ``end`` whose window decodes to whole characters, else the next one after it."""
        for candidate in range(end, start, -1):
            if self._decodes_cleanly(tokens[start:candidate]):
                return candidate
        for candidate in range(end + 1, len(tokens) + 1):
            if self._decodes_cleanly(tokens[start:candidate]):
                return candidate
        return len(tokens)

    def _decodes_cleanly(self, tokens: List[int]) -> bool:
        try:
            self.encoding.decode_bytes(tokens).decode("utf-8")
        except UnicodeDecodeError:
            return False
        return True


def estimate_cost(total_tokens: int, cost_per_million: float) -> float:
    """Estimated spend in USD for ``total_tokens`` at a per-million-token rate."""
    if total_tokens < 0:
        raise ValueError("total_tokens must be non-negative")
    if cost_per_million <= 0:
        raise ValueError("cost_per_million must be positive")
    return (total_tokens / 1_000_000) * cost_per_million
