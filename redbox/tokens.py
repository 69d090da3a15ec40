"""
Token counting for context budgeting.

A token counter is any callable mapping a string to an integer. The default
is a tiktoken encoder; "estimate" selects the ~4 chars/token heuristic for
deployments without tiktoken's encoding files.
"""

from __future__ import annotations

from typing import Callable

import tiktoken

TokenCounter = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token for English text."""
    if not text:
        return 0
    return max(1, len(text) // 4)


class TiktokenCounter:
    """Counts tokens with a tiktoken encoding. The encoder loads on first use."""

    def __init__(self, encoding: str = "cl100k_base"):
        self.encoding_name = encoding
        self._encoder = None

    def __call__(self, text: str) -> int:
        if not text:
            return 0
        if self._encoder is None:
            self._encoder = tiktoken.get_encoding(self.encoding_name)
        return len(self._encoder.encode(text))


def make_counter(encoding: str | None = None) -> TokenCounter:
    if encoding == "estimate":
        return estimate_tokens
    return TiktokenCounter(encoding or "cl100k_base")


def count_message_tokens(messages: list[dict], counter: TokenCounter) -> int:
    """Total tokens across rendered messages. Only text parts are counted."""
    total = 0
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, list):
            for part in content:
                if part.get("type") == "text":
                    total += counter(part.get("text") or "")
        else:
            total += counter(content or "")
    return total
