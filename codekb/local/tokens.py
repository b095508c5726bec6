"""
Token counting for the chunker's budget.

The chunker accepts any ``Callable[[str], int]``; this module provides the
default backed by tiktoken's ``cl100k_base`` encoding.
"""

from __future__ import annotations

import threading
from typing import Callable

import tiktoken

TokenCounter = Callable[[str], int]

DEFAULT_ENCODING = "cl100k_base"

_encodings: dict[str, "tiktoken.Encoding"] = {}
_lock = threading.Lock()


def _get_encoding(name: str) -> "tiktoken.Encoding":
    with _lock:
        encoding = _encodings.get(name)
        if encoding is None:
            encoding = tiktoken.get_encoding(name)
            _encodings[name] = encoding
        return encoding


def count_tokens(text: str, encoding: str = DEFAULT_ENCODING) -> int:
    """Return the number of tokens *text* encodes to."""
    if not text:
        return 0
    return len(_get_encoding(encoding).encode(text, disallowed_special=()))
