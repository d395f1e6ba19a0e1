"""Token estimation for the arbiter context-window check."""
from __future__ import annotations

import logging
import math
from typing import Any

import tiktoken

LOGGER = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"
CHARS_PER_TOKEN = 4

__all__ = ["TokenEstimator", "heuristic_token_count"]


def heuristic_token_count(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenEstimator:
    """tiktoken のエンコーディングで数え、読み込めなければ文字数 / 4 で概算する。"""

    def __init__(self, encoding_name: str = DEFAULT_ENCODING, *, encoding: Any = None) -> None:
        self._encoding_name = encoding_name
        self._encoding = encoding
        self._loaded = encoding is not None

    def _load(self) -> Any:
        if not self._loaded:
            self._loaded = True
            try:
                self._encoding = tiktoken.get_encoding(self._encoding_name)
            except Exception as exc:  # noqa: BLE001
                # オフライン環境では BPE ファイルを取得できない
                LOGGER.warning(
                    "tokenizer %s unavailable (%s); using length heuristic",
                    self._encoding_name,
                    exc,
                )
                self._encoding = None
        return self._encoding

    @property
    def exact(self) -> bool:
        return self._load() is not None

    def count(self, text: str) -> int:
        encoding = self._load()
        if encoding is None:
            return heuristic_token_count(text)
        return len(encoding.encode(text, disallowed_special=()))
