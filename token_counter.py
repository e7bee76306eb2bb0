from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class TokenizerLoadError(RuntimeError):
    pass


class TokenCounter:
    """Counts tokens with the target model's tokenizer.

    Only ``encode`` is used; the wrapped tokenizer is never mutated, so one
    instance is shared by every bench task.
    """

    def __init__(self, tokenizer: Any) -> None:
        self._tokenizer = tokenizer

    @classmethod
    def from_pretrained(cls, model_id: str) -> TokenCounter:
        from transformers import AutoTokenizer

        logger.info("Loading tokenizer for %s", model_id)
        try:
            tokenizer = AutoTokenizer.from_pretrained(model_id)
        except Exception as exc:  # noqa: BLE001
            raise TokenizerLoadError(f"Failed to load tokenizer for {model_id}: {exc}") from exc
        return cls(tokenizer)

    def encode(self, text: str) -> list[int]:
        return list(self._tokenizer.encode(text, add_special_tokens=False))

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self.encode(text))
