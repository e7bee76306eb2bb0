from __future__ import annotations

import asyncio
from typing import AsyncGenerator, Optional, Union

import pytest

from streaming import DEFAULT_MAX_TOKENS, ChatChunk, ChoiceDelta
from token_counter import TokenCounter

HANG = object()

ScriptItem = Union[ChatChunk, BaseException, object]


class CharTokenizer:
    """One token per character, so fragment counts add up exactly."""

    def encode(self, text: str, add_special_tokens: bool = True) -> list[int]:
        assert add_special_tokens is False
        return [ord(char) for char in text]


def chunk(*contents: Optional[str], finish_reason: Optional[str] = None) -> ChatChunk:
    return ChatChunk(
        choices=[
            ChoiceDelta(index=index, content=content, finish_reason=finish_reason)
            for index, content in enumerate(contents)
        ]
    )


class ScriptedStream:
    """Replays a per-prompt list of chunks; exceptions in the list are raised."""

    def __init__(
        self,
        script: Optional[dict[str, list[ScriptItem]]] = None,
        default: Optional[list[ScriptItem]] = None,
        delay_s: float = 0.0,
    ) -> None:
        self.script = script or {}
        self.default = default if default is not None else [chunk("ok")]
        self.delay_s = delay_s
        self.requests: list[tuple[str, int]] = []
        self.active = 0
        self.peak_active = 0

    async def stream_chat(
        self, prompt: str, max_tokens: int = DEFAULT_MAX_TOKENS
    ) -> AsyncGenerator[ChatChunk, None]:
        self.requests.append((prompt, max_tokens))
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            for item in self.script.get(prompt, self.default):
                await asyncio.sleep(self.delay_s)
                if item is HANG:
                    await asyncio.Event().wait()
                if isinstance(item, BaseException):
                    raise item
                assert isinstance(item, ChatChunk)
                yield item
        finally:
            self.active -= 1


@pytest.fixture
def token_counter() -> TokenCounter:
    return TokenCounter(CharTokenizer())


@pytest.fixture
def lines() -> list[str]:
    return []
