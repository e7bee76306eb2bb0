from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Optional

import httpx

DEFAULT_MAX_TOKENS = 65536


class StreamError(RuntimeError):
    pass


class MissingContentError(StreamError):
    pass


@dataclass
class ChoiceDelta:
    index: int
    content: Optional[str]
    finish_reason: Optional[str] = None


@dataclass
class ChatChunk:
    choices: list[ChoiceDelta] = field(default_factory=list)


def _flatten_content(content: Any) -> Optional[str]:
    if content is None:
        return None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        text_parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                text_parts.append(part)
                continue
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if isinstance(text, str):
                text_parts.append(text)
        return "".join(text_parts)
    return None


def parse_chunk(chunk: dict[str, Any]) -> ChatChunk:
    error = chunk.get("error")
    if error is not None:
        if isinstance(error, dict):
            message = error.get("message") or json.dumps(error)
        else:
            message = str(error)
        raise StreamError(f"Server reported error: {message}")

    choices = chunk.get("choices")
    if choices is None:
        return ChatChunk()
    if not isinstance(choices, list):
        raise StreamError(f"Malformed chunk: choices is {type(choices).__name__}")

    parsed: list[ChoiceDelta] = []
    for position, choice in enumerate(choices):
        if not isinstance(choice, dict):
            raise StreamError(f"Malformed chunk: choice {position} is not an object")
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}
        content = _flatten_content(delta.get("content"))
        if content is None:
            # Reasoning models stream their thinking tokens separately.
            content = _flatten_content(delta.get("reasoning_content"))
        index = choice.get("index")
        if not isinstance(index, int):
            index = position
        parsed.append(
            ChoiceDelta(
                index=index,
                content=content,
                finish_reason=choice.get("finish_reason"),
            )
        )
    return ChatChunk(choices=parsed)


def build_payload(
    model: Optional[str],
    prompt: str,
    max_tokens: int,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "messages": [{"role": "user", "content": prompt}],
        "stream": True,
        "max_tokens": max_tokens,
    }
    if model:
        payload["model"] = model
    return payload


def _headers(api_key: Optional[str]) -> dict[str, str]:
    base = {"Content-Type": "application/json", "Accept": "text/event-stream"}
    if api_key:
        base["Authorization"] = f"Bearer {api_key}"
    return base


class ChatStreamClient:
    """Streams chat completions from an OpenAI-compatible ``/chat/completions``."""

    def __init__(
        self,
        api_base: str,
        client: httpx.AsyncClient,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.model = model
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._client = client

    @property
    def url(self) -> str:
        return f"{self.api_base}/chat/completions"

    async def stream_chat(
        self, prompt: str, max_tokens: int = DEFAULT_MAX_TOKENS
    ) -> AsyncGenerator[ChatChunk, None]:
        payload = build_payload(self.model, prompt, max_tokens)
        try:
            async with self._client.stream(
                "POST",
                self.url,
                headers=_headers(self.api_key),
                json=payload,
                timeout=httpx.Timeout(self.timeout_s),
            ) as response:
                if not response.is_success:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise StreamError(f"HTTP {response.status_code}: {body[:2000]}")

                saw_event = False
                async for line in response.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    payload_text = line[5:].strip()
                    if not payload_text:
                        continue
                    saw_event = True
                    if payload_text == "[DONE]":
                        break
                    try:
                        chunk = json.loads(payload_text)
                    except json.JSONDecodeError as exc:
                        raise StreamError(f"Malformed chunk: {payload_text[:200]}") from exc
                    if not isinstance(chunk, dict):
                        raise StreamError(f"Malformed chunk: {payload_text[:200]}")
                    yield parse_chunk(chunk)

                if not saw_event:
                    content_type = response.headers.get("content-type", "unknown")
                    raise StreamError(f"Response carried no stream events (content-type: {content_type})")
        except httpx.HTTPError as exc:
            raise StreamError(f"{type(exc).__name__}: {exc}") from exc
