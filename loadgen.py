from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncGenerator, Optional, Protocol

from streaming import DEFAULT_MAX_TOKENS, ChatChunk, MissingContentError
from token_counter import TokenCounter

TRANSCRIPT_SEPARATOR = "\n\n"


def now_ms() -> float:
    return time.monotonic() * 1000.0


class StreamSource(Protocol):
    def stream_chat(self, prompt: str, max_tokens: int = ...) -> AsyncGenerator[ChatChunk, None]: ...


class MetricCounters:
    """Counters shared by every bench task and the reporter.

    All updates run on the event loop thread and never await mid-update, so
    each add and each drain is atomic with respect to other tasks.
    """

    def __init__(self) -> None:
        self._prefill_tokens = 0
        self._decode_tokens = 0
        self._prefill_latency_ms = 0.0
        self._decode_latency_ms = 0.0
        self._completed_tasks = 0

    def add_prefill_tokens(self, count: int) -> None:
        self._prefill_tokens += count

    def add_decode_tokens(self, count: int) -> None:
        self._decode_tokens += count

    def add_prefill_latency(self, latency_ms: float) -> None:
        self._prefill_latency_ms += latency_ms

    def add_decode_latency(self, latency_ms: float) -> None:
        self._decode_latency_ms += latency_ms

    def add_completed_task(self) -> None:
        self._completed_tasks += 1

    def drain_rates(self) -> tuple[int, int]:
        """Read and reset the prefill and decode token counters."""
        prefill, decode = self._prefill_tokens, self._decode_tokens
        self._prefill_tokens = 0
        self._decode_tokens = 0
        return prefill, decode

    @property
    def prefill_latency_ms(self) -> float:
        return self._prefill_latency_ms

    @property
    def decode_latency_ms(self) -> float:
        return self._decode_latency_ms

    @property
    def completed_tasks(self) -> int:
        return self._completed_tasks


@dataclass
class TaskState:
    phase_start_ms: float
    prefill_recorded: bool = False
    decoded_tokens: int = 0


class TranscriptWriter:
    def __init__(self, output_path: Path, prompt: str) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8")
        self._file.write(prompt + TRANSCRIPT_SEPARATOR)

    def write(self, fragment: str) -> None:
        self._file.write(fragment)

    def close(self) -> None:
        self._file.flush()
        self._file.close()


def _record_prefill(
    state: TaskState,
    prompt: str,
    token_counter: TokenCounter,
    counters: MetricCounters,
) -> None:
    now = now_ms()
    counters.add_prefill_latency(now - state.phase_start_ms)
    counters.add_prefill_tokens(token_counter.count(prompt))
    state.phase_start_ms = now
    state.prefill_recorded = True


def _record_decode_latency(state: TaskState, counters: MetricCounters) -> None:
    if not state.prefill_recorded or state.decoded_tokens == 0:
        return
    elapsed_ms = now_ms() - state.phase_start_ms
    counters.add_decode_latency(elapsed_ms / state.decoded_tokens)


async def _drive_stream(
    prompt: str,
    stream_client: StreamSource,
    token_counter: TokenCounter,
    counters: MetricCounters,
    state: TaskState,
    max_tokens: int,
    transcript: Optional[TranscriptWriter],
) -> None:
    chunks = stream_client.stream_chat(prompt, max_tokens=max_tokens)
    async with aclosing(chunks):
        async for chunk in chunks:
            if not state.prefill_recorded:
                _record_prefill(state, prompt, token_counter, counters)

            for choice in chunk.choices:
                if choice.content is None:
                    if choice.finish_reason is not None:
                        continue
                    raise MissingContentError(f"Choice {choice.index} carries no content")
                decoded = token_counter.count(choice.content)
                counters.add_decode_tokens(decoded)
                state.decoded_tokens += decoded
                if transcript is not None:
                    transcript.write(choice.content)

    _record_decode_latency(state, counters)


async def run_bench_task(
    prompt: str,
    stream_client: StreamSource,
    token_counter: TokenCounter,
    counters: MetricCounters,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    transcript_path: Optional[Path] = None,
) -> TaskState:
    """Stream one completion for ``prompt`` and account its tokens.

    The completed-task counter is incremented once whether the stream succeeds
    or fails. A task cancelled at shutdown is not counted as completed; any
    tokens it already contributed stay in the counters.
    """
    state = TaskState(phase_start_ms=now_ms())
    transcript: Optional[TranscriptWriter] = None
    try:
        if transcript_path is not None:
            transcript = TranscriptWriter(transcript_path, prompt)
        await _drive_stream(
            prompt=prompt,
            stream_client=stream_client,
            token_counter=token_counter,
            counters=counters,
            state=state,
            max_tokens=max_tokens,
            transcript=transcript,
        )
    except asyncio.CancelledError:
        raise
    except Exception:
        counters.add_completed_task()
        raise
    else:
        counters.add_completed_task()
    finally:
        if transcript is not None:
            transcript.close()
    return state
