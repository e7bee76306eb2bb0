from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from metrics_vllm import ServerTokenSnapshot

UNDEFINED = "undefined"


def _safe_div(numerator: float, denominator: float) -> Optional[float]:
    if denominator <= 0:
        return None
    return float(numerator / denominator)


def _counter_delta(start: Optional[float], end: Optional[float]) -> Optional[float]:
    if start is None or end is None:
        return None
    delta = end - start
    if delta < 0:
        return None
    return float(delta)


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return UNDEFINED
    return f"{value:.{digits}f}"


@dataclass
class RunSummary:
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    interrupted: bool
    duration_s: float
    prefill_tokens: int
    decode_tokens: int
    prefill_tok_s: Optional[float]
    decode_tok_s: Optional[float]
    avg_prefill_latency_ms: Optional[float]
    avg_decode_latency_ms: Optional[float]
    server_prompt_tokens_delta: Optional[float] = None
    server_generation_tokens_delta: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_run_summary(
    *,
    total_tasks: int,
    completed_tasks: int,
    failed_tasks: int,
    interrupted: bool,
    duration_s: float,
    prefill_tokens: int,
    decode_tokens: int,
    prefill_latency_sum_ms: float,
    decode_latency_sum_ms: float,
    server_start: Optional[ServerTokenSnapshot] = None,
    server_end: Optional[ServerTokenSnapshot] = None,
) -> RunSummary:
    server_prompt_delta = None
    server_generation_delta = None
    if server_start is not None and server_end is not None:
        server_prompt_delta = _counter_delta(server_start.prompt_tokens, server_end.prompt_tokens)
        server_generation_delta = _counter_delta(
            server_start.generation_tokens, server_end.generation_tokens
        )

    return RunSummary(
        total_tasks=total_tasks,
        completed_tasks=completed_tasks,
        failed_tasks=failed_tasks,
        interrupted=interrupted,
        duration_s=float(duration_s),
        prefill_tokens=prefill_tokens,
        decode_tokens=decode_tokens,
        prefill_tok_s=_safe_div(prefill_tokens, duration_s),
        decode_tok_s=_safe_div(decode_tokens, duration_s),
        avg_prefill_latency_ms=_safe_div(prefill_latency_sum_ms, completed_tasks),
        avg_decode_latency_ms=_safe_div(decode_latency_sum_ms, completed_tasks),
        server_prompt_tokens_delta=server_prompt_delta,
        server_generation_tokens_delta=server_generation_delta,
    )


def format_interval_line(prefill_tokens: int, decode_tokens: int, interval_s: float) -> str:
    if interval_s == 1.0:
        return f"prefill: {prefill_tokens} tokens/s, decode: {decode_tokens} tokens/s"
    prefill_rate = prefill_tokens / interval_s
    decode_rate = decode_tokens / interval_s
    return f"prefill: {prefill_rate:.1f} tokens/s, decode: {decode_rate:.1f} tokens/s"


def format_summary(summary: RunSummary) -> str:
    lines: list[str] = []
    lines.append("=" * 60)
    title = "Run summary (interrupted)" if summary.interrupted else "Run summary"
    lines.append(title)
    lines.append("=" * 60)
    lines.append(
        f"dataset utilization: {summary.completed_tasks}/{summary.total_tasks} tasks completed"
    )
    lines.append(f"failed tasks: {summary.failed_tasks}")
    lines.append(f"elapsed: {_fmt(summary.duration_s)} s")
    lines.append(
        f"prefill: {summary.prefill_tokens} tokens, {_fmt(summary.prefill_tok_s)} tokens/s"
    )
    lines.append(
        f"decode: {summary.decode_tokens} tokens, {_fmt(summary.decode_tok_s)} tokens/s"
    )
    lines.append(f"avg prefill latency: {_fmt(summary.avg_prefill_latency_ms)} ms")
    lines.append(f"avg decode latency: {_fmt(summary.avg_decode_latency_ms)} ms/token")
    if (
        summary.server_prompt_tokens_delta is not None
        or summary.server_generation_tokens_delta is not None
    ):
        lines.append(
            "server counters: "
            f"prompt {_fmt(summary.server_prompt_tokens_delta, 0)} tokens, "
            f"generation {_fmt(summary.server_generation_tokens_delta, 0)} tokens"
        )
    lines.append("=" * 60)
    return "\n".join(lines)


def write_summary_json(output_path: Path, summary: RunSummary) -> None:
    output_path.write_text(json.dumps(summary.to_dict(), indent=2), encoding="utf-8")
