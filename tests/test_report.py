from __future__ import annotations

from typing import Optional

import pytest

from metrics_vllm import ServerTokenSnapshot
from report import compute_run_summary, format_interval_line, format_summary


def _snapshot(prompt_tokens: Optional[float], generation_tokens: Optional[float]) -> ServerTokenSnapshot:
    return ServerTokenSnapshot(
        timestamp_unix_ms=0,
        scrape_ok=prompt_tokens is not None,
        scrape_error=None,
        prompt_tokens=prompt_tokens,
        generation_tokens=generation_tokens,
    )


def test_summary_averages() -> None:
    summary = compute_run_summary(
        total_tasks=10,
        completed_tasks=4,
        failed_tasks=1,
        interrupted=False,
        duration_s=2.0,
        prefill_tokens=400,
        decode_tokens=1000,
        prefill_latency_sum_ms=200.0,
        decode_latency_sum_ms=40.0,
    )

    assert summary.prefill_tok_s == pytest.approx(200.0)
    assert summary.decode_tok_s == pytest.approx(500.0)
    assert summary.avg_prefill_latency_ms == pytest.approx(50.0)
    assert summary.avg_decode_latency_ms == pytest.approx(10.0)

    text = format_summary(summary)
    assert "dataset utilization: 4/10 tasks completed" in text
    assert "failed tasks: 1" in text
    assert "decode: 1000 tokens, 500.00 tokens/s" in text
    assert "avg decode latency: 10.00 ms/token" in text
    assert "server counters" not in text


def test_summary_undefined_when_nothing_completed() -> None:
    summary = compute_run_summary(
        total_tasks=3,
        completed_tasks=0,
        failed_tasks=0,
        interrupted=True,
        duration_s=0.0,
        prefill_tokens=0,
        decode_tokens=0,
        prefill_latency_sum_ms=0.0,
        decode_latency_sum_ms=0.0,
    )

    assert summary.avg_prefill_latency_ms is None
    assert summary.avg_decode_latency_ms is None
    assert summary.prefill_tok_s is None

    text = format_summary(summary)
    assert "Run summary (interrupted)" in text
    assert "avg prefill latency: undefined ms" in text
    assert "avg decode latency: undefined ms/token" in text


def test_summary_server_deltas() -> None:
    summary = compute_run_summary(
        total_tasks=1,
        completed_tasks=1,
        failed_tasks=0,
        interrupted=False,
        duration_s=1.0,
        prefill_tokens=10,
        decode_tokens=20,
        prefill_latency_sum_ms=1.0,
        decode_latency_sum_ms=1.0,
        server_start=_snapshot(100.0, 50.0),
        server_end=_snapshot(112.0, None),
    )

    assert summary.server_prompt_tokens_delta == 12.0
    assert summary.server_generation_tokens_delta is None
    assert "server counters: prompt 12 tokens, generation undefined tokens" in format_summary(summary)


def test_interval_line() -> None:
    assert format_interval_line(12, 340, 1.0) == "prefill: 12 tokens/s, decode: 340 tokens/s"
    assert format_interval_line(12, 340, 2.0) == "prefill: 6.0 tokens/s, decode: 170.0 tokens/s"
