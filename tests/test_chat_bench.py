from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import pytest
from conftest import CharTokenizer

import chat_bench
from report import compute_run_summary
from runner import RunConfig, RunOutcome
from streaming import StreamError
from token_counter import TokenCounter


@pytest.fixture
def dataset(tmp_path: Path) -> Path:
    path = tmp_path / "prompts.json"
    path.write_text(json.dumps(["a", "b", "c"]), encoding="utf-8")
    return path


@pytest.fixture
def offline_tokenizer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        chat_bench.TokenCounter,
        "from_pretrained",
        classmethod(lambda cls, model_id: cls(CharTokenizer())),
    )


def _fake_run(first_error: Optional[BaseException], seen: list[RunConfig]):  # noqa: ANN202
    async def run_benchmark(
        config: RunConfig, prompts: list[str], token_counter: TokenCounter
    ) -> RunOutcome:
        seen.append(config)
        summary = compute_run_summary(
            total_tasks=len(prompts),
            completed_tasks=len(prompts),
            failed_tasks=0 if first_error is None else 1,
            interrupted=False,
            duration_s=1.0,
            prefill_tokens=0,
            decode_tokens=0,
            prefill_latency_sum_ms=0.0,
            decode_latency_sum_ms=0.0,
        )
        return RunOutcome(summary=summary, first_error=first_error, peak_active=1)

    return run_benchmark


def test_parser_requires_exactly_one_dataset() -> None:
    parser = chat_bench.build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args(["-a", "http://x/v1", "-m", "m"])
    with pytest.raises(SystemExit):
        parser.parse_args(["-a", "http://x/v1", "-m", "m", "-d", "a.json", "--dataset-csv", "*.csv"])


def test_rejects_non_positive_concurrency(dataset: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        chat_bench.main(["-a", "http://x/v1", "-m", "m", "-d", str(dataset), "-p", "0"])
    assert excinfo.value.code == 2


def test_dataset_error_exits_nonzero(
    tmp_path: Path, offline_tokenizer: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[RunConfig] = []
    monkeypatch.setattr(chat_bench, "run_benchmark", _fake_run(None, seen))
    bad = tmp_path / "bad.json"
    bad.write_text('{"not": "a list"}', encoding="utf-8")

    assert chat_bench.main(["-a", "http://x/v1", "-m", "m", "-d", str(bad)]) == 1
    assert seen == []


def test_successful_run_exits_zero(
    dataset: Path, offline_tokenizer: None, monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[RunConfig] = []
    monkeypatch.setattr(chat_bench, "run_benchmark", _fake_run(None, seen))

    code = chat_bench.main(
        ["-a", "http://x/v1", "-m", "org/model", "-d", str(dataset), "-p", "2",
         "--served-model-name", "served"]
    )

    assert code == 0
    assert seen[0].max_concurrency == 2
    assert seen[0].served_model_name == "served"
    assert seen[0].max_tokens == 65536


def test_task_error_exits_nonzero(
    dataset: Path,
    offline_tokenizer: None,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    seen: list[RunConfig] = []
    monkeypatch.setattr(chat_bench, "run_benchmark", _fake_run(StreamError("HTTP 500"), seen))

    with caplog.at_level(logging.ERROR, logger="chat_bench"):
        assert chat_bench.main(["-a", "http://x/v1", "-m", "m", "-d", str(dataset)]) == 1

    failures = [record for record in caplog.records if record.name == "chat_bench"]
    assert len(failures) == 1
    assert "HTTP 500" in failures[0].getMessage()
