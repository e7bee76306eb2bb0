from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx
from prometheus_client.parser import text_string_to_metric_families

logger = logging.getLogger(__name__)

PROMPT_TOKEN_ALIASES = [
    "vllm:prompt_tokens_total",
    "vllm:prompt_tokens",
    "sglang:prompt_tokens_total",
]
GENERATION_TOKEN_ALIASES = [
    "vllm:generation_tokens_total",
    "vllm:generation_tokens",
    "sglang:generation_tokens_total",
]


def _pick_first(values: dict[str, float], aliases: list[str]) -> Optional[float]:
    for alias in aliases:
        if alias in values:
            return values[alias]
    return None


@dataclass
class ServerTokenSnapshot:
    timestamp_unix_ms: int
    scrape_ok: bool
    scrape_error: Optional[str]
    prompt_tokens: Optional[float]
    generation_tokens: Optional[float]


def _failed_snapshot(timestamp_unix_ms: int, error: str) -> ServerTokenSnapshot:
    return ServerTokenSnapshot(
        timestamp_unix_ms=timestamp_unix_ms,
        scrape_ok=False,
        scrape_error=error,
        prompt_tokens=None,
        generation_tokens=None,
    )


def parse_prometheus_metrics(text: str, timestamp_unix_ms: int) -> ServerTokenSnapshot:
    # Samples sharing a name (one per model or engine label set) are summed.
    values: dict[str, float] = {}
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            values[sample.name] = values.get(sample.name, 0.0) + float(sample.value)

    return ServerTokenSnapshot(
        timestamp_unix_ms=timestamp_unix_ms,
        scrape_ok=True,
        scrape_error=None,
        prompt_tokens=_pick_first(values, PROMPT_TOKEN_ALIASES),
        generation_tokens=_pick_first(values, GENERATION_TOKEN_ALIASES),
    )


class ServerTokenScraper:
    """Reads the server's own prompt/generation token counters.

    Used to cross-check client-side token counts; a failed scrape is recorded
    on the snapshot and never aborts the run.
    """

    def __init__(
        self,
        metrics_url: str,
        client: httpx.AsyncClient,
        request_timeout_s: float = 5.0,
    ) -> None:
        self.metrics_url = metrics_url
        self.request_timeout_s = request_timeout_s
        self._client = client

    async def snapshot(self) -> ServerTokenSnapshot:
        timestamp_unix_ms = int(time.time() * 1000)
        try:
            response = await self._client.get(self.metrics_url, timeout=self.request_timeout_s)
        except httpx.HTTPError as exc:
            logger.warning("Metrics scrape of %s failed: %s", self.metrics_url, exc)
            return _failed_snapshot(timestamp_unix_ms, str(exc))

        if response.status_code != 200:
            logger.warning("Metrics scrape of %s returned HTTP %s", self.metrics_url, response.status_code)
            return _failed_snapshot(timestamp_unix_ms, f"HTTP {response.status_code}")
        try:
            return parse_prometheus_metrics(response.text, timestamp_unix_ms)
        except ValueError as exc:
            logger.warning("Metrics from %s could not be parsed: %s", self.metrics_url, exc)
            return _failed_snapshot(timestamp_unix_ms, str(exc))
