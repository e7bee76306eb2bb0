from __future__ import annotations

import asyncio
import enum
import logging
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional

import httpx

from loadgen import MetricCounters, StreamSource, run_bench_task
from metrics_vllm import ServerTokenScraper, ServerTokenSnapshot
from report import RunSummary, compute_run_summary, format_interval_line, format_summary, write_summary_json
from streaming import DEFAULT_MAX_TOKENS, ChatStreamClient
from token_counter import TokenCounter

logger = logging.getLogger(__name__)

Emit = Callable[[str], None]


def _print_line(line: str) -> None:
    print(line, flush=True)


@dataclass
class RunConfig:
    api_base: str = "http://127.0.0.1:8080/v1"
    model: str = ""
    served_model_name: Optional[str] = None
    api_key: Optional[str] = None
    max_concurrency: Optional[int] = None
    max_tokens: int = DEFAULT_MAX_TOKENS
    report_interval_s: float = 1.0
    timeout_s: Optional[float] = None
    transcript_dir: Optional[Path] = None
    summary_json: Optional[Path] = None
    metrics_url: Optional[str] = None


class RunState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    ALL_TASKS_COMPLETE = "all_tasks_complete"
    REPORTING = "reporting"
    TERMINAL = "terminal"


@dataclass
class RunTotals:
    prefill_tokens: int = 0
    decode_tokens: int = 0

    def add(self, prefill_tokens: int, decode_tokens: int) -> None:
        self.prefill_tokens += prefill_tokens
        self.decode_tokens += decode_tokens


@dataclass
class RunOutcome:
    summary: RunSummary
    first_error: Optional[BaseException]
    peak_active: int
    states: list[RunState] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 0 if self.first_error is None else 1


class Scheduler:
    """Starts one task per prompt behind a counting admission gate."""

    def __init__(self, max_concurrency: Optional[int] = None) -> None:
        if max_concurrency is not None and max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be > 0, got {max_concurrency}")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
        self._tasks: list[asyncio.Task[None]] = []
        self.first_error: Optional[BaseException] = None
        self.failed_tasks = 0
        self.active = 0
        self.peak_active = 0

    @property
    def total_tasks(self) -> int:
        return len(self._tasks)

    def launch(
        self,
        prompts: Iterable[str],
        run_one: Callable[[int, str], Awaitable[Any]],
    ) -> None:
        for index, prompt in enumerate(prompts):
            self._tasks.append(
                asyncio.create_task(
                    self._run_with_permit(index, prompt, run_one),
                    name=f"bench-task-{index}",
                )
            )

    async def _run_with_permit(
        self,
        index: int,
        prompt: str,
        run_one: Callable[[int, str], Awaitable[Any]],
    ) -> None:
        if self._semaphore is not None:
            async with self._semaphore:
                await self._run_guarded(index, prompt, run_one)
        else:
            await self._run_guarded(index, prompt, run_one)

    async def _run_guarded(
        self,
        index: int,
        prompt: str,
        run_one: Callable[[int, str], Awaitable[Any]],
    ) -> None:
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            await run_one(index, prompt)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.failed_tasks += 1
            if self.first_error is None:
                self.first_error = exc
            logger.warning("Task %d failed: %s", index, exc)
        finally:
            self.active -= 1

    async def wait_all(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def abandon(self) -> int:
        """Cancel unfinished tasks and wait until their permits are released."""
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return len(pending)


class Reporter:
    def __init__(
        self,
        counters: MetricCounters,
        interval_s: float = 1.0,
        emit: Emit = _print_line,
    ) -> None:
        if interval_s <= 0:
            raise ValueError(f"interval_s must be > 0, got {interval_s}")
        self.counters = counters
        self.interval_s = interval_s
        self.totals = RunTotals()
        self._emit = emit

    async def run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            prefill_tokens, decode_tokens = self.counters.drain_rates()
            self.totals.add(prefill_tokens, decode_tokens)
            self._emit(format_interval_line(prefill_tokens, decode_tokens, self.interval_s))

    def flush(self) -> None:
        """Fold counts left since the last interval into the run totals."""
        prefill_tokens, decode_tokens = self.counters.drain_rates()
        self.totals.add(prefill_tokens, decode_tokens)


class ShutdownCoordinator:
    """Races a termination request against task completion and the reporter."""

    def __init__(self, signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM)) -> None:
        self._signals = list(signals)
        self._stop_event = asyncio.Event()
        self._loop_handlers: list[signal.Signals] = []
        self._previous_handlers: dict[signal.Signals, Any] = {}
        self._done_task: Optional[asyncio.Future[None]] = None
        self.states: list[RunState] = [RunState.STARTING]

    @property
    def state(self) -> RunState:
        return self.states[-1]

    def transition(self, state: RunState) -> None:
        logger.debug("Run state %s -> %s", self.state.value, state.value)
        self.states.append(state)

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Termination requested")
        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            try:
                loop.add_signal_handler(sig, self.request_stop)
                self._loop_handlers.append(sig)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler.
                try:
                    self._previous_handlers[sig] = signal.signal(
                        sig, lambda _signum, _frame: loop.call_soon_threadsafe(self.request_stop)
                    )
                except ValueError:
                    logger.debug("Cannot install handler for %s outside the main thread", sig)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._loop_handlers:
            loop.remove_signal_handler(sig)
        self._loop_handlers.clear()
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()

    async def race(self, all_done: Awaitable[None], reporter: Awaitable[None]) -> bool:
        """Wait for a stop request or for every task; returns True if interrupted.

        The reporter is cancelled when the race ends. ``all_done`` is left
        running when interrupted so the caller can abandon its tasks.
        """
        self.transition(RunState.RUNNING)
        stop_task = asyncio.create_task(self._stop_event.wait(), name="stop-request")
        done_task = asyncio.ensure_future(all_done)
        reporter_task = asyncio.ensure_future(reporter)
        waiting: set[asyncio.Future[Any]] = {stop_task, done_task, reporter_task}
        try:
            while True:
                finished, waiting = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
                if done_task in finished or stop_task in finished:
                    break
                if reporter_task in finished and not reporter_task.cancelled():
                    logger.error("Reporter stopped: %s", reporter_task.exception())
        finally:
            for task in (stop_task, reporter_task):
                task.cancel()
            await asyncio.gather(stop_task, reporter_task, return_exceptions=True)

        interrupted = not done_task.done()
        self.transition(RunState.INTERRUPTED if interrupted else RunState.ALL_TASKS_COMPLETE)
        self._done_task = done_task
        return interrupted

    async def settle(self) -> None:
        if self._done_task is None:
            return
        if not self._done_task.done():
            self._done_task.cancel()
        await asyncio.gather(self._done_task, return_exceptions=True)


def _http_limits(max_concurrency: Optional[int]) -> httpx.Limits:
    if not max_concurrency:
        return httpx.Limits(max_connections=None, max_keepalive_connections=64)
    max_connections = max(max_concurrency * 2, 64)
    return httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(max_connections // 2, 32),
    )


async def run_benchmark(
    config: RunConfig,
    prompts: list[str],
    token_counter: TokenCounter,
    stream_client: Optional[StreamSource] = None,
    coordinator: Optional[ShutdownCoordinator] = None,
    emit: Emit = _print_line,
) -> RunOutcome:
    counters = MetricCounters()
    scheduler = Scheduler(config.max_concurrency)
    reporter = Reporter(counters, interval_s=config.report_interval_s, emit=emit)
    coordinator = coordinator or ShutdownCoordinator()

    if config.transcript_dir is not None:
        config.transcript_dir.mkdir(parents=True, exist_ok=True)

    server_start: Optional[ServerTokenSnapshot] = None
    server_end: Optional[ServerTokenSnapshot] = None

    async with httpx.AsyncClient(limits=_http_limits(config.max_concurrency), timeout=None) as client:
        source: StreamSource = stream_client or ChatStreamClient(
            api_base=config.api_base,
            client=client,
            model=config.served_model_name or config.model,
            api_key=config.api_key,
            timeout_s=config.timeout_s,
        )
        scraper = ServerTokenScraper(config.metrics_url, client) if config.metrics_url else None
        if scraper is not None:
            server_start = await scraper.snapshot()

        async def run_one(index: int, prompt: str) -> None:
            transcript_path = (
                config.transcript_dir / f"{index}.txt" if config.transcript_dir is not None else None
            )
            await run_bench_task(
                prompt=prompt,
                stream_client=source,
                token_counter=token_counter,
                counters=counters,
                max_tokens=config.max_tokens,
                transcript_path=transcript_path,
            )

        coordinator.install_signal_handlers()
        started = time.monotonic()
        try:
            scheduler.launch(prompts, run_one)
            interrupted = await coordinator.race(scheduler.wait_all(), reporter.run())
            duration_s = time.monotonic() - started
            completed_tasks = counters.completed_tasks
            prefill_latency_sum_ms = counters.prefill_latency_ms
            decode_latency_sum_ms = counters.decode_latency_ms
        finally:
            abandoned = await scheduler.abandon()
            await coordinator.settle()
            coordinator.remove_signal_handlers()
        if abandoned:
            logger.info("Abandoned %d in-flight tasks", abandoned)

        coordinator.transition(RunState.REPORTING)
        reporter.flush()
        if scraper is not None:
            server_end = await scraper.snapshot()

    summary = compute_run_summary(
        total_tasks=len(prompts),
        completed_tasks=completed_tasks,
        failed_tasks=scheduler.failed_tasks,
        interrupted=interrupted,
        duration_s=duration_s,
        prefill_tokens=reporter.totals.prefill_tokens,
        decode_tokens=reporter.totals.decode_tokens,
        prefill_latency_sum_ms=prefill_latency_sum_ms,
        decode_latency_sum_ms=decode_latency_sum_ms,
        server_start=server_start,
        server_end=server_end,
    )
    emit(format_summary(summary))
    if config.summary_json is not None:
        write_summary_json(config.summary_json, summary)
    coordinator.transition(RunState.TERMINAL)

    return RunOutcome(
        summary=summary,
        first_error=scheduler.first_error,
        peak_active=scheduler.peak_active,
        states=list(coordinator.states),
    )
