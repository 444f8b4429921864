# -*- coding: utf-8 -*-
"""portfolio_runs.py

Run bookkeeping around the simulator.

- ProgressSink: where per-day events go (``publish``) and where the terminal
  ``completed`` signal is delivered.
- InMemoryRunStore: concurrency-safe keyed map of RunRecord. Records are frozen
  and replaced on every transition.
- RunService: starts runs as independent background tasks, wires data loading,
  the simulator, the store and the sink together, and supports cancellation.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

import threading
import uuid

from loguru import logger

from portfolio_data import DataFeed, load_price_series, normalize_symbols
from portfolio_models import BacktestConfig, BacktestError, BacktestResult, ProgressEvent
from portfolio_sandbox import ScoringSandbox
from portfolio_sim import PortfolioSimulator

__all__ = [
    "ProgressSink",
    "NullSink",
    "CollectingSink",
    "RunRecord",
    "RunStore",
    "InMemoryRunStore",
    "RunService",
]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Progress sinks
# =========================
class ProgressSink(Protocol):
    def publish(self, event: ProgressEvent) -> None:
        ...

    def completed(self, run_id: str) -> None:
        ...


class NullSink:
    def publish(self, event: ProgressEvent) -> None:
        pass

    def completed(self, run_id: str) -> None:
        pass


class CollectingSink:
    """Keeps every event and completion signal in memory, per run."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: Dict[str, List[ProgressEvent]] = {}
        self.completed_runs: List[str] = []

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            self.events.setdefault(event.run_id, []).append(event)

    def completed(self, run_id: str) -> None:
        with self._lock:
            self.completed_runs.append(run_id)

    def events_for(self, run_id: str) -> List[ProgressEvent]:
        with self._lock:
            return list(self.events.get(run_id, []))


# =========================
# Run store
# =========================
@dataclass(frozen=True)
class RunRecord:
    run_id: str
    status: str
    config: BacktestConfig
    created_at: str
    completed_at: Optional[str] = None
    result: Optional[BacktestResult] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    diagnostic: Optional[str] = None


class RunStore(Protocol):
    def create(self, config: BacktestConfig, run_id: Optional[str] = None) -> RunRecord:
        ...

    def get(self, run_id: str) -> Optional[RunRecord]:
        ...

    def mark_completed(self, run_id: str, result: BacktestResult) -> None:
        ...

    def mark_failed(self, run_id: str, message: str, *, kind: str = "exception", diagnostic: Optional[str] = None) -> None:
        ...

    def mark_cancelled(self, run_id: str) -> None:
        ...


class InMemoryRunStore:
    """Thread-safe RunStore. Transitions on unknown run ids are ignored."""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: Dict[str, RunRecord] = {}

    def create(self, config: BacktestConfig, run_id: Optional[str] = None) -> RunRecord:
        record = RunRecord(
            run_id=run_id or uuid.uuid4().hex,
            status="running",
            config=config,
            created_at=_utc_now(),
        )
        with self._lock:
            if record.run_id in self._runs:
                raise KeyError(f"Run {record.run_id} already exists.")
            self._runs[record.run_id] = record
        return record

    def get(self, run_id: str) -> Optional[RunRecord]:
        with self._lock:
            return self._runs.get(run_id)

    def list(self) -> List[RunRecord]:
        with self._lock:
            return list(self._runs.values())

    def _transition(self, run_id: str, **changes) -> None:
        with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                logger.warning("Ignoring transition for unknown run {}", run_id)
                return
            self._runs[run_id] = replace(current, completed_at=_utc_now(), **changes)

    def mark_completed(self, run_id: str, result: BacktestResult) -> None:
        self._transition(run_id, status="completed", result=result)

    def mark_failed(self, run_id: str, message: str, *, kind: str = "exception", diagnostic: Optional[str] = None) -> None:
        self._transition(run_id, status="failed", error_kind=kind, error_message=message, diagnostic=diagnostic)

    def mark_cancelled(self, run_id: str) -> None:
        self._transition(run_id, status="cancelled", error_kind="cancelled", error_message="Run was cancelled.")


# =========================
# Run service
# =========================
class RunService:
    """Runs backtests on a thread pool.

    Parameters
    ----------
    feed : DataFeed
        Source of price bars.
    store : RunStore, optional
        Defaults to a fresh InMemoryRunStore.
    sink : ProgressSink, optional
        Receives every run's events and completion signals.
    sandbox : ScoringSandbox, optional
        Shared by all runs; each evaluation uses its own working directory.
    max_workers : int
        Concurrent runs.
    """

    def __init__(
        self,
        feed: DataFeed,
        store: Optional[RunStore] = None,
        sink: Optional[ProgressSink] = None,
        sandbox: Optional[ScoringSandbox] = None,
        *,
        max_workers: int = 4,
    ):
        self.feed = feed
        self.store = store if store is not None else InMemoryRunStore()
        self.sink = sink if sink is not None else NullSink()
        self.sandbox = sandbox if sandbox is not None else ScoringSandbox()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="backtest")
        self._lock = threading.Lock()
        self._cancel: Dict[str, threading.Event] = {}
        self._futures: Dict[str, Future] = {}

    def start(self, config: BacktestConfig) -> str:
        """Register a run and schedule it; returns the run id immediately."""
        record = self.store.create(config)
        cancel_event = threading.Event()
        with self._lock:
            self._cancel[record.run_id] = cancel_event
            self._futures[record.run_id] = self._executor.submit(self._execute, record.run_id, config, cancel_event)
        logger.info("Run {} scheduled", record.run_id)
        return record.run_id

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            event = self._cancel.get(run_id)
        if event is None:
            return False
        event.set()
        return True

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Optional[RunRecord]:
        """Block until the run finishes (or ``timeout`` elapses) and return its record."""
        with self._lock:
            future = self._futures.get(run_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.store.get(run_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            events = list(self._cancel.values())
        if not wait:
            for event in events:
                event.set()
        self._executor.shutdown(wait=wait)

    def _execute(self, run_id: str, config: BacktestConfig, cancel_event: threading.Event) -> None:
        try:
            prices = load_price_series(
                self.feed,
                normalize_symbols(config.symbols),
                config.start_date,
                config.end_date,
                benchmark_symbol=config.benchmark_symbol,
            )
            simulator = PortfolioSimulator(
                config,
                prices,
                sandbox=self.sandbox,
                run_id=run_id,
                sink=self.sink,
                cancel_event=cancel_event,
            )
            result = simulator.run()
        except BacktestError as exc:
            if exc.kind == "cancelled":
                self.store.mark_cancelled(run_id)
            else:
                self.store.mark_failed(run_id, exc.message, kind=exc.kind, diagnostic=exc.diagnostic)
            return
        except Exception as exc:
            logger.opt(exception=exc).error("Backtest run {} failed", run_id)
            self.store.mark_failed(run_id, "Backtest run failed due to an internal error.", kind="exception")
            return
        finally:
            with self._lock:
                self._cancel.pop(run_id, None)

        self.store.mark_completed(run_id, result)
        self.sink.completed(run_id)
