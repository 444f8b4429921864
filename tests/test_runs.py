from __future__ import annotations

import pytest

from conftest import START, UNIVERSE
from portfolio_data import InMemoryDataFeed, synthetic_bars
from portfolio_runs import CollectingSink, InMemoryRunStore, RunService


@pytest.fixture
def feed():
    return InMemoryDataFeed(synthetic_bars(UNIVERSE + ["SPY"], START, 40, seed=5))


# =========================
# Store
# =========================
def test_store_transitions(small_config):
    store = InMemoryRunStore()
    record = store.create(small_config(), run_id="r1")
    assert record.status == "running" and record.completed_at is None

    store.mark_failed("r1", "boom", kind="runtime", diagnostic="Traceback")
    failed = store.get("r1")
    assert failed.status == "failed"
    assert failed.error_kind == "runtime"
    assert failed.error_message == "boom"
    assert failed.diagnostic == "Traceback"
    assert failed.completed_at is not None
    assert record.status == "running"

    store.create(small_config(), run_id="r2")
    store.mark_cancelled("r2")
    assert store.get("r2").status == "cancelled"
    assert {r.run_id for r in store.list()} == {"r1", "r2"}


def test_store_ignores_unknown_runs(small_config):
    store = InMemoryRunStore()
    store.mark_cancelled("nope")
    store.mark_failed("nope", "x")
    assert store.get("nope") is None
    assert store.list() == []


def test_store_rejects_duplicate_ids(small_config):
    store = InMemoryRunStore()
    store.create(small_config(), run_id="dup")
    with pytest.raises(KeyError):
        store.create(small_config(), run_id="dup")


# =========================
# Service
# =========================
def test_service_completes_run(feed, small_config):
    sink = CollectingSink()
    service = RunService(feed, sink=sink, max_workers=2)
    try:
        run_id = service.start(small_config())
        record = service.wait(run_id, timeout=60)
    finally:
        service.shutdown()

    assert record.status == "completed"
    assert record.result is not None and record.result.run_id == run_id
    events = sink.events_for(run_id)
    assert len(events) == len(record.result.equity_curve) == 34
    dates = [e.current_date for e in events]
    assert dates == sorted(dates)
    assert sink.completed_runs == [run_id]


def test_service_concurrent_runs_are_independent(feed, small_config):
    sink = CollectingSink()
    service = RunService(feed, sink=sink, max_workers=2)
    try:
        first = service.start(small_config(long_count=1))
        second = service.start(small_config(long_count=2))
        a = service.wait(first, timeout=60)
        b = service.wait(second, timeout=60)
    finally:
        service.shutdown()

    assert a.status == b.status == "completed"
    assert all(e.run_id == first for e in sink.events_for(first))
    assert len(sink.events_for(first)) == len(sink.events_for(second))
    assert sorted(sink.completed_runs) == sorted([first, second])


def test_service_records_setup_failure(feed, small_config):
    sink = CollectingSink()
    service = RunService(feed, sink=sink)
    try:
        run_id = service.start(small_config(symbols=["A", "B"]))
        record = service.wait(run_id, timeout=60)
    finally:
        service.shutdown()

    assert record.status == "failed"
    assert record.error_kind == "setup"
    assert "Not enough symbols" in record.error_message
    assert sink.events_for(run_id) == []
    assert sink.completed_runs == []


def test_service_cancel_during_run(feed, small_config):
    class CancellingSink(CollectingSink):
        service = None

        def publish(self, event):
            super().publish(event)
            self.service.cancel(event.run_id)

    sink = CancellingSink()
    service = RunService(feed, sink=sink)
    sink.service = service
    try:
        run_id = service.start(small_config())
        record = service.wait(run_id, timeout=60)
    finally:
        service.shutdown()

    assert record.status == "cancelled"
    assert record.error_kind == "cancelled"
    assert len(sink.events_for(run_id)) == 1
    assert sink.completed_runs == []
    assert service.cancel(run_id) is False


def test_service_records_scoring_failure(feed, small_config):
    sink = CollectingSink()
    service = RunService(feed, sink=sink)
    code = "def generate_scores(context, params):\n    raise ValueError('bad scores')\n"
    try:
        run_id = service.start(small_config(scoring_code=code))
        record = service.wait(run_id, timeout=60)
    finally:
        service.shutdown()

    assert record.status == "failed"
    assert record.error_kind == "runtime"
    assert "bad scores" in record.diagnostic
    assert sink.events_for(run_id) == []
    assert sink.completed_runs == []


def test_wait_unknown_run_returns_none(feed):
    service = RunService(feed)
    try:
        assert service.wait("missing") is None
        assert service.cancel("missing") is False
    finally:
        service.shutdown()


def test_unexpected_failure_keeps_internal_detail_out_of_record(small_config):
    class BrokenFeed:
        def get_bars(self, symbol, start, end):
            raise RuntimeError("disk error at /srv/cache/prices.db")

    service = RunService(BrokenFeed())
    try:
        run_id = service.start(small_config())
        record = service.wait(run_id, timeout=60)
    finally:
        service.shutdown()

    assert record.status == "failed"
    assert record.error_kind == "exception"
    assert "/srv/cache" not in record.error_message
    assert record.diagnostic is None
