from __future__ import annotations

import threading
import time
from datetime import date

import pytest

import portfolio_sandbox
from portfolio_sandbox import (
    Ambiguous,
    ByDateSymbol,
    LatestDateOnly,
    SandboxLimits,
    ScoreOutputError,
    ScoringSandbox,
    excerpt,
    normalize_scores,
    parse_payload,
    validate_request,
)

CALENDAR = [date(2024, 1, 2), date(2024, 1, 3), date(2024, 1, 4)]


def _nested(levels: int):
    value = 1
    for _ in range(levels):
        value = {"k": value}
    return value


# =========================
# Validation
# =========================
def test_depth_nine_rejected_with_ceiling_eight():
    limits = SandboxLimits(max_param_depth=8)
    assert validate_request("x = 1", {"p": _nested(8)}, limits) is None
    assert "depth" in validate_request("x = 1", {"p": _nested(9)}, limits)


def test_validation_limits():
    limits = SandboxLimits(max_code_chars=10, max_params=2, max_param_key_chars=3, max_param_nodes=5)
    assert "too large" in validate_request("x" * 11, None, limits)
    assert "Too many" in validate_request("", {"a": 1, "b": 2, "c": 3}, limits)
    assert "too long" in validate_request("", {"abcd": 1}, limits)
    assert "nodes" in validate_request("", {"a": list(range(10))}, limits)
    assert "NaN" in validate_request("", {"a": float("nan")}, SandboxLimits())
    assert "Unsupported" in validate_request("", {"a": object()}, SandboxLimits())
    assert "mapping" in validate_request("", [1, 2], SandboxLimits())


def test_node_budget_spans_all_params():
    limits = SandboxLimits(max_param_nodes=6)
    assert validate_request("", {"a": [1, 2], "b": 3}, limits) is None
    assert validate_request("", {"a": [1, 2], "b": [3, 4, 5]}, limits) is not None


def test_validation_failure_never_spawns(monkeypatch, make_series, small_config):
    spawned = []

    def fake_popen(*args, **kwargs):
        spawned.append(args)
        raise AssertionError("subprocess must not be started")

    monkeypatch.setattr(portfolio_sandbox.subprocess, "Popen", fake_popen)
    prices = make_series()
    config = small_config(scoring_code="def generate_scores(c, p):\n    return {}\n", scoring_params={"p": _nested(9)})

    outcome, scores = ScoringSandbox().evaluate(config, prices.calendar, prices)

    assert spawned == []
    assert scores is None
    assert outcome.requested and not outcome.executed and not outcome.succeeded
    assert outcome.error_kind == "validation"


def test_no_code_means_builtin(make_series, small_config):
    prices = make_series()
    for code in (None, "   \n"):
        outcome, scores = ScoringSandbox().evaluate(small_config(scoring_code=code), prices.calendar, prices)
        assert scores is None
        assert not outcome.requested and outcome.succeeded and not outcome.executed


# =========================
# Payload parsing
# =========================
def test_parse_records_with_signal_column():
    payload = parse_payload(
        {
            "shape": "records",
            "data": [
                {"Date": "2024-01-02", "Symbol": "a", "signal": 1.5},
                {"Date": "2024-01-02", "Symbol": "b", "signal": -1.0},
            ],
        }
    )
    assert isinstance(payload, ByDateSymbol)
    assert normalize_scores(payload, CALENDAR) == {date(2024, 1, 2): {"A": 1.5, "B": -1.0}}


def test_parse_table():
    payload = parse_payload({"shape": "table", "data": {"2024-01-03": {"A": 1}, "2024-01-04": {"A": 2}}})
    assert normalize_scores(payload, CALENDAR) == {date(2024, 1, 3): {"A": 1.0}, date(2024, 1, 4): {"A": 2.0}}


def test_latest_only_applies_to_last_calendar_date():
    payload = parse_payload({"shape": "latest", "data": {"A": 3.0, "B": 1.0}})
    assert isinstance(payload, LatestDateOnly)
    assert normalize_scores(payload, CALENDAR) == {date(2024, 1, 4): {"A": 3.0, "B": 1.0}}


def test_ambiguous_mapping_resolved_by_first_value():
    flat = parse_payload({"shape": "mapping", "data": {"A": 1.0}})
    assert isinstance(flat, Ambiguous)
    assert isinstance(flat.resolve(), LatestDateOnly)
    assert normalize_scores(flat, CALENDAR) == {date(2024, 1, 4): {"A": 1.0}}

    nested = parse_payload({"shape": "mapping", "data": {"2024-01-02": {"A": 1.0}}})
    assert isinstance(nested.resolve(), ByDateSymbol)
    assert normalize_scores(nested, CALENDAR) == {date(2024, 1, 2): {"A": 1.0}}

    with pytest.raises(ScoreOutputError):
        Ambiguous({"2024-01-02": {"A": 1.0}, "B": 2.0}).resolve()


def test_normalize_drops_unknown_dates_and_missing_scores():
    payload = ByDateSymbol(
        {
            "2024-01-02T00:00:00": {"A": 1.0, "B": None},
            "2023-12-29": {"A": 5.0},
            "2024-01-03": {"B": None},
        }
    )
    assert normalize_scores(payload, CALENDAR) == {date(2024, 1, 2): {"A": 1.0}}


def test_normalize_rejects_non_numeric_scores():
    with pytest.raises(ScoreOutputError):
        normalize_scores(ByDateSymbol({"2024-01-02": {"A": "high"}}), CALENDAR)
    with pytest.raises(ScoreOutputError):
        normalize_scores(ByDateSymbol({"2024-01-02": {"A": True}}), CALENDAR)
    with pytest.raises(ScoreOutputError):
        normalize_scores(ByDateSymbol({"xyz": {"A": 1.0}}), CALENDAR)


@pytest.mark.parametrize(
    "raw",
    [
        {"shape": "unsupported", "type": "str"},
        {"data": {}},
        [1, 2, 3],
        {"shape": "records", "data": [{"date": "2024-01-02", "score": 1.0}]},
        {"shape": "table", "data": {"2024-01-02": 1.0}},
    ],
)
def test_parse_rejects_malformed(raw):
    with pytest.raises(ScoreOutputError):
        parse_payload(raw)


def test_excerpt_keeps_head_and_tail_and_scrubs_paths():
    text = "/tmp/scoring_x/strategy.py line 1\n" + "x" * 5000 + "\nValueError: boom"
    out = excerpt(text, 100, scrub="/tmp/scoring_x")
    assert out.startswith("<sandbox>/strategy.py")
    assert out.endswith("ValueError: boom"[-50:])
    assert len(out) <= 100 + 5
    assert excerpt("", 100) is None
    assert excerpt("short", 100) == "short"


# =========================
# Subprocess execution
# =========================
def _evaluate(make_series, small_config, code, *, limits=None, params=None, **kwargs):
    prices = make_series()
    sandbox = ScoringSandbox(limits or SandboxLimits())
    config = small_config(scoring_code=code, scoring_params=params)
    return prices, sandbox.evaluate(config, prices.calendar, prices, **kwargs)


def test_records_output(make_series, small_config):
    code = (
        "def generate_scores(context, params):\n"
        "    last = context['dates'][-1]\n"
        "    return [{'date': last, 'symbol': s, 'score': float(i)} for i, s in enumerate(context['symbols'])]\n"
    )
    prices, (outcome, scores) = _evaluate(make_series, small_config, code)
    assert outcome.succeeded and outcome.executed, outcome
    assert outcome.signal_dates == 1
    assert scores == {prices.calendar[-1]: {"A": 0.0, "B": 1.0, "C": 2.0, "D": 3.0, "E": 4.0}}


def test_table_output_and_params(make_series, small_config):
    code = (
        "def generate_scores(context, params):\n"
        "    close = context['close']\n"
        "    return close / close.shift(params['window']) - 1.0\n"
    )
    prices, (outcome, scores) = _evaluate(make_series, small_config, code, params={"window": 3})
    assert outcome.succeeded, outcome
    assert sorted(scores) == prices.calendar[3:]
    expected = prices.close["A"].iloc[10] / prices.close["A"].iloc[7] - 1.0
    assert scores[prices.calendar[10]]["A"] == pytest.approx(expected)


def test_series_output_is_latest_only(make_series, small_config):
    code = (
        "def generate_scores(context):\n"
        "    return context['returns'].iloc[-5:].sum()\n"
    )
    prices, (outcome, scores) = _evaluate(make_series, small_config, code)
    assert outcome.succeeded, outcome
    assert list(scores) == [prices.calendar[-1]]
    assert set(scores[prices.calendar[-1]]) == {"A", "B", "C", "D", "E"}


def test_strategy_class_entry_point(make_series, small_config):
    code = (
        "class Strategy:\n"
        "    def __init__(self, params):\n"
        "        self.bias = params.get('bias', 0.0)\n"
        "    def get_signals(self, context):\n"
        "        return {s: self.bias for s in context['symbols']}\n"
    )
    prices, (outcome, scores) = _evaluate(make_series, small_config, code, params={"bias": 2.5})
    assert outcome.succeeded, outcome
    assert scores == {prices.calendar[-1]: {s: 2.5 for s in "ABCDE"}}


def test_runtime_error_reports_excerpt(make_series, small_config):
    code = "def generate_scores(context, params):\n    raise RuntimeError('boom from scoring')\n"
    _, (outcome, scores) = _evaluate(make_series, small_config, code)
    assert scores is None
    assert outcome.executed and not outcome.succeeded
    assert outcome.error_kind == "runtime"
    assert "boom from scoring" in outcome.diagnostic
    assert "scoring_" not in outcome.diagnostic


def test_missing_entry_point_is_runtime(make_series, small_config):
    _, (outcome, _) = _evaluate(make_series, small_config, "x = 1\n")
    assert outcome.error_kind == "runtime"
    assert "generate_scores" in outcome.diagnostic


def test_unsupported_output_is_output_error(make_series, small_config):
    code = "def generate_scores(context, params):\n    return 'not scores'\n"
    _, (outcome, scores) = _evaluate(make_series, small_config, code)
    assert scores is None
    assert outcome.error_kind == "output"


def test_sleeping_procedure_times_out(make_series, small_config):
    code = "import time\n\ndef generate_scores(context, params):\n    time.sleep(30)\n    return {}\n"
    started = time.monotonic()
    _, (outcome, scores) = _evaluate(make_series, small_config, code, limits=SandboxLimits(timeout_seconds=1.0))
    assert time.monotonic() - started < 10.0
    assert scores is None
    assert outcome.executed and not outcome.succeeded
    assert outcome.error_kind == "timeout"


def test_external_deadline_wins(make_series, small_config):
    code = "import time\n\ndef generate_scores(context, params):\n    time.sleep(30)\n"
    _, (outcome, _) = _evaluate(make_series, small_config, code, deadline=time.monotonic() + 0.5)
    assert outcome.error_kind == "timeout"


def test_cancel_event_kills_procedure(make_series, small_config):
    cancel = threading.Event()
    cancel.set()
    code = "import time\n\ndef generate_scores(context, params):\n    time.sleep(30)\n"
    _, (outcome, scores) = _evaluate(make_series, small_config, code, cancel_event=cancel)
    assert scores is None
    assert outcome.error_kind == "cancelled"


@pytest.mark.parametrize(
    "code",
    [
        "def generate_scores(context, params):\n    return {'A': 1.0}\n",
        "def generate_scores(context, params):\n    raise ValueError('x')\n",
    ],
)
def test_working_directory_removed(tmp_path, make_series, small_config, code):
    _evaluate(make_series, small_config, code, limits=SandboxLimits(tmp_root=str(tmp_path)))
    assert list(tmp_path.iterdir()) == []


def test_unexpected_failure_is_exception_kind(monkeypatch, tmp_path, make_series, small_config):
    def broken_popen(*args, **kwargs):
        raise OSError("no interpreter")

    monkeypatch.setattr(portfolio_sandbox.subprocess, "Popen", broken_popen)
    _, (outcome, scores) = _evaluate(
        make_series,
        small_config,
        "def generate_scores(c, p):\n    return {}\n",
        limits=SandboxLimits(tmp_root=str(tmp_path)),
    )
    assert scores is None
    assert outcome.error_kind == "exception"
    assert list(tmp_path.iterdir()) == []


def test_non_string_code_is_validation_failure(monkeypatch, make_series, small_config):
    monkeypatch.setattr(portfolio_sandbox.subprocess, "Popen", lambda *a, **k: pytest.fail("spawned"))
    prices = make_series()
    outcome, scores = ScoringSandbox().evaluate(small_config(scoring_code=123), prices.calendar, prices)
    assert scores is None
    assert outcome.requested and not outcome.executed
    assert outcome.error_kind == "validation"
    assert "string" in validate_request(b"x = 1", None, SandboxLimits())
