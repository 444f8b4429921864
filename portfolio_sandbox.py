# -*- coding: utf-8 -*-
"""portfolio_sandbox.py

Runs an externally supplied scoring procedure against the aligned price
history in an isolated child process.

Protocol
--------
1. No code configured -> nothing to do; callers use the built-in ranking.
2. Structural validation (code size, parameter count/key length, nesting depth
   and node count). Rejected payloads never reach a subprocess.
3. A private working directory receives the code, the parameters, a snapshot
   of dates/symbols/close/returns and the child runner
   (portfolio_scoring_runner.py).
4. The child runs with ``python -I`` in its own session under a hard
   wall-clock timeout, an optional caller deadline and a cancellation event.
   On expiry the whole process group is killed.
5. The child writes one tagged payload; it is parsed into ByDateSymbol,
   LatestDateOnly or Ambiguous and normalized to a ScoreMap.

Every failure comes back as a ScoringOutcome with an ``error_kind``
(validation, timeout, runtime, output, exception, cancelled). The working
directory is removed on every path.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import json
import math
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time

import pandas as pd
from loguru import logger

from portfolio_data import PriceSeries
from portfolio_models import BacktestConfig, ScoreMap, ScoringOutcome

__all__ = [
    "SandboxLimits",
    "ScoringSandbox",
    "ByDateSymbol",
    "LatestDateOnly",
    "Ambiguous",
    "ScoreOutputError",
    "validate_request",
    "parse_payload",
    "normalize_scores",
    "excerpt",
]

RUNNER_SOURCE = Path(__file__).resolve().with_name("portfolio_scoring_runner.py")


# =========================
# Limits
# =========================
@dataclass
class SandboxLimits:
    """Ceilings applied to every scoring request."""

    max_code_chars: int = 200_000
    max_params: int = 200
    max_param_key_chars: int = 120
    max_param_depth: int = 8
    max_param_nodes: int = 10_000
    timeout_seconds: float = 15.0
    diagnostic_chars: int = 3_000
    poll_interval: float = 0.05
    max_memory_bytes: Optional[int] = None  # RLIMIT_AS for the child (POSIX only)
    python_executable: Optional[str] = None  # defaults to sys.executable
    tmp_root: Optional[str] = None  # parent of the per-call working directory


# =========================
# Validation
# =========================
_JSON_SCALARS = (str, int, float, bool, type(None))


def _walk(value: Any, depth: int, budget: List[int], limits: SandboxLimits) -> Optional[str]:
    budget[0] += 1
    if budget[0] > limits.max_param_nodes:
        return f"Strategy params exceed {limits.max_param_nodes} nodes."
    if depth > limits.max_param_depth:
        return f"Strategy params exceed nesting depth {limits.max_param_depth}."
    if isinstance(value, Mapping):
        children = value.values()
    elif isinstance(value, (list, tuple)):
        children = value
    elif isinstance(value, _JSON_SCALARS):
        if isinstance(value, float) and not math.isfinite(value):
            return "Strategy params must not contain NaN or infinity."
        return None
    else:
        return f"Unsupported value type in strategy params: {type(value).__name__}."
    for child in children:
        err = _walk(child, depth + 1, budget, limits)
        if err is not None:
            return err
    return None


def validate_request(code: str, params: Optional[Mapping[str, Any]], limits: SandboxLimits) -> Optional[str]:
    """Return a human-readable reason if the request breaks a structural limit, else None."""
    if not isinstance(code, str):
        return "Strategy code must be a string of Python source."
    if len(code) > limits.max_code_chars:
        return f"Strategy code is too large (max {limits.max_code_chars} characters)."
    if params is None:
        return None
    if not isinstance(params, Mapping):
        return "Strategy params must be a key/value mapping."
    if len(params) > limits.max_params:
        return f"Too many strategy params (max {limits.max_params})."

    budget = [0]
    for key, value in params.items():
        if not isinstance(key, str):
            return "Strategy param keys must be strings."
        if len(key) > limits.max_param_key_chars:
            return f'Param key "{key[:40]}..." is too long (max {limits.max_param_key_chars} chars).'
        err = _walk(value, 0, budget, limits)
        if err is not None:
            return f'Param "{key}": {err}'
    return None


# =========================
# Output shapes
# =========================
class ScoreOutputError(ValueError):
    """The scoring payload does not match any accepted shape."""


@dataclass(frozen=True)
class ByDateSymbol:
    """date -> symbol -> score (flat records or a date-indexed table)."""

    scores: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class LatestDateOnly:
    """symbol -> score, applied to the most recent calendar date."""

    scores: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Ambiguous:
    """A mapping whose values are either scores or per-date score mappings."""

    mapping: Dict[str, Any] = field(default_factory=dict)

    def resolve(self) -> Union[ByDateSymbol, LatestDateOnly]:
        if not self.mapping:
            return ByDateSymbol({})
        first = next(iter(self.mapping.values()))
        if isinstance(first, Mapping):
            for d, inner in self.mapping.items():
                if not isinstance(inner, Mapping):
                    raise ScoreOutputError(f"Mixed value types in score mapping at {d!r}.")
            return ByDateSymbol({str(d): dict(inner) for d, inner in self.mapping.items()})
        return LatestDateOnly(dict(self.mapping))


ScorePayload = Union[ByDateSymbol, LatestDateOnly, Ambiguous]


def _records_to_table(records: Any) -> Dict[str, Dict[str, Any]]:
    if not isinstance(records, list):
        raise ScoreOutputError("Record output must be a list.")
    table: Dict[str, Dict[str, Any]] = {}
    for rec in records:
        if not isinstance(rec, Mapping):
            raise ScoreOutputError("Each score record must be an object.")
        keys = {str(k).lower(): k for k in rec}
        score_key = keys.get("score", keys.get("signal"))
        if "date" not in keys or "symbol" not in keys or score_key is None:
            raise ScoreOutputError("Score records need date, symbol and score fields.")
        table.setdefault(str(rec[keys["date"]]), {})[str(rec[keys["symbol"]])] = rec[score_key]
    return table


def parse_payload(raw: Any) -> ScorePayload:
    """Classify the runner's tagged payload. Raises ScoreOutputError."""
    if not isinstance(raw, Mapping) or "shape" not in raw:
        raise ScoreOutputError("Scoring output is not a tagged payload.")
    shape, data = raw.get("shape"), raw.get("data")
    if shape == "records":
        return ByDateSymbol(_records_to_table(data))
    if shape == "table":
        if not isinstance(data, Mapping) or not all(isinstance(v, Mapping) for v in data.values()):
            raise ScoreOutputError("Table output must map dates to symbol scores.")
        return ByDateSymbol({str(d): dict(v) for d, v in data.items()})
    if shape == "latest":
        if not isinstance(data, Mapping):
            raise ScoreOutputError("Series output must map symbols to scores.")
        return LatestDateOnly(dict(data))
    if shape == "mapping":
        if not isinstance(data, Mapping):
            raise ScoreOutputError("Mapping output must be an object.")
        return Ambiguous(dict(data))
    raise ScoreOutputError(f"Unsupported output type from scoring code: {raw.get('type', shape)!r}.")


def _score(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ScoreOutputError("Scores must be numeric, got a boolean.")
    try:
        x = float(value)
    except (TypeError, ValueError):
        raise ScoreOutputError(f"Score {value!r} is not numeric.") from None
    return x if math.isfinite(x) else None


def _as_calendar_date(key: str) -> date:
    try:
        return pd.Timestamp(key).date()
    except (TypeError, ValueError):
        raise ScoreOutputError(f"Unparseable date {key!r} in scoring output.") from None


def normalize_scores(payload: ScorePayload, calendar: Sequence[date]) -> ScoreMap:
    """Reduce any accepted shape to the canonical ScoreMap.

    Dates outside ``calendar`` and non-finite scores are dropped.
    """
    if isinstance(payload, Ambiguous):
        payload = payload.resolve()
    if isinstance(payload, LatestDateOnly):
        if not calendar or not payload.scores:
            return {}
        payload = ByDateSymbol({calendar[-1].isoformat(): payload.scores})

    known = set(calendar)
    out: ScoreMap = {}
    for key, by_symbol in payload.scores.items():
        d = _as_calendar_date(key)
        if d not in known:
            continue
        row = out.setdefault(d, {})
        for sym, value in by_symbol.items():
            x = _score(value)
            if x is not None:
                row[str(sym).strip().upper()] = x
    return {d: row for d, row in out.items() if row}


# =========================
# Diagnostics
# =========================
def excerpt(text: Optional[str], limit: int, *, scrub: Optional[str] = None) -> Optional[str]:
    """First and last ``limit // 2`` characters of ``text``; internal paths replaced."""
    if not text:
        return None
    if scrub:
        text = text.replace(scrub, "<sandbox>")
    text = text.strip()
    if len(text) <= limit:
        return text
    half = max(limit // 2, 1)
    return f"{text[:half]}\n...\n{text[-half:]}"


def _kill_process_tree(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except (ProcessLookupError, PermissionError):
        proc.kill()
    proc.wait()


# =========================
# Sandbox
# =========================
class ScoringSandbox:
    """Evaluates ``config.scoring_code`` against a PriceSeries.

    ``evaluate`` never raises: every failure is reported through the returned
    ScoringOutcome and the ScoreMap is None unless the call succeeded.
    """

    def __init__(self, limits: Optional[SandboxLimits] = None):
        self.limits = limits or SandboxLimits()

    # ---------- public ----------
    def evaluate(
        self,
        config: BacktestConfig,
        calendar: Sequence[date],
        prices: PriceSeries,
        *,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
    ) -> Tuple[ScoringOutcome, Optional[ScoreMap]]:
        """Run the configured scoring procedure.

        Parameters
        ----------
        config : BacktestConfig
            Supplies ``scoring_code`` and ``scoring_params``.
        calendar : sequence of datetime.date
            Aligned trading dates; the snapshot handed to the child covers
            exactly these dates.
        prices : PriceSeries
            Source of the close and return tables.
        cancel_event : threading.Event, optional
            Checked while the child runs; when set the child is killed.
        deadline : float, optional
            Absolute ``time.monotonic()`` instant; the effective limit is the
            earlier of this and the configured timeout.
        """
        code = config.scoring_code
        if code is None or (isinstance(code, str) and not code.strip()):
            return (
                ScoringOutcome(
                    requested=False,
                    executed=False,
                    succeeded=True,
                    message="No custom scoring code provided. Using built-in momentum ranking.",
                ),
                None,
            )

        workdir: Optional[str] = None
        try:
            problem = validate_request(code, config.scoring_params, self.limits)
            if problem is not None:
                logger.warning("Scoring request rejected: {}", problem)
                return self._failure(problem, "validation", executed=False), None

            workdir = str(Path(tempfile.mkdtemp(prefix="scoring_", dir=self.limits.tmp_root)).resolve())
            self._prepare(Path(workdir), code, config.scoring_params or {}, calendar, prices)
            return self._execute(Path(workdir), calendar, cancel_event, deadline)
        except Exception as exc:
            logger.opt(exception=exc).warning("Scoring execution failed unexpectedly")
            return (
                self._failure(
                    "Scoring execution failed unexpectedly.",
                    "exception",
                    executed=False,
                    diagnostic=excerpt(str(exc), self.limits.diagnostic_chars, scrub=workdir),
                ),
                None,
            )
        finally:
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)

    # ---------- internal helpers ----------
    @staticmethod
    def _failure(message: str, kind: str, *, executed: bool, diagnostic: Optional[str] = None) -> ScoringOutcome:
        return ScoringOutcome(
            requested=True,
            executed=executed,
            succeeded=False,
            message=message,
            diagnostic=diagnostic,
            error_kind=kind,
        )

    @staticmethod
    def _snapshot(calendar: Sequence[date], prices: PriceSeries) -> Dict[str, Any]:
        idx = pd.Index(list(calendar), dtype=object)
        close = prices.close.reindex(idx)
        returns = prices.returns.reindex(idx).fillna(0.0)
        keys = [d.isoformat() for d in calendar]

        def _table(frame: pd.DataFrame) -> Dict[str, Dict[str, float]]:
            return {
                sym: {k: float(v) for k, v in zip(keys, frame[sym].tolist()) if pd.notna(v)}
                for sym in frame.columns
            }

        return {
            "dates": keys,
            "symbols": list(prices.symbols),
            "close": _table(close),
            "returns": _table(returns),
        }

    def _prepare(
        self,
        workdir: Path,
        code: str,
        params: Mapping[str, Any],
        calendar: Sequence[date],
        prices: PriceSeries,
    ) -> None:
        (workdir / "strategy.py").write_text(code, encoding="utf-8")
        (workdir / "strategy_params.json").write_text(json.dumps(dict(params)), encoding="utf-8")
        (workdir / "strategy_input.json").write_text(json.dumps(self._snapshot(calendar, prices)), encoding="utf-8")
        (workdir / "sandbox_limits.json").write_text(json.dumps(self._child_limits()), encoding="utf-8")
        shutil.copyfile(RUNNER_SOURCE, workdir / "runner.py")

    def _child_env(self, workdir: Path) -> Dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", ""),
            "HOME": str(workdir),
            "TMPDIR": str(workdir),
            "OMP_NUM_THREADS": "1",
            "OPENBLAS_NUM_THREADS": "1",
            "MKL_NUM_THREADS": "1",
        }
        for key in ("SYSTEMROOT", "LANG", "LC_ALL"):
            if key in os.environ:
                env[key] = os.environ[key]
        return env

    def _child_limits(self) -> Dict[str, Optional[int]]:
        # applied by the runner to itself (POSIX only); the CPU ceiling backs up the wall-clock timeout
        return {
            "cpu_seconds": int(math.ceil(self.limits.timeout_seconds)) + 1,
            "memory_bytes": self.limits.max_memory_bytes,
        }

    def _execute(
        self,
        workdir: Path,
        calendar: Sequence[date],
        cancel_event: Optional[threading.Event],
        deadline: Optional[float],
    ) -> Tuple[ScoringOutcome, Optional[ScoreMap]]:
        limits = self.limits
        python = limits.python_executable or sys.executable
        stdout_path = workdir / "stdout.txt"
        stderr_path = workdir / "stderr.txt"

        expires_at = time.monotonic() + float(limits.timeout_seconds)
        if deadline is not None:
            expires_at = min(expires_at, deadline)

        with stdout_path.open("wb") as out, stderr_path.open("wb") as err:
            proc = subprocess.Popen(
                [python, "-I", "runner.py"],
                cwd=str(workdir),
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=err,
                env=self._child_env(workdir),
                start_new_session=(os.name == "posix"),
            )
            try:
                while True:
                    try:
                        returncode = proc.wait(timeout=limits.poll_interval)
                        break
                    except subprocess.TimeoutExpired:
                        pass
                    if cancel_event is not None and cancel_event.is_set():
                        _kill_process_tree(proc)
                        logger.info("Scoring procedure cancelled")
                        return self._failure("Scoring procedure was cancelled.", "cancelled", executed=True), None
                    if time.monotonic() >= expires_at:
                        _kill_process_tree(proc)
                        logger.warning("Scoring procedure timed out after {}s", limits.timeout_seconds)
                        return (
                            self._failure(
                                f"Scoring procedure timed out after {limits.timeout_seconds:g} seconds.",
                                "timeout",
                                executed=True,
                            ),
                            None,
                        )
            finally:
                _kill_process_tree(proc)

        stderr_text = stderr_path.read_text(encoding="utf-8", errors="replace")
        diagnostic = excerpt(stderr_text, limits.diagnostic_chars, scrub=str(workdir))

        if returncode != 0:
            logger.warning("Scoring procedure exited with status {}", returncode)
            return (
                self._failure(
                    f"Scoring procedure exited with non-zero status {returncode}.",
                    "runtime",
                    executed=True,
                    diagnostic=diagnostic,
                ),
                None,
            )

        output_path = workdir / "scores_output.json"
        try:
            raw = json.loads(output_path.read_text(encoding="utf-8"))
            scores = normalize_scores(parse_payload(raw), calendar)
        except (OSError, ValueError) as exc:
            # ScoreOutputError and json.JSONDecodeError are both ValueErrors
            return (
                self._failure(
                    f"Scoring procedure did not produce valid output: {exc}",
                    "output",
                    executed=True,
                    diagnostic=diagnostic,
                ),
                None,
            )

        logger.info("Scoring procedure produced scores for {} dates", len(scores))
        return (
            ScoringOutcome(
                requested=True,
                executed=True,
                succeeded=True,
                message="Scoring procedure executed successfully.",
                signal_dates=len(scores),
                diagnostic=diagnostic,
            ),
            scores,
        )
