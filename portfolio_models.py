# -*- coding: utf-8 -*-
"""portfolio_models.py

Shared data types for the long/short backtester.

Everything here is plain data: price bars, run configuration, the per-day
points published while a run progresses, the final result, and the exception
hierarchy used to report terminal failures. Behaviour lives next door in
portfolio_sim (simulation), portfolio_stats (statistics) and portfolio_sandbox
(external scoring).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

__all__ = [
    "PriceBar",
    "BacktestConfig",
    "ScoreMap",
    "Weights",
    "EquityPoint",
    "DrawdownPoint",
    "DailyReturnPoint",
    "HoldingPoint",
    "Transaction",
    "RebalanceRecord",
    "MetricsSnapshot",
    "StatsSnapshot",
    "ScoringOutcome",
    "ProgressEvent",
    "BacktestResult",
    "BacktestError",
    "SetupError",
    "ScoringError",
    "RunCancelled",
    "ERROR_KINDS",
]

# date -> symbol -> score
ScoreMap = Dict[date, Dict[str, float]]
# symbol -> signed fraction of NAV
Weights = Dict[str, float]

ERROR_KINDS = ("setup", "validation", "timeout", "runtime", "output", "exception", "cancelled")


# =========================
# Market data
# =========================
@dataclass(frozen=True)
class PriceBar:
    """One symbol, one trading day."""

    date: date
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


# =========================
# Run configuration
# =========================
@dataclass
class BacktestConfig:
    """Run input contract.

    Parameters
    ----------
    symbols : list of str
        Tradable universe. Normalized (trimmed, upper-cased, de-duplicated)
        when the simulator is set up.
    start_date, end_date : datetime.date
        Inclusive history window requested from the data feed.
    initial_capital : float
        Starting NAV for both the strategy and the benchmark.
    lookback_days : int
        Window of the built-in trailing-return rule; the simulation starts
        after it.
    rebalance_frequency_days : int
        Rebalance every N simulated days, counted from the first one.
    long_count, short_count : int
        Leg sizes (each at least 1 when applied).
    scoring_code : str, optional
        Source of an external scoring procedure run in the sandbox.
    scoring_params : dict, optional
        JSON-like parameters handed to the scoring procedure.
    fallback_to_builtin_on_scoring_error : bool
        Tolerate scoring failures by using the built-in rule for the whole run.
    benchmark_symbol : str
        Compared against, never traded.
    """

    symbols: List[str]
    start_date: date
    end_date: date
    initial_capital: float = 1_000_000.0
    lookback_days: int = 60
    rebalance_frequency_days: int = 21
    long_count: int = 4
    short_count: int = 2
    scoring_code: Optional[str] = None
    scoring_params: Optional[Dict[str, Any]] = None
    fallback_to_builtin_on_scoring_error: bool = False
    benchmark_symbol: str = "SPY"


# =========================
# Per-day points & records
# =========================
@dataclass(frozen=True)
class EquityPoint:
    date: str
    nav: float
    benchmark_nav: float


@dataclass(frozen=True)
class DrawdownPoint:
    date: str
    drawdown: float


@dataclass(frozen=True)
class DailyReturnPoint:
    date: str
    value: float


@dataclass(frozen=True)
class HoldingPoint:
    symbol: str
    weight: float
    pnl_contribution: float


@dataclass(frozen=True)
class Transaction:
    """A weight change on a rebalance date. ``side`` is BUY, SELL, SHORT or COVER."""

    date: str
    symbol: str
    side: str
    shares: float
    price: float
    turnover_usd: float


@dataclass(frozen=True)
class RebalanceRecord:
    date: str
    score_source: str  # 'builtin' | 'scoring'
    long: List[str]
    short: List[str]


# =========================
# Snapshots
# =========================
@dataclass(frozen=True)
class MetricsSnapshot:
    cagr: float = 0.0
    annualized_volatility: float = 0.0
    sharpe: float = 0.0
    max_drawdown: float = 0.0
    hit_rate: float = 0.0
    turnover_pct: float = 0.0


@dataclass(frozen=True)
class StatsSnapshot:
    """Extended point-in-time statistics published alongside MetricsSnapshot.

    ``information_ratio`` is the active-return information ratio against the
    benchmark; ``stability`` is the regression R^2 clamped at zero.
    """

    end_date: str
    backtest_months: int = 0
    annual_return: float = 0.0
    cumulative_returns: float = 0.0
    annual_volatility: float = 0.0
    sharpe_ratio: float = 0.0
    information_ratio: float = 0.0
    calmar_ratio: float = 0.0
    stability: float = 0.0
    omega_ratio: float = 0.0
    sortino_ratio: float = 0.0
    skew: float = 0.0
    kurtosis: float = 0.0
    tail_ratio: float = 0.0
    common_sense_ratio: float = 0.0
    daily_value_at_risk: float = 0.0
    gross_leverage: float = 0.0
    daily_turnover_pct: float = 0.0
    alpha: float = 0.0
    beta: float = 0.0
    win_rate: float = 0.0
    best_day: float = 0.0
    worst_day: float = 0.0
    idio: float = 0.0


# =========================
# Scoring execution summary
# =========================
@dataclass(frozen=True)
class ScoringOutcome:
    """What happened when the external scoring procedure was (or was not) run."""

    requested: bool
    executed: bool
    succeeded: bool
    used_fallback: bool = False
    message: str = ""
    signal_dates: int = 0
    diagnostic: Optional[str] = None
    error_kind: Optional[str] = None


# =========================
# Progress & result
# =========================
@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    progress_pct: float
    current_date: str
    equity_point: EquityPoint
    drawdown_point: DrawdownPoint
    daily_return_point: DailyReturnPoint
    metrics: MetricsSnapshot
    stats: StatsSnapshot


@dataclass
class BacktestResult:
    run_id: str
    started_at: str
    completed_at: str
    config: BacktestConfig
    scoring: ScoringOutcome
    metrics: MetricsSnapshot
    stats: StatsSnapshot
    equity_curve: List[EquityPoint] = field(default_factory=list)
    drawdown_series: List[DrawdownPoint] = field(default_factory=list)
    daily_returns: List[DailyReturnPoint] = field(default_factory=list)
    top_holdings: List[HoldingPoint] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)
    rebalances: List[RebalanceRecord] = field(default_factory=list)
    total_turnover: float = 0.0


# =========================
# Errors
# =========================
class BacktestError(Exception):
    """Terminal run failure with a kind from ERROR_KINDS and an optional excerpt."""

    kind = "exception"

    def __init__(self, message: str, *, kind: Optional[str] = None, diagnostic: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.diagnostic = diagnostic


class SetupError(BacktestError, ValueError):
    """Not enough symbols, dates or a malformed configuration."""

    kind = "setup"


class ScoringError(BacktestError):
    """External scoring failed and the run does not tolerate it."""

    @classmethod
    def from_outcome(cls, outcome: ScoringOutcome) -> "ScoringError":
        kind = outcome.error_kind or "exception"
        return cls(
            f"Scoring procedure failed ({kind}): {outcome.message}",
            kind=kind,
            diagnostic=outcome.diagnostic,
        )


class RunCancelled(BacktestError):
    kind = "cancelled"
