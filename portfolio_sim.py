# -*- coding: utf-8 -*-
"""portfolio_sim.py

Day-by-day long/short backtest.

- RebalancePolicy: rank symbols by score, pick the long and short legs and
  equal-weight them (+1 across the long leg, -1 across the short leg).
- PortfolioSimulator: replays an aligned PriceSeries, applies each day's
  returns to the current weights, rebalances on a fixed cadence and publishes
  one ProgressEvent per simulated day.

Scores come from the built-in trailing-return rule or, when the configuration
carries scoring code, from the ScoringSandbox. The sandbox is evaluated once
before the first simulated day; its ScoreMap is consulted on every rebalance
date and the built-in rule covers the dates it leaves out.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import math
import threading
import uuid
import warnings

import numpy as np
from loguru import logger

from portfolio_data import PriceSeries, normalize_symbols
from portfolio_models import (
    BacktestConfig,
    BacktestError,
    BacktestResult,
    DailyReturnPoint,
    DrawdownPoint,
    EquityPoint,
    HoldingPoint,
    MetricsSnapshot,
    ProgressEvent,
    RebalanceRecord,
    RunCancelled,
    ScoreMap,
    ScoringError,
    ScoringOutcome,
    SetupError,
    Transaction,
    Weights,
)
from portfolio_sandbox import ScoringSandbox
from portfolio_stats import compute_metrics, compute_stats

__all__ = [
    "MISSING_SCORE",
    "TOP_HOLDINGS",
    "transaction_side",
    "trailing_returns",
    "RebalancePolicy",
    "SimulatorState",
    "PortfolioSimulator",
]

# Ranks below every real score; a symbol the scoring procedure left out can
# never be picked long ahead of a scored one.
MISSING_SCORE = float("-inf")
TOP_HOLDINGS = 10

FALLBACK_NOTE = "Falling back to built-in momentum ranking."


# =========================
# Helpers
# =========================
def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def transaction_side(delta: float, new_weight: float) -> str:
    """BUY / COVER when the weight rises, SHORT / SELL when it falls.

    The resulting weight decides which: a rise that stays short is a cover, a
    fall that ends short is a short sale.
    """
    if delta > 0.0:
        return "BUY" if new_weight >= 0.0 else "COVER"
    return "SHORT" if new_weight < 0.0 else "SELL"


def trailing_returns(prices: PriceSeries, symbols: Sequence[str], i: int, lookback: int) -> Dict[str, float]:
    """Total return of each symbol from calendar position ``i - lookback`` to ``i``.

    A zero starting close scores 0.0.
    """
    start = prices.close.iloc[i - lookback]
    end = prices.close.iloc[i]
    out: Dict[str, float] = {}
    for sym in symbols:
        s0, s1 = float(start[sym]), float(end[sym])
        out[sym] = s1 / s0 - 1.0 if s0 != 0.0 else 0.0
    return out


# =========================
# Rebalance policy
# =========================
class RebalancePolicy:
    """Equal-weight long/short leg selection from per-symbol scores."""

    @staticmethod
    def rank(symbols: Sequence[str], scores: Mapping[str, float]) -> List[str]:
        """Symbols ordered by descending score; ties keep their order in ``symbols``.

        Symbols absent from ``scores`` (or scored NaN) take MISSING_SCORE.
        """
        def _score(sym: str) -> float:
            v = scores.get(sym, MISSING_SCORE)
            return MISSING_SCORE if v is None or math.isnan(v) else float(v)

        # sorted() is stable, including with reverse=True
        return sorted(symbols, key=_score, reverse=True)

    @classmethod
    def select_legs(
        cls,
        symbols: Sequence[str],
        scores: Mapping[str, float],
        long_count: int,
        short_count: int,
    ) -> Tuple[List[str], List[str]]:
        ranked = cls.rank(symbols, scores)
        if not ranked:
            return [], []
        n_long = max(1, int(long_count))
        n_short = max(1, int(short_count))
        return ranked[:n_long], ranked[-n_short:]

    @classmethod
    def select_weights(
        cls,
        symbols: Sequence[str],
        scores: Mapping[str, float],
        long_count: int,
        short_count: int,
    ) -> Weights:
        """Full set of target weights for a rebalance.

        Parameters
        ----------
        symbols : sequence of str
            Universe in input order.
        scores : mapping
            symbol -> score for the rebalance date.
        long_count, short_count : int
            Leg sizes; each is at least 1.

        Returns
        -------
        dict
            Every symbol mapped to +1/len(long), -1/len(short) or 0.0. A symbol
            that lands in both legs (tiny universes) ends up short.
        """
        longs, shorts = cls.select_legs(symbols, scores, long_count, short_count)
        weights: Weights = {sym: 0.0 for sym in symbols}
        for sym in longs:
            weights[sym] = 1.0 / len(longs)
        for sym in shorts:
            weights[sym] = -1.0 / len(shorts)
        return weights


# =========================
# Simulator
# =========================
class SimulatorState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PortfolioSimulator:
    """One backtest run over an aligned PriceSeries.

    Parameters
    ----------
    config : BacktestConfig
        Run input contract.
    prices : PriceSeries
        Read-only aligned history; may be shared with other runs.
    sandbox : ScoringSandbox, optional
        Used only when ``config.scoring_code`` is set. A default sandbox is
        created on demand.
    run_id : str, optional
        Identifier carried by every event and the result (a fresh hex UUID by
        default).
    sink : object, optional
        Anything with ``publish(event)``; receives one ProgressEvent per day.
    cancel_event : threading.Event, optional
        Cooperative cancellation, checked once per simulated day and while the
        scoring procedure runs.

    Notes
    -----
    One run per instance. ``run()`` either returns a BacktestResult or raises a
    BacktestError subclass (SetupError, ScoringError, RunCancelled); nothing
    partial is returned. Events already published are not retracted.
    """

    def __init__(
        self,
        config: BacktestConfig,
        prices: PriceSeries,
        *,
        sandbox: Optional[ScoringSandbox] = None,
        run_id: Optional[str] = None,
        sink=None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.prices = prices
        self.sandbox = sandbox
        self.run_id = run_id or uuid.uuid4().hex
        self.sink = sink
        self.cancel_event = cancel_event
        self.state = SimulatorState.NOT_STARTED

        self.symbols: List[str] = []
        self.calendar: List[date] = []
        self.weights: Weights = {}
        self.total_turnover: float = 0.0
        self.events_published: int = 0

    # ---------- public ----------
    def run(self) -> BacktestResult:
        if self.state is not SimulatorState.NOT_STARTED:
            raise RuntimeError(f"Simulator already {self.state.value}; create a new instance per run.")
        self.state = SimulatorState.RUNNING
        started_at = _utc_now()
        logger.info("Run {} started ({} symbols)", self.run_id, len(self.config.symbols))

        try:
            self._setup()
            scoring, score_map = self._evaluate_scoring()
            result = self._simulate(started_at, scoring, score_map)
        except RunCancelled:
            self.state = SimulatorState.CANCELLED
            logger.info("Run {} cancelled after {} events", self.run_id, self.events_published)
            raise
        except BacktestError as exc:
            self.state = SimulatorState.FAILED
            logger.warning("Run {} failed ({}): {}", self.run_id, exc.kind, exc.message)
            raise
        except Exception:
            self.state = SimulatorState.FAILED
            logger.exception("Run {} failed unexpectedly", self.run_id)
            raise

        self.state = SimulatorState.COMPLETED
        logger.info(
            "Run {} completed: NAV {:.2f}, CAGR {:.4f}, {} transactions",
            self.run_id,
            result.equity_curve[-1].nav if result.equity_curve else self.config.initial_capital,
            result.metrics.cagr,
            len(result.transactions),
        )
        return result

    def cancel(self) -> None:
        if self.cancel_event is None:
            self.cancel_event = threading.Event()
        self.cancel_event.set()

    # ---------- setup ----------
    def _setup(self) -> None:
        cfg = self.config
        if not (cfg.initial_capital > 0.0) or not math.isfinite(cfg.initial_capital):
            raise SetupError("Initial capital must be a positive number.")
        if cfg.lookback_days < 1:
            raise SetupError("Lookback window must be at least 1 day.")
        if cfg.rebalance_frequency_days < 1:
            raise SetupError("Rebalance frequency must be at least 1 day.")
        if cfg.long_count < 1 or cfg.short_count < 1:
            raise SetupError("Long and short counts must be at least 1.")
        if cfg.end_date < cfg.start_date:
            raise SetupError("End date must not be before start date.")

        symbols = normalize_symbols(cfg.symbols)
        if len(symbols) < max(3, cfg.long_count + cfg.short_count):
            raise SetupError("Not enough symbols provided for long/short selection.")

        missing = [s for s in symbols if s not in self.prices.symbols]
        if missing:
            raise SetupError(f"No price data for: {', '.join(missing)}.")

        # the series may be shared with runs over other symbols and windows
        self.prices = self.prices.subset(symbols, cfg.start_date, cfg.end_date)
        self.calendar = list(self.prices.calendar)
        if len(self.calendar) < cfg.lookback_days + 2:
            raise SetupError(
                f"Insufficient overlapping date coverage across symbols: {len(self.calendar)} common dates, "
                f"at least {cfg.lookback_days + 2} required."
            )

        self.symbols = symbols
        self.weights = {sym: 0.0 for sym in symbols}

    def _evaluate_scoring(self) -> Tuple[ScoringOutcome, Optional[ScoreMap]]:
        if self.sandbox is None:
            self.sandbox = ScoringSandbox()
        outcome, score_map = self.sandbox.evaluate(
            self.config,
            self.calendar,
            self.prices,
            cancel_event=self.cancel_event,
        )

        if outcome.error_kind == "cancelled":
            raise RunCancelled("Run was cancelled while the scoring procedure was running.")

        if outcome.requested and not outcome.succeeded:
            if not self.config.fallback_to_builtin_on_scoring_error:
                raise ScoringError.from_outcome(outcome)
            warnings.warn(f"Scoring procedure failed ({outcome.error_kind}); using built-in ranking.")
            outcome = ScoringOutcome(
                requested=outcome.requested,
                executed=outcome.executed,
                succeeded=False,
                used_fallback=True,
                message=f"{outcome.message} {FALLBACK_NOTE}",
                signal_dates=0,
                diagnostic=outcome.diagnostic,
                error_kind=outcome.error_kind,
            )
            score_map = None

        if score_map:
            logger.info("Using external scores for {} dates", len(score_map))
        return outcome, score_map

    # ---------- loop ----------
    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelled("Run was cancelled.")

    def _rebalance(
        self,
        i: int,
        day: str,
        nav: float,
        score_map: Optional[ScoreMap],
    ) -> Tuple[List[Transaction], RebalanceRecord]:
        cfg = self.config
        current = self.calendar[i]
        external = score_map.get(current) if score_map else None
        if external:
            scores, source = dict(external), "scoring"
        else:
            scores, source = trailing_returns(self.prices, self.symbols, i, cfg.lookback_days), "builtin"

        longs, shorts = RebalancePolicy.select_legs(self.symbols, scores, cfg.long_count, cfg.short_count)
        target = RebalancePolicy.select_weights(self.symbols, scores, cfg.long_count, cfg.short_count)

        closes = self.prices.close.iloc[i]
        txs: List[Transaction] = []
        for sym in self.symbols:
            prev_w, new_w = self.weights.get(sym, 0.0), target[sym]
            delta = new_w - prev_w
            if delta == 0.0:
                continue
            self.total_turnover += abs(delta)
            price = float(closes[sym])
            notional = abs(delta) * nav
            shares = notional / price if price != 0.0 else 0.0
            txs.append(
                Transaction(
                    date=day,
                    symbol=sym,
                    side=transaction_side(delta, new_w),
                    shares=round(shares, 4),
                    price=price,
                    turnover_usd=round(notional, 2),
                )
            )

        self.weights = target
        return txs, RebalanceRecord(date=day, score_source=source, long=list(longs), short=list(shorts))

    def _top_holdings(self, metrics: MetricsSnapshot) -> List[HoldingPoint]:
        held = [(sym, w) for sym, w in self.weights.items() if w != 0.0]
        held.sort(key=lambda kv: abs(kv[1]), reverse=True)
        return [HoldingPoint(symbol=sym, weight=w, pnl_contribution=w * metrics.cagr) for sym, w in held[:TOP_HOLDINGS]]

    def _simulate(self, started_at: str, scoring: ScoringOutcome, score_map: Optional[ScoreMap]) -> BacktestResult:
        cfg = self.config
        n = len(self.calendar)
        returns = self.prices.returns[self.symbols].to_numpy(dtype=float)
        bench_returns = self.prices.benchmark_returns.to_numpy(dtype=float)

        nav = float(cfg.initial_capital)
        bench_nav = float(cfg.initial_capital)
        peak = nav

        navs: List[float] = [nav]
        daily: List[float] = []
        bench_daily: List[float] = []
        equity_curve: List[EquityPoint] = []
        drawdowns: List[DrawdownPoint] = []
        return_points: List[DailyReturnPoint] = []
        transactions: List[Transaction] = []
        rebalances: List[RebalanceRecord] = []

        start = cfg.lookback_days + 1
        for i in range(start, n):
            self._check_cancelled()
            current = self.calendar[i]
            day = current.isoformat()

            w = np.array([self.weights[s] for s in self.symbols], dtype=float)
            r = float(np.dot(w, returns[i]))
            nav *= 1.0 + r
            navs.append(nav)
            daily.append(r)

            b = float(bench_returns[i])
            bench_nav *= 1.0 + b
            bench_daily.append(b)

            peak = max(peak, nav)
            dd = nav / peak - 1.0 if peak != 0.0 else 0.0

            equity_point = EquityPoint(date=day, nav=nav, benchmark_nav=bench_nav)
            drawdown_point = DrawdownPoint(date=day, drawdown=min(dd, 0.0))
            return_point = DailyReturnPoint(date=day, value=r)
            equity_curve.append(equity_point)
            drawdowns.append(drawdown_point)
            return_points.append(return_point)

            if (i - start) % cfg.rebalance_frequency_days == 0:
                txs, record = self._rebalance(i, day, nav, score_map)
                transactions.extend(txs)
                rebalances.append(record)

            metrics = compute_metrics(navs, daily, self.total_turnover)
            stats = compute_stats(
                current_date=current,
                start_date=cfg.start_date,
                nav=nav,
                initial_capital=cfg.initial_capital,
                metrics=metrics,
                returns=daily,
                benchmark_returns=bench_daily,
                weights=self.weights,
            )
            self._publish(
                ProgressEvent(
                    run_id=self.run_id,
                    progress_pct=round((i + 1) / n * 100.0, 2),
                    current_date=day,
                    equity_point=equity_point,
                    drawdown_point=drawdown_point,
                    daily_return_point=return_point,
                    metrics=metrics,
                    stats=stats,
                )
            )

        final_metrics = compute_metrics(navs, daily, self.total_turnover)
        final_stats = compute_stats(
            current_date=self.calendar[-1],
            start_date=cfg.start_date,
            nav=nav,
            initial_capital=cfg.initial_capital,
            metrics=final_metrics,
            returns=daily,
            benchmark_returns=bench_daily,
            weights=self.weights,
        )

        return BacktestResult(
            run_id=self.run_id,
            started_at=started_at,
            completed_at=_utc_now(),
            config=cfg,
            scoring=scoring,
            metrics=final_metrics,
            stats=final_stats,
            equity_curve=equity_curve,
            drawdown_series=drawdowns,
            daily_returns=return_points,
            top_holdings=self._top_holdings(final_metrics),
            transactions=transactions,
            rebalances=rebalances,
            total_turnover=self.total_turnover,
        )

    def _publish(self, event: ProgressEvent) -> None:
        if self.sink is not None:
            self.sink.publish(event)
        self.events_published += 1
