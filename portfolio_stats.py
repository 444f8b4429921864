# -*- coding: utf-8 -*-
"""portfolio_stats.py

Risk/return statistics for a simulated long/short book.

All functions are pure and recompute everything from the histories they are
given; the simulator calls them after every simulated day, so nothing here is
maintained as a running accumulator. Conventions:

- returns are simple daily returns in decimal form (0.01 = 1%);
- moments are population moments (ddof=0);
- annualization assumes 252 trading days;
- every ratio falls back to 0.0 when its denominator degenerates, and every
  published number is finite.
"""

from __future__ import annotations

from datetime import date
from typing import Mapping, Sequence, Tuple

import math

import numpy as np

from portfolio_models import MetricsSnapshot, StatsSnapshot

__all__ = [
    "TRADING_DAYS",
    "compute_metrics",
    "compute_stats",
    "max_drawdown",
    "percentile",
    "regression",
    "gross_leverage",
]

TRADING_DAYS = 252
_SQRT_YEAR = math.sqrt(TRADING_DAYS)
# relative dispersion below this is floating-point noise, not variance
_NOISE = 1e-12


# =========================
# Helpers
# =========================
def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(list(values), dtype=float)


def _finite(x: float) -> float:
    x = float(x)
    return x if math.isfinite(x) else 0.0


def _mean(x: np.ndarray) -> float:
    return float(x.mean()) if x.size else 0.0


def _std(x: np.ndarray) -> float:
    """Population stdev; rounding noise around a constant series counts as 0."""
    if x.size == 0:
        return 0.0
    s = float(x.std(ddof=0))
    return s if s > _NOISE * max(1.0, float(np.abs(x).max())) else 0.0


def percentile(values: Sequence[float], q: float) -> float:
    """Linearly interpolated percentile, ``q`` in [0, 1]. 0.0 for an empty input."""
    x = _as_array(values)
    if x.size == 0:
        return 0.0
    return float(np.percentile(x, q * 100.0))


def regression(y: Sequence[float], x: Sequence[float]) -> Tuple[float, float, np.ndarray, float]:
    """OLS of ``y`` on ``x``.

    Returns
    -------
    (alpha_daily, beta, residuals, r2)
        Zeros (and an empty residual array) when the inputs are empty or of
        different lengths. Beta is 0 when ``x`` has no variance; R^2 is 0 when
        ``y`` has no variance.
    """
    ya, xa = _as_array(y), _as_array(x)
    if ya.size == 0 or ya.size != xa.size:
        return 0.0, 0.0, np.array([], dtype=float), 0.0

    xm, ym = xa.mean(), ya.mean()
    var_x = _std(xa) ** 2
    cov_xy = float(((xa - xm) * (ya - ym)).mean())
    beta = cov_xy / var_x if var_x != 0.0 else 0.0
    alpha_daily = float(ym - beta * xm)
    residuals = ya - (alpha_daily + beta * xa)

    sse = float((residuals ** 2).sum())
    sst = _std(ya) ** 2 * ya.size
    r2 = 1.0 - sse / sst if sst != 0.0 else 0.0
    return alpha_daily, beta, residuals, r2


def max_drawdown(navs: Sequence[float]) -> float:
    """Most negative NAV/running-peak - 1 over the series (0.0 if it never dips)."""
    v = _as_array(navs)
    if v.size == 0:
        return 0.0
    peak = np.maximum.accumulate(v)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peak != 0.0, v / peak - 1.0, 0.0)
    return _finite(min(float(dd.min()), 0.0))


def gross_leverage(weights: Mapping[str, float]) -> float:
    """Sum of |weight|; 2.0 while the book is still flat (before the first rebalance)."""
    gross = float(sum(abs(w) for w in weights.values()))
    return gross if gross != 0.0 else 2.0


def _cagr(start_nav: float, end_nav: float, num_days: int) -> float:
    if start_nav <= 0.0:
        return 0.0
    ratio = end_nav / start_nav
    if ratio <= 0.0:
        return -1.0
    years = max(1.0 / TRADING_DAYS, num_days / TRADING_DAYS)
    try:
        return _finite(math.pow(ratio, 1.0 / years) - 1.0)
    except OverflowError:
        return 0.0


# =========================
# Core metrics
# =========================
def compute_metrics(navs: Sequence[float], returns: Sequence[float], total_turnover: float) -> MetricsSnapshot:
    """Headline metrics from the NAV path and the daily returns so far.

    Parameters
    ----------
    navs : sequence of float
        NAV path starting at the initial capital (one more entry than returns).
    returns : sequence of float
        Daily portfolio returns.
    total_turnover : float
        Accumulated sum of absolute weight changes.
    """
    v = _as_array(navs)
    r = _as_array(returns)
    if v.size < 2 or r.size == 0:
        return MetricsSnapshot()

    cagr = _cagr(float(v[0]), float(v[-1]), int(r.size))

    avg = _mean(r)
    daily_std = _std(r)
    vol_ann = daily_std * _SQRT_YEAR
    sharpe = (avg / daily_std) * _SQRT_YEAR if daily_std != 0.0 else 0.0

    hit_rate = float((r > 0.0).sum()) / r.size
    turnover_pct = float(total_turnover) / r.size

    return MetricsSnapshot(
        cagr=_finite(cagr),
        annualized_volatility=_finite(vol_ann),
        sharpe=_finite(sharpe),
        max_drawdown=max_drawdown(v),
        hit_rate=_finite(hit_rate),
        turnover_pct=_finite(turnover_pct),
    )


# =========================
# Extended statistics
# =========================
def _months_between(start: date, current: date) -> int:
    return max(0, (current.year - start.year) * 12 + (current.month - start.month))


def compute_stats(
    *,
    current_date: date,
    start_date: date,
    nav: float,
    initial_capital: float,
    metrics: MetricsSnapshot,
    returns: Sequence[float],
    benchmark_returns: Sequence[float],
    weights: Mapping[str, float],
) -> StatsSnapshot:
    """Point-in-time statistics for the live stats panel and the final result.

    Benchmark-relative figures (information ratio, alpha, beta, idiosyncratic
    risk, stability) use the common-length prefix of the strategy and
    benchmark return histories.
    """
    r = _as_array(returns)
    b = _as_array(benchmark_returns)
    n_pair = min(r.size, b.size)
    r_pair, b_pair = r[:n_pair], b[:n_pair]
    active = r_pair - b_pair

    avg = _mean(r)
    vol = _std(r)

    downside_std = _std(r[r < 0.0])
    sortino = (avg / downside_std) * _SQRT_YEAR if downside_std != 0.0 else 0.0

    tracking_error = _std(active)
    information_ratio = (_mean(active) / tracking_error) * _SQRT_YEAR if tracking_error != 0.0 else 0.0

    alpha_daily, beta, residuals, r2 = regression(r_pair, b_pair)
    alpha = alpha_daily * TRADING_DAYS
    idio = _std(residuals) * _SQRT_YEAR

    positive_sum = float(r[r > 0.0].sum())
    negative_sum_abs = abs(float(r[r < 0.0].sum()))
    omega = positive_sum / negative_sum_abs if negative_sum_abs != 0.0 else 0.0
    gain_to_pain = (positive_sum - negative_sum_abs) / negative_sum_abs if negative_sum_abs != 0.0 else 0.0

    p95 = percentile(r, 0.95)
    p05 = percentile(r, 0.05)
    tail_ratio = p95 / abs(p05) if p05 != 0.0 else 0.0
    common_sense = tail_ratio * max(gain_to_pain, 0.0)

    skew = kurtosis = 0.0
    if vol != 0.0:
        centered = r - avg
        skew = float((centered ** 3).mean()) / vol ** 3
        kurtosis = float((centered ** 4).mean()) / vol ** 4 - 3.0

    cumulative = nav / initial_capital - 1.0 if initial_capital != 0.0 else 0.0
    calmar = metrics.cagr / abs(metrics.max_drawdown) if metrics.max_drawdown != 0.0 else 0.0

    return StatsSnapshot(
        end_date=current_date.isoformat(),
        backtest_months=_months_between(start_date, current_date),
        annual_return=metrics.cagr,
        cumulative_returns=_finite(cumulative),
        annual_volatility=metrics.annualized_volatility,
        sharpe_ratio=metrics.sharpe,
        information_ratio=_finite(information_ratio),
        calmar_ratio=_finite(calmar),
        stability=_finite(max(0.0, r2)),
        omega_ratio=_finite(omega),
        sortino_ratio=_finite(sortino),
        skew=_finite(skew),
        kurtosis=_finite(kurtosis),
        tail_ratio=_finite(tail_ratio),
        common_sense_ratio=_finite(common_sense),
        daily_value_at_risk=_finite(p05),
        gross_leverage=_finite(gross_leverage(weights)),
        daily_turnover_pct=metrics.turnover_pct,
        alpha=_finite(alpha),
        beta=_finite(beta),
        win_rate=metrics.hit_rate,
        best_day=_finite(float(r.max())) if r.size else 0.0,
        worst_day=_finite(float(r.min())) if r.size else 0.0,
        idio=_finite(idio),
    )
