# tests/conftest.py
from __future__ import annotations

from datetime import date, timedelta
from typing import Dict, List, Sequence

import pytest
from loguru import logger

from portfolio_data import PriceSeries, synthetic_bars
from portfolio_models import BacktestConfig, PriceBar

UNIVERSE = ["A", "B", "C", "D", "E"]
START = date(2024, 1, 1)


@pytest.fixture(autouse=True)
def disable_logger():
    logger.remove()
    logger.add(lambda msg: None)
    yield


def weekdays(start: date, n: int) -> List[date]:
    out: List[date] = []
    d = start
    while len(out) < n:
        if d.weekday() < 5:
            out.append(d)
        d += timedelta(days=1)
    return out


@pytest.fixture
def make_bars():
    """closes by symbol -> bars on consecutive weekdays starting at START."""

    def _make(closes: Dict[str, Sequence[float]], start: date = START) -> Dict[str, List[PriceBar]]:
        out: Dict[str, List[PriceBar]] = {}
        for sym, values in closes.items():
            days = weekdays(start, len(values))
            out[sym] = [PriceBar(date=d, open=c, high=c, low=c, close=c, volume=0.0) for d, c in zip(days, values)]
        return out

    return _make


@pytest.fixture
def make_series():
    """Synthetic universe plus SPY benchmark as a PriceSeries."""

    def _make(num_days: int = 40, *, symbols: Sequence[str] = UNIVERSE, seed: int = 11) -> PriceSeries:
        bars = synthetic_bars(list(symbols) + ["SPY"], START, num_days, seed=seed)
        bench = bars.pop("SPY")
        return PriceSeries(bars, benchmark_symbol="SPY", benchmark_bars=bench)

    return _make


@pytest.fixture
def small_config():
    """lookback 5, rebalance every 5 days, 2 long / 1 short over A..E."""

    def _make(**overrides) -> BacktestConfig:
        values = dict(
            symbols=list(UNIVERSE),
            start_date=START,
            end_date=START + timedelta(days=120),
            initial_capital=1_000_000.0,
            lookback_days=5,
            rebalance_frequency_days=5,
            long_count=2,
            short_count=1,
        )
        values.update(overrides)
        return BacktestConfig(**values)

    return _make
