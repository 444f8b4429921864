# -*- coding: utf-8 -*-
"""portfolio_data.py

Daily bars in, aligned price tables out.

- Data feeds: anything with ``get_bars(symbol, start, end)`` returning bars in
  ascending date order. Three are provided: an in-memory feed (tests,
  embedding), a CSV feed and a Yahoo Finance feed.
- PriceSeries: the read-only, date-aligned view the simulator and the scoring
  sandbox work from. Only dates traded by every symbol (and the benchmark) are
  kept; gaps are never forward-filled.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import re
import warnings

import numpy as np
import pandas as pd
import yfinance as yf
from loguru import logger

from portfolio_models import PriceBar

__all__ = [
    "clean_symbol",
    "normalize_symbols",
    "DataFeed",
    "InMemoryDataFeed",
    "CsvDataFeed",
    "YahooDataFeed",
    "PriceSeries",
    "load_price_series",
    "synthetic_bars",
]


# =========================
# Symbol sanitation
# =========================

# Placeholder values that leak in from spreadsheets and request payloads.
_INVALID_SYMBOLS = {"", "NONE", "NAN", "NULL", "N/A", "NA", "<NA>"}


def clean_symbol(s: object) -> Optional[str]:
    """Return an upper-cased ticker string, or None if ``s`` is not a usable symbol.

    Rules
    -----
    - Strip whitespace and a leading '$'.
    - Drop blanks and common placeholders.
    - Permit letters, digits, '.', '-', '^', '='.
    """
    if s is None:
        return None
    t = str(s).strip()
    if t.startswith("$"):
        t = t[1:].strip()
    t = t.upper()
    if t in _INVALID_SYMBOLS:
        return None
    if not re.fullmatch(r"[A-Z0-9\.\-\^=]+", t):
        return None
    return t


def normalize_symbols(symbols: Iterable[object]) -> List[str]:
    """Clean and de-duplicate, keeping first-seen order."""
    out: List[str] = []
    seen = set()
    for raw in symbols:
        t = clean_symbol(raw)
        if t is None or t in seen:
            continue
        seen.add(t)
        out.append(t)
    return out


# =========================
# Feeds
# =========================
class DataFeed(Protocol):
    def get_bars(self, symbol: str, start: date, end: date) -> List[PriceBar]:
        ...


def _in_window(bars: Iterable[PriceBar], start: date, end: date) -> List[PriceBar]:
    return sorted((b for b in bars if start <= b.date <= end), key=lambda b: b.date)


class InMemoryDataFeed:
    """Serves bars from a dict of symbol -> bars."""

    def __init__(self, bars: Mapping[str, Sequence[PriceBar]]):
        self._bars: Dict[str, List[PriceBar]] = {str(k).upper(): list(v) for k, v in bars.items()}

    def get_bars(self, symbol: str, start: date, end: date) -> List[PriceBar]:
        return _in_window(self._bars.get(symbol.upper(), []), start, end)


class CsvDataFeed:
    """Bars from a long-format CSV: date, symbol, open, high, low, close[, volume].

    Column names are matched case-insensitively. Rows with an unparseable date
    or a missing close are skipped.
    """

    REQUIRED = ("date", "symbol", "close")

    def __init__(self, path):
        df = pd.read_csv(path)
        df.columns = [str(c).strip().lower() for c in df.columns]
        missing = [c for c in self.REQUIRED if c not in df.columns]
        if missing:
            raise KeyError(f"CSV is missing required columns: {missing}")

        df["date"] = pd.to_datetime(df["date"], errors="coerce")
        df["close"] = pd.to_numeric(df["close"], errors="coerce")
        df = df.dropna(subset=["date", "close"])
        df["symbol"] = df["symbol"].map(clean_symbol)
        df = df.dropna(subset=["symbol"])

        for col in ("open", "high", "low"):
            df[col] = pd.to_numeric(df[col], errors="coerce") if col in df.columns else df["close"]
            df[col] = df[col].fillna(df["close"])
        df["volume"] = pd.to_numeric(df["volume"], errors="coerce").fillna(0.0) if "volume" in df.columns else 0.0

        self._bars: Dict[str, List[PriceBar]] = {}
        for sym, grp in df.groupby("symbol", sort=False):
            self._bars[str(sym)] = [
                PriceBar(
                    date=row.date.date(),
                    open=float(row.open),
                    high=float(row.high),
                    low=float(row.low),
                    close=float(row.close),
                    volume=float(row.volume),
                )
                for row in grp.itertuples(index=False)
            ]

    def get_bars(self, symbol: str, start: date, end: date) -> List[PriceBar]:
        return _in_window(self._bars.get(symbol.upper(), []), start, end)


class YahooDataFeed:
    """Daily OHLCV from Yahoo Finance via yfinance.

    A failed or empty download yields an empty list and a warning so that a
    single bad ticker surfaces as a setup error (not enough data) rather than a
    crash inside the feed.
    """

    def __init__(self, *, use_adj_close: bool = False):
        self.use_adj_close = bool(use_adj_close)

    def get_bars(self, symbol: str, start: date, end: date) -> List[PriceBar]:
        try:
            raw = yf.download(
                symbol,
                start=pd.Timestamp(start),
                end=pd.Timestamp(end) + pd.Timedelta(days=1),
                progress=False,
                auto_adjust=False,
            )
        except Exception as exc:
            logger.warning("Download failed for {}: {}", symbol, exc)
            return []
        if raw is None or raw.empty:
            warnings.warn(f"No data downloaded for {symbol}.")
            return []

        df = raw.copy()
        if isinstance(df.columns, pd.MultiIndex):
            # yfinance returns OHLCV in level 0 and tickers in level 1
            df.columns = df.columns.get_level_values(0)

        close_field = "Adj Close" if self.use_adj_close and "Adj Close" in df.columns else "Close"
        if close_field not in df.columns:
            warnings.warn(f"'{close_field}' column not found for {symbol}.")
            return []

        df.index = pd.DatetimeIndex(df.index).tz_localize(None).normalize()
        df = df[~df.index.duplicated(keep="first")].sort_index()

        bars: List[PriceBar] = []
        for ts, row in df.iterrows():
            close = row[close_field]
            if pd.isna(close):
                continue
            bars.append(
                PriceBar(
                    date=ts.date(),
                    open=float(row.get("Open", close)),
                    high=float(row.get("High", close)),
                    low=float(row.get("Low", close)),
                    close=float(close),
                    volume=float(np.nan_to_num(row.get("Volume", 0.0))),
                )
            )
        return _in_window(bars, start, end)


# =========================
# Aligned price view
# =========================
def _close_series(bars: Sequence[PriceBar]) -> pd.Series:
    s = pd.Series(
        [float(b.close) for b in bars],
        index=pd.Index([b.date for b in bars], dtype=object),
        dtype=float,
    )
    s = s[~s.index.duplicated(keep="first")]
    return s.sort_index()


def _daily_returns(close: pd.DataFrame) -> pd.DataFrame:
    prev = close.shift(1)
    with np.errstate(divide="ignore", invalid="ignore"):
        ret = close / prev - 1.0
    # zero previous close contributes nothing; first row has no previous close
    return ret.where(prev != 0.0, 0.0).fillna(0.0)


class PriceSeries:
    """Close and return tables for a universe plus its benchmark, on a shared calendar.

    Attributes
    ----------
    symbols : list of str
        Universe in input order (ties in ranking are broken by this order).
    calendar : list of datetime.date
        Strictly increasing intersection of trading dates.
    close, returns : pd.DataFrame
        Index = calendar, columns = symbols. ``returns`` is 0 on the first
        date and wherever the previous close is 0.
    benchmark_close, benchmark_returns : pd.Series
        Aligned to the calendar. A benchmark without any bars is treated as
        flat and does not constrain the calendar.

    Treat every table as read-only; concurrent runs may share one instance.
    """

    def __init__(
        self,
        bars: Mapping[str, Sequence[PriceBar]],
        *,
        benchmark_symbol: str = "SPY",
        benchmark_bars: Sequence[PriceBar] = (),
    ):
        self.symbols: List[str] = list(bars.keys())
        self.benchmark_symbol = benchmark_symbol

        self._series: Dict[str, pd.Series] = {sym: _close_series(bars[sym]) for sym in self.symbols}
        self._bench: pd.Series = _close_series(benchmark_bars)
        if self._bench.empty:
            warnings.warn(f"No benchmark data for {benchmark_symbol}; benchmark treated as flat.")
        self._align()

    def _align(self) -> None:
        series, bench = self._series, self._bench
        self.benchmark_available = not bench.empty

        constraining = list(series.values()) + ([bench] if self.benchmark_available else [])
        self.calendar: List[date] = self._intersect([set(s.index) for s in constraining])

        dropped = {sym: len(s) - len(self.calendar) for sym, s in series.items() if len(s) > len(self.calendar)}
        if dropped and self.calendar:
            logger.debug("Dates outside the common calendar dropped: {}", dropped)

        idx = pd.Index(self.calendar, dtype=object)
        self.close: pd.DataFrame = pd.DataFrame({sym: s.reindex(idx) for sym, s in series.items()}, index=idx)
        self.close = self.close.reindex(columns=self.symbols).astype(float)
        self.returns: pd.DataFrame = _daily_returns(self.close)

        if self.benchmark_available:
            self.benchmark_close: pd.Series = bench.reindex(idx).astype(float)
            self.benchmark_returns: pd.Series = _daily_returns(self.benchmark_close.to_frame()).iloc[:, 0]
        else:
            self.benchmark_close = pd.Series(1.0, index=idx, dtype=float)
            self.benchmark_returns = pd.Series(0.0, index=idx, dtype=float)

    def subset(self, symbols: Sequence[str], start: date, end: date) -> "PriceSeries":
        """View over ``symbols`` and the inclusive window [start, end].

        The calendar is re-intersected over just those symbols (and the
        benchmark), so gaps in other symbols of a shared series do not shrink
        it. Symbols must already be present in this series.
        """

        def _window(s: pd.Series) -> pd.Series:
            return s[np.array([start <= d <= end for d in s.index], dtype=bool)]

        view = PriceSeries.__new__(PriceSeries)
        view.symbols = list(symbols)
        view.benchmark_symbol = self.benchmark_symbol
        view._series = {sym: _window(self._series[sym]) for sym in view.symbols}
        view._bench = _window(self._bench)
        if self.benchmark_available and view._bench.empty:
            logger.warning("No {} bars between {} and {}; benchmark treated as flat", self.benchmark_symbol, start, end)
        view._align()
        return view

    @staticmethod
    def _intersect(date_sets: List[set]) -> List[date]:
        if not date_sets:
            return []
        common = set(date_sets[0])
        for s in date_sets[1:]:
            common &= s
        return sorted(common)

    def __len__(self) -> int:
        return len(self.calendar)

    def iso_calendar(self) -> List[str]:
        return [d.isoformat() for d in self.calendar]


def load_price_series(
    feed: DataFeed,
    symbols: Sequence[str],
    start: date,
    end: date,
    *,
    benchmark_symbol: str = "SPY",
) -> PriceSeries:
    """Fetch every symbol plus the benchmark from ``feed`` and align them."""
    logger.info("Loading {} symbols + {} from {} to {}", len(symbols), benchmark_symbol, start, end)
    bars = {sym: feed.get_bars(sym, start, end) for sym in symbols}
    bench = feed.get_bars(benchmark_symbol, start, end)
    return PriceSeries(bars, benchmark_symbol=benchmark_symbol, benchmark_bars=bench)


def synthetic_bars(
    symbols: Sequence[str],
    start: date,
    num_days: int,
    *,
    seed: int = 0,
    drift: float = 0.0005,
    vol: float = 0.02,
) -> Dict[str, List[PriceBar]]:
    """Geometric random-walk bars on consecutive weekdays (demos and tests)."""
    rng = np.random.default_rng(seed)
    days: List[date] = []
    d = start
    while len(days) < num_days:
        if d.weekday() < 5:
            days.append(d)
        d += timedelta(days=1)

    out: Dict[str, List[PriceBar]] = {}
    for sym in symbols:
        rets = rng.normal(drift, vol, size=num_days)
        closes = 100.0 * np.cumprod(1.0 + rets)
        out[sym] = [
            PriceBar(date=day, open=float(c), high=float(c), low=float(c), close=float(c), volume=1_000_000.0)
            for day, c in zip(days, closes)
        ]
    return out
