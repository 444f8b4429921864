# -*- coding: utf-8 -*-
"""portfolio_io.py

I/O helpers for backtest runs.

  - Parse a run request (JSON-like mapping, camelCase or snake_case keys) into
    a BacktestConfig
  - Serialize configs, progress events and results to JSON-friendly dicts with
    camelCase keys
  - Convert a BacktestResult into pandas DataFrames for analysis and export
"""

from __future__ import annotations

from dataclasses import fields, is_dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

import json
import math
import re

import pandas as pd

from portfolio_models import BacktestConfig, BacktestResult, SetupError

__all__ = [
    "config_from_dict",
    "to_jsonable",
    "dump_result_json",
    "result_frames",
    "summary_frame",
]


def _snake(key: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", str(key)).lower()


def _camel(key: str) -> str:
    head, *rest = str(key).split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


# external names that do not map 1:1 onto BacktestConfig fields
_ALIASES = {
    "fallback_to_builtin_on_python_error": "fallback_to_builtin_on_scoring_error",
    "python_code": "scoring_code",
    "strategy_code": "scoring_code",
    "python_params": "scoring_params",
    "strategy_params": "scoring_params",
    "benchmark": "benchmark_symbol",
}


def _coerce_date(x: Any, name: str) -> date:
    try:
        ts = pd.Timestamp(x)
    except (TypeError, ValueError):
        raise SetupError(f"Invalid {name}: {x!r}") from None
    if pd.isna(ts):
        raise SetupError(f"Invalid {name}: {x!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return ts.normalize().date()


_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off", ""}


def _coerce_flag(x: Any, name: str) -> bool:
    if isinstance(x, bool):
        return x
    if isinstance(x, (int, float)) and x in (0, 1):
        return bool(x)
    if isinstance(x, str):
        token = x.strip().lower()
        if token in _TRUE:
            return True
        if token in _FALSE:
            return False
    raise SetupError(f"Invalid {name}: {x!r}")


def config_from_dict(payload: Mapping[str, Any]) -> BacktestConfig:
    """Build a BacktestConfig from a request payload.

    Keys may be camelCase (``lookbackDays``) or snake_case (``lookback_days``).
    Unknown keys are ignored; missing optional keys take the BacktestConfig
    defaults. Malformed values raise SetupError.
    """
    known = {f.name for f in fields(BacktestConfig)}
    values: Dict[str, Any] = {}
    for raw_key, value in payload.items():
        key = _snake(raw_key)
        key = _ALIASES.get(key, key)
        if key in known:
            values[key] = value

    for required in ("symbols", "start_date", "end_date"):
        if required not in values:
            raise SetupError(f"Missing required field: {_camel(required)}")

    symbols = values["symbols"]
    if isinstance(symbols, str):
        symbols = [s for s in re.split(r"[,\s]+", symbols) if s]
    values["symbols"] = [str(s) for s in symbols]
    values["start_date"] = _coerce_date(values["start_date"], "startDate")
    values["end_date"] = _coerce_date(values["end_date"], "endDate")

    try:
        if "initial_capital" in values:
            values["initial_capital"] = float(values["initial_capital"])
        for name in ("lookback_days", "rebalance_frequency_days", "long_count", "short_count"):
            if name in values:
                values[name] = int(values[name])
    except (TypeError, ValueError) as exc:
        raise SetupError(f"Invalid numeric field: {exc}") from None

    if "fallback_to_builtin_on_scoring_error" in values:
        values["fallback_to_builtin_on_scoring_error"] = _coerce_flag(
            values["fallback_to_builtin_on_scoring_error"], "fallbackToBuiltinOnScoringError"
        )
    if values.get("scoring_code") is not None and not isinstance(values["scoring_code"], str):
        raise SetupError("scoringCode must be a string.")
    if values.get("scoring_params") is not None and not isinstance(values["scoring_params"], Mapping):
        raise SetupError("scoringParams must be an object.")
    if "benchmark_symbol" in values:
        values["benchmark_symbol"] = str(values["benchmark_symbol"]).strip().upper() or "SPY"

    return BacktestConfig(**values)


def to_jsonable(obj: Any) -> Any:
    """Recursively convert dataclasses, dates and numpy/pandas scalars to JSON types.

    Dataclass field names are emitted in camelCase; non-finite floats become None.
    """
    if is_dataclass(obj) and not isinstance(obj, type):
        return {_camel(f.name): to_jsonable(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, date):
        return obj.strftime("%Y-%m-%d")
    if isinstance(obj, Mapping):
        return {str(k) if not isinstance(k, date) else k.isoformat(): to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, bool) or obj is None or isinstance(obj, (str, int)):
        return obj
    if isinstance(obj, float):
        return obj if math.isfinite(obj) else None
    if hasattr(obj, "item"):
        return to_jsonable(obj.item())
    return str(obj)


def dump_result_json(result: BacktestResult, *, indent: Optional[int] = 2) -> str:
    return json.dumps(to_jsonable(result), indent=indent)


def result_frames(result: BacktestResult) -> Dict[str, pd.DataFrame]:
    """Result histories as DataFrames.

    Returns
    -------
    dict
        ``equity`` (index date; nav, benchmark_nav, drawdown, daily_return),
        ``transactions``, ``holdings`` and ``rebalances``.
    """
    def _rows(items: List[Any]) -> List[Dict[str, Any]]:
        return [{f.name: getattr(it, f.name) for f in fields(it)} for it in items]

    equity = pd.DataFrame(_rows(result.equity_curve), columns=["date", "nav", "benchmark_nav"])
    dd = pd.DataFrame(_rows(result.drawdown_series), columns=["date", "drawdown"])
    rets = pd.DataFrame(_rows(result.daily_returns), columns=["date", "value"]).rename(columns={"value": "daily_return"})
    equity = equity.merge(dd, on="date", how="left").merge(rets, on="date", how="left")
    equity["date"] = pd.to_datetime(equity["date"])
    equity = equity.set_index("date")

    transactions = pd.DataFrame(
        _rows(result.transactions),
        columns=["date", "symbol", "side", "shares", "price", "turnover_usd"],
    )
    holdings = pd.DataFrame(_rows(result.top_holdings), columns=["symbol", "weight", "pnl_contribution"])
    rebalances = pd.DataFrame(
        [
            {"date": r.date, "score_source": r.score_source, "long": ",".join(r.long), "short": ",".join(r.short)}
            for r in result.rebalances
        ],
        columns=["date", "score_source", "long", "short"],
    )
    return {"equity": equity, "transactions": transactions, "holdings": holdings, "rebalances": rebalances}


def summary_frame(result: BacktestResult) -> pd.DataFrame:
    """Final metrics and stats as a two-column (metric, value) table."""
    rows = []
    for snap in (result.metrics, result.stats):
        for f in fields(snap):
            rows.append({"metric": f.name, "value": getattr(snap, f.name)})
    df = pd.DataFrame(rows, columns=["metric", "value"])
    return df.drop_duplicates(subset="metric", keep="first").reset_index(drop=True)
