# -*- coding: utf-8 -*-
"""portfolio_scoring_runner.py

Child-side entry point of the scoring sandbox.

This file is copied into a fresh working directory next to the user's
``strategy.py`` and executed there with ``python -I``. It reads
``strategy_input.json`` and ``strategy_params.json``, calls the user's scoring
entry point, tags the output with its shape and writes exactly one payload to
``scores_output.json``. Any exception propagates and becomes a non-zero exit.

It must not import anything from this project: only the standard library and
pandas are available to it.
"""

from __future__ import annotations

import importlib.util
import inspect
import json
import math
import os
from pathlib import Path

import pandas as pd

INPUT_FILE = "strategy_input.json"
PARAMS_FILE = "strategy_params.json"
STRATEGY_FILE = "strategy.py"
OUTPUT_FILE = "scores_output.json"
LIMITS_FILE = "sandbox_limits.json"

SCORE_COLUMNS = ("score", "signal")


def _apply_limits() -> None:
    """Lower this process's own CPU and address-space ceilings (POSIX only)."""
    path = Path(LIMITS_FILE)
    if os.name != "posix" or not path.exists():
        return
    import resource

    def _lower(kind, value) -> None:
        _, hard = resource.getrlimit(kind)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        resource.setrlimit(kind, (value, value))

    limits = json.loads(path.read_text())
    if limits.get("cpu_seconds"):
        _lower(resource.RLIMIT_CPU, int(limits["cpu_seconds"]))
    if limits.get("memory_bytes"):
        _lower(resource.RLIMIT_AS, int(limits["memory_bytes"]))


def _load_strategy_module():
    spec = importlib.util.spec_from_file_location("user_strategy", str(Path(STRATEGY_FILE).resolve()))
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _build_context(data: dict, params: dict) -> dict:
    dates = list(data["dates"])
    close = pd.DataFrame(data["close"]).reindex(index=dates, columns=data["symbols"])
    returns = pd.DataFrame(data["returns"]).reindex(index=dates, columns=data["symbols"]).fillna(0.0)
    return {
        "dates": dates,
        "symbols": list(data["symbols"]),
        "close": close,
        "returns": returns,
        "params": params,
    }


def _call(fn, context: dict, params: dict):
    # generate_scores(context, params) or the one-argument form generate_scores(context)
    try:
        n_args = len(inspect.signature(fn).parameters)
    except (TypeError, ValueError):
        n_args = 2
    return fn(context, params) if n_args >= 2 else fn(context)


def _run_user_code(module, context: dict, params: dict):
    for name in ("generate_scores", "generate_signals"):
        fn = getattr(module, name, None)
        if callable(fn):
            return _call(fn, context, params)

    strategy_cls = getattr(module, "Strategy", None)
    if strategy_cls is not None:
        strategy = strategy_cls(params)
        if hasattr(strategy, "get_signals"):
            return strategy.get_signals(context)
        if hasattr(strategy, "compute_signals"):
            return strategy.compute_signals(context["returns"])
        raise AttributeError("Strategy class must define get_signals(context) or compute_signals(returns).")

    raise AttributeError("strategy.py must define generate_scores(context, params) or a Strategy class.")


def _num(value):
    try:
        x = float(value)
    except (TypeError, ValueError):
        return value
    return x if math.isfinite(x) else None


def _records_from_frame(df: pd.DataFrame, score_col: str) -> list:
    out = []
    for row in df[["date", "symbol", score_col]].itertuples(index=False):
        d, s, v = row
        if pd.isna(d) or pd.isna(s) or pd.isna(v):
            continue
        out.append({"date": str(d), "symbol": str(s), "score": _num(v)})
    return out


def _table_from_frame(df: pd.DataFrame) -> dict:
    table = {}
    for d, row in df.iterrows():
        payload = {str(sym): _num(v) for sym, v in row.items() if not pd.isna(v)}
        if payload:
            table[str(d)] = payload
    return table


def _plain(value):
    """Recursively convert pandas/numpy containers to JSON-friendly Python."""
    if isinstance(value, pd.Series):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        try:
            return _num(value.item())
        except (TypeError, ValueError):
            return str(value)
    if isinstance(value, float):
        return _num(value)
    return value


def tag_output(output) -> dict:
    """Wrap the user's return value as ``{"shape": ..., "data": ...}``."""
    if output is None:
        return {"shape": "mapping", "data": {}}

    if isinstance(output, pd.DataFrame):
        cols = {str(c).lower(): c for c in output.columns}
        score_col = next((cols[c] for c in SCORE_COLUMNS if c in cols), None)
        if "date" in cols and "symbol" in cols and score_col is not None:
            frame = output.rename(columns={cols["date"]: "date", cols["symbol"]: "symbol"})
            return {"shape": "records", "data": _records_from_frame(frame, score_col)}
        return {"shape": "table", "data": _table_from_frame(output)}

    if isinstance(output, pd.Series):
        return {
            "shape": "latest",
            "data": {str(k): _num(v) for k, v in output.items() if not pd.isna(v)},
        }

    if isinstance(output, dict):
        return {"shape": "mapping", "data": _plain(output)}

    if isinstance(output, (list, tuple)):
        return {"shape": "records", "data": _plain(list(output))}

    return {"shape": "unsupported", "type": type(output).__name__}


def main() -> None:
    _apply_limits()
    data = json.loads(Path(INPUT_FILE).read_text())
    params = json.loads(Path(PARAMS_FILE).read_text())
    module = _load_strategy_module()
    context = _build_context(data, params)
    output = _run_user_code(module, context, params)
    Path(OUTPUT_FILE).write_text(json.dumps(tag_output(output)))


if __name__ == "__main__":
    main()
