# -*- coding: utf-8 -*-
"""portfolio_cli.py

Command-line entry point.

    portfolio-backtest run AAPL,MSFT,NVDA,AMZN,META,GOOGL --start 2022-01-01 --end 2024-12-31
    portfolio-backtest run A,B,C,D,E --csv prices.csv --scoring strategy.py --params '{"window": 20}'
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

import json
import sys

import typer
from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from portfolio_data import CsvDataFeed, YahooDataFeed, load_price_series, normalize_symbols
from portfolio_io import config_from_dict, dump_result_json, summary_frame
from portfolio_models import BacktestError, ProgressEvent
from portfolio_sandbox import SandboxLimits, ScoringSandbox
from portfolio_sim import PortfolioSimulator

app = typer.Typer(help="Long/short portfolio backtester")
console = Console()


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format="{time:HH:mm:ss} | {level: <8} | {message}")


class _ProgressBarSink:
    def __init__(self, progress: Progress, task_id):
        self.progress = progress
        self.task_id = task_id

    def publish(self, event: ProgressEvent) -> None:
        self.progress.update(
            self.task_id,
            completed=event.progress_pct,
            description=f"{event.current_date}  NAV {event.equity_point.nav:,.0f}",
        )

    def completed(self, run_id: str) -> None:
        self.progress.update(self.task_id, completed=100.0)


def _load_params(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    path = Path(raw)
    text = path.read_text(encoding="utf-8") if path.is_file() else raw
    try:
        params = json.loads(text)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"--params is not valid JSON: {exc}") from None
    if not isinstance(params, dict):
        raise typer.BadParameter("--params must be a JSON object")
    return params


@app.command()
def run(
    symbols: str = typer.Argument(..., help="Comma-separated universe, e.g. AAPL,MSFT,NVDA"),
    start: str = typer.Option(..., "--start", help="First date (YYYY-MM-DD)"),
    end: str = typer.Option(..., "--end", help="Last date (YYYY-MM-DD)"),
    capital: float = typer.Option(1_000_000.0, "--capital"),
    lookback: int = typer.Option(60, "--lookback", help="Trailing-return window in trading days"),
    rebalance: int = typer.Option(21, "--rebalance", help="Rebalance every N trading days"),
    long_count: int = typer.Option(4, "--long"),
    short_count: int = typer.Option(2, "--short"),
    benchmark: str = typer.Option("SPY", "--benchmark"),
    csv: Optional[Path] = typer.Option(None, "--csv", help="Long-format CSV (date,symbol,close,...) instead of Yahoo"),
    adj_close: bool = typer.Option(False, "--adj-close", help="Use Adj Close from Yahoo"),
    scoring: Optional[Path] = typer.Option(None, "--scoring", help="Python file defining generate_scores"),
    params: Optional[str] = typer.Option(None, "--params", help="JSON object or path to a JSON file"),
    fallback: bool = typer.Option(False, "--fallback/--no-fallback", help="Use built-in ranking if scoring fails"),
    timeout: float = typer.Option(15.0, "--timeout", help="Scoring time limit in seconds"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the full result as JSON"),
    log_level: str = typer.Option("WARNING", "--log-level"),
):
    """Run one backtest and print the final statistics."""
    configure_logging(log_level)

    payload: Dict[str, Any] = {
        "symbols": symbols,
        "startDate": start,
        "endDate": end,
        "initialCapital": capital,
        "lookbackDays": lookback,
        "rebalanceFrequencyDays": rebalance,
        "longCount": long_count,
        "shortCount": short_count,
        "benchmarkSymbol": benchmark,
        "fallbackToBuiltinOnScoringError": fallback,
    }
    if scoring is not None:
        payload["scoringCode"] = scoring.read_text(encoding="utf-8")
        payload["scoringParams"] = _load_params(params)

    try:
        config = config_from_dict(payload)
        feed = CsvDataFeed(csv) if csv is not None else YahooDataFeed(use_adj_close=adj_close)
        prices = load_price_series(
            feed,
            normalize_symbols(config.symbols),
            config.start_date,
            config.end_date,
            benchmark_symbol=config.benchmark_symbol,
        )

        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>6.2f}%"),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        ) as progress:
            task_id = progress.add_task("loading", total=100.0)
            sink = _ProgressBarSink(progress, task_id)
            sim = PortfolioSimulator(
                config,
                prices,
                sandbox=ScoringSandbox(SandboxLimits(timeout_seconds=timeout)),
                sink=sink,
            )
            result = sim.run()
            sink.completed(result.run_id)
    except BacktestError as exc:
        console.print(f"[red]Run failed ({exc.kind}):[/red] {exc.message}")
        if exc.diagnostic:
            console.print(exc.diagnostic, markup=False, highlight=False)
        raise typer.Exit(code=1)
    except (OSError, KeyError) as exc:
        console.print(f"[red]Could not load input:[/red] {exc}")
        raise typer.Exit(code=2)

    if result.scoring.requested:
        color = "yellow" if result.scoring.used_fallback else "green"
        console.print(f"[{color}]{result.scoring.message}[/{color}]")

    table = Table(title=f"Run {result.run_id}")
    table.add_column("metric")
    table.add_column("value", justify="right")
    for row in summary_frame(result).itertuples(index=False):
        value = f"{row.value:,.4f}" if isinstance(row.value, float) else str(row.value)
        table.add_row(row.metric, value)
    console.print(table)

    if result.top_holdings:
        console.print(
            "Holdings: " + ", ".join(f"{h.symbol} {h.weight:+.2%}" for h in result.top_holdings)
        )

    if output is not None:
        output.write_text(dump_result_json(result), encoding="utf-8")
        console.print(f"[blue]Result written to {output}[/blue]")


@app.command()
def version():
    console.print("0.1.0")


if __name__ == "__main__":
    app()
