"""
gridengine backtest module.

Deterministic replay of the strategy engine over historical price series.

Usage:
    from gridengine.backtest.runner import BacktestRunner

    runner = BacktestRunner(load_config("configs/default.json"))
    results = runner.run()
    BacktestReport(results["BTC/USDT:USDT"]).print_full_report()
"""

from gridengine.backtest.analysis import analyze
from gridengine.backtest.data_loader import HistoricalDataLoader, validate_series
from gridengine.backtest.report import BacktestReport
from gridengine.backtest.runner import BacktestRunner
from gridengine.backtest.simulator import (
    BacktestResult,
    BacktestSimulator,
    LiquidationEvent,
    SimulationStatus,
    run_backtest,
)

__all__ = [
    "BacktestSimulator",
    "BacktestResult",
    "LiquidationEvent",
    "SimulationStatus",
    "HistoricalDataLoader",
    "BacktestReport",
    "BacktestRunner",
    "analyze",
    "run_backtest",
    "validate_series",
]
