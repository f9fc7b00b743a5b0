"""
Backtest Runner - programmatic interface used by the CLI.

Loads cached series for every configured symbol, runs one simulator per
symbol and persists the results.
"""

from typing import Dict, List, Optional

import structlog

from gridengine.backtest.data_loader import HistoricalDataLoader
from gridengine.backtest.report import save_report
from gridengine.backtest.simulator import BacktestResult, BacktestSimulator
from gridengine.core.config import GridEngineConfig, SimulatorConfig
from gridengine.core.models import MarketTick
from gridengine.strategies.engine import StrategyEngine

logger = structlog.get_logger(__name__)


class BacktestRunner:
    """High-level backtest runner interface."""

    def __init__(self, config: GridEngineConfig, clamp_out_of_range: bool = False):
        self.config = config
        self.clamp_out_of_range = clamp_out_of_range
        self.data_loader = HistoricalDataLoader(
            data_dir=config.backtest.data_dir,
            exchange_id=config.backtest.exchange,
            timeframe=config.backtest.timeframe,
        )

    @property
    def simulator_config(self) -> SimulatorConfig:
        """Simulator settings with the tick spacing taken from the timeframe
        unless configured."""
        if self.config.simulator.step_ms is not None:
            return self.config.simulator
        return self.config.simulator.model_copy(update={"step_ms": self.data_loader.step_ms})

    def load_series(self, symbol: str) -> List[MarketTick]:
        return list(
            self.data_loader.load_series(symbol, self.config.backtest.start_date, self.config.backtest.end_date)
        )

    async def download(self, symbols: Optional[List[str]] = None) -> Dict[str, int]:
        """Fetch the configured date range for every symbol into the cache."""
        counts = {}
        try:
            for symbol in symbols or self.config.backtest.symbols:
                counts[symbol] = await self.data_loader.download(
                    symbol, self.config.backtest.start_date, self.config.backtest.end_date
                )
        finally:
            await self.data_loader.close()
        return counts

    def run_symbol(self, symbol: str, series: List[MarketTick]) -> BacktestResult:
        simulator = BacktestSimulator(
            self.config.bot,
            self.simulator_config,
            starting_balance=self.config.backtest.starting_balance,
            engine=StrategyEngine(clamp_out_of_range=self.clamp_out_of_range),
        )
        result = simulator.run(series)
        logger.info(
            "backtest_runner.symbol_complete",
            symbol=symbol,
            status=result.status.value,
            total_return=f"{result.analysis.get('total_return', 0.0) * 100:.2f}%",
            sharpe=result.analysis.get("sharpe_ratio"),
            liquidated=result.liquidated,
        )
        return result

    def run(self, symbols: Optional[List[str]] = None, save: bool = True) -> Dict[str, BacktestResult]:
        """
        Run a backtest per symbol.

        Raises:
            DataGapError / InsufficientData: a symbol's cached series is
                unusable.
            InvalidConfiguration: the strategy config is out of range.
        """
        symbols = symbols or self.config.backtest.symbols
        logger.info(
            "backtest_runner.starting",
            symbols=symbols,
            start=self.config.backtest.start_date,
            end=self.config.backtest.end_date,
        )
        results = {}
        for symbol in symbols:
            result = self.run_symbol(symbol, self.load_series(symbol))
            if save:
                run_dir = save_report(result, self.config.backtest.base_dir, self.config.backtest.exchange)
                logger.info("backtest_runner.saved", symbol=symbol, path=str(run_dir))
            results[symbol] = result
        return results
