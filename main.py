"""
gridengine - Main Entry Point

Grid/DCA trading on perpetual futures: live trading, backtesting, parameter
optimization, historical data download and profit transfer.

Usage:
    # Trade live with the account "main" from api-keys.json
    python main.py live configs/default.json --user main

    # Backtest the configured symbols over the cached history
    python main.py backtest configs/default.json

    # Search the configured parameter bounds
    python main.py optimize configs/default.json

    # Download OHLCV history for the configured symbols
    python main.py download configs/default.json

    # Move 20% of new profit from the futures wallet to spot, every hour
    python main.py profit-transfer configs/default.json --user main --percentage 0.2
"""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from gridengine.backtest.report import BacktestReport
from gridengine.backtest.runner import BacktestRunner
from gridengine.core.config import AppSettings, GridEngineConfig, load_api_keys, load_config
from gridengine.core.errors import GridEngineError
from gridengine.exchange.ccxt_client import CcxtExchange
from gridengine.live.manager import LiveManager
from gridengine.optimizer.optimizer import Optimizer
from gridengine.storage.database import TradeJournal
from gridengine.tools.profit_transfer import ProfitTransferer
from gridengine.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def _install_signal_handlers(handler) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handler)


def _remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)


def _create_exchange(config: GridEngineConfig, user: str) -> CcxtExchange:
    return CcxtExchange(
        load_api_keys(user, AppSettings().api_keys_path),
        quote=config.live.quote,
        leverage=config.live.leverage,
        time_in_force=config.live.time_in_force,
    )


class LiveBot:
    """Wires exchange, trade journal and live manager together."""

    def __init__(self, config: GridEngineConfig, user: str, symbols: Optional[List[str]] = None):
        self.config = config
        self.user = user
        self.symbols = symbols
        self.exchange: Optional[CcxtExchange] = None
        self.journal: Optional[TradeJournal] = None
        self.manager: Optional[LiveManager] = None
        self.interrupted = False

    async def run(self) -> int:
        logger.info("bot.starting", user=self.user, symbols=self.symbols)
        self.exchange = _create_exchange(self.config, self.user)
        self.journal = TradeJournal()
        await self.journal.initialize()
        self.manager = LiveManager(self.config, self.exchange, symbols=self.symbols, journal=self.journal)
        _install_signal_handlers(self._signal_handler)
        try:
            await self.manager.run()
        finally:
            _remove_signal_handlers()
            await self.shutdown()
        return EXIT_INTERRUPTED if self.interrupted else EXIT_OK

    async def shutdown(self) -> None:
        logger.info("bot.shutting_down")
        if self.exchange:
            await self.exchange.close()
        if self.journal:
            await self.journal.close()
        logger.info("bot.shutdown_complete")

    def _signal_handler(self) -> None:
        logger.info("bot.shutdown_signal_received")
        self.interrupted = True
        self.manager.request_stop()


# =============================================================================
# Subcommands
# =============================================================================


async def cmd_live(args, config: GridEngineConfig) -> int:
    bot = LiveBot(config, args.user or config.live.user, symbols=args.symbols)
    return await bot.run()


async def cmd_backtest(args, config: GridEngineConfig) -> int:
    runner = BacktestRunner(config, clamp_out_of_range=args.clamp)
    results = runner.run(symbols=args.symbols, save=not args.no_save)
    for result in results.values():
        BacktestReport(result).print_full_report()
    for result in results.values():
        result.require_completed()
    return EXIT_OK


async def cmd_optimize(args, config: GridEngineConfig) -> int:
    symbol = args.symbol or config.backtest.symbols[0]
    runner = BacktestRunner(config)
    series = runner.load_series(symbol)
    optimizer = Optimizer(config.bot, config.optimizer, runner.simulator_config, config.backtest.starting_balance)

    def on_signal():
        logger.info("optimizer.cancel_requested")
        optimizer.cancel()

    _install_signal_handlers(on_signal)
    try:
        run = await asyncio.get_running_loop().run_in_executor(None, optimizer.run, series)
    finally:
        _remove_signal_handlers()

    safe_symbol = symbol.replace("/", "_").replace(":", "_")
    path = Path(config.backtest.base_dir) / "optimize" / config.backtest.exchange / safe_symbol / f"{run.run_id}.json"
    run.save(str(path))

    print(f"\nOptimization {run.run_id} finished ({run.termination_reason}), {len(run.trials)} trials")
    print(f"Saved to {path}")
    print("\nTop candidates:")
    for trial in run.top_n(args.top):
        params = ", ".join(f"{k}={v:.6g}" for k, v in trial.params.items())
        print(f"  gen {trial.generation:>3}  fitness {trial.fitness:>10.4f}  {params}")
    impact = run.param_impact()
    if impact:
        print("\nParameter impact (correlation with fitness):")
        for name, corr in sorted(impact.items(), key=lambda item: -abs(item[1])):
            print(f"  {name:<40} {corr:+.3f}")
    return EXIT_INTERRUPTED if run.termination_reason == "cancelled" else EXIT_OK


async def cmd_download(args, config: GridEngineConfig) -> int:
    counts = await BacktestRunner(config).download(symbols=args.symbols)
    print(json.dumps(counts, indent=2))
    return EXIT_OK


async def cmd_profit_transfer(args, config: GridEngineConfig) -> int:
    user = args.user or config.live.user
    exchange = _create_exchange(config, user)
    transferer = ProfitTransferer(
        exchange,
        user,
        args.percentage,
        quote=config.live.quote,
        state_dir=AppSettings().profit_state_dir,
        interval_seconds=args.interval,
    )
    stop_event = asyncio.Event()
    interrupted = False

    def on_signal():
        nonlocal interrupted
        interrupted = True
        stop_event.set()

    try:
        await exchange.initialize()
        if args.once:
            amount = await transferer.run_once()
            print(f"Transferred {amount} {config.live.quote}")
            return EXIT_OK
        _install_signal_handlers(on_signal)
        try:
            await transferer.run(stop_event)
        finally:
            _remove_signal_handlers()
    finally:
        await exchange.close()
    return EXIT_INTERRUPTED if interrupted else EXIT_OK


COMMANDS = {
    "live": cmd_live,
    "backtest": cmd_backtest,
    "optimize": cmd_optimize,
    "download": cmd_download,
    "profit-transfer": cmd_profit_transfer,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="gridengine - grid/DCA trading, backtesting and optimization")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_command(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("config", help="Path to the JSON run configuration")
        sub.add_argument("--user", help="Account name in api-keys.json (default: live.user)")
        sub.add_argument(
            "--log-level",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Override LOG_LEVEL",
        )
        return sub

    live = add_command("live", "Run the live trading loops")
    live.add_argument("--symbols", nargs="+", help="Trade these symbols instead of selecting them")

    backtest = add_command("backtest", "Backtest over cached history")
    backtest.add_argument("--symbols", nargs="+", help="Override backtest.symbols")
    backtest.add_argument("--clamp", action="store_true", help="Clamp out-of-range parameters instead of failing")
    backtest.add_argument("--no-save", action="store_true", help="Do not write result files")

    optimize = add_command("optimize", "Search parameter bounds with backtests")
    optimize.add_argument("--symbol", help="Symbol to optimize on (default: first of backtest.symbols)")
    optimize.add_argument("--top", type=int, default=5, help="Number of best candidates to print")

    download = add_command("download", "Download OHLCV history into the cache")
    download.add_argument("--symbols", nargs="+", help="Override backtest.symbols")

    profit = add_command("profit-transfer", "Transfer profit from futures to spot")
    profit.add_argument("--percentage", type=float, required=True, help="Share of new profit to transfer, 0-1")
    profit.add_argument("--interval", type=float, default=3600.0, help="Seconds between checks")
    profit.add_argument("--once", action="store_true", help="Check once and exit")

    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level)

    try:
        config = load_config(args.config)
        return await COMMANDS[args.command](args, config)
    except GridEngineError as e:
        logger.error("main.error", command=args.command, error_type=type(e).__name__, error=str(e), exc_info=True)
        print(f"\n✗ {type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_ERROR


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n\nShutdown requested by user...")
        sys.exit(EXIT_INTERRUPTED)


if __name__ == "__main__":
    run()
