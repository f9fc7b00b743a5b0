"""
Backtest Report Generator.

Console and markdown rendering of a BacktestResult, plus JSON persistence
that round-trips every field of the result.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pandas as pd
import structlog

from gridengine.backtest.simulator import BacktestResult

logger = structlog.get_logger(__name__)


def _fmt_ts(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


class BacktestReport:
    """Render one backtest result."""

    def __init__(self, result: BacktestResult):
        self.result = result
        self.analysis = result.analysis

    def print_full_report(self):
        """Print complete backtest report to console."""
        self._print_header()
        self._print_performance_summary()
        self._print_trade_statistics()
        self._print_monthly_returns()
        self._print_liquidation()
        print("\n" + "=" * 80 + "\n")

    def generate_markdown_report(self) -> str:
        """Generate markdown formatted report."""
        a = self.analysis
        lines = [f"# Backtest Report: {self.result.symbol}", ""]
        if self.result.equity:
            lines.append(
                f"**Test Period:** {_fmt_ts(self.result.equity[0].timestamp)} to "
                f"{_fmt_ts(self.result.equity[-1].timestamp)}"
            )
        lines.append(f"**Status:** {self.result.status.value}")
        lines.append(f"**Starting Balance:** {self.result.starting_balance:,.2f}")
        lines.append(f"**Final Balance:** {a.get('final_balance', 0.0):,.2f}")
        lines.append("")
        lines.append("## Performance Summary")
        lines.append("")
        lines.append("| Metric | Value |")
        lines.append("|--------|-------|")
        lines.append(f"| Total Return | {a.get('total_return', 0.0) * 100:+.2f}% |")
        lines.append(f"| Worst Drawdown | {a.get('drawdown_worst', 0.0) * 100:.2f}% |")
        lines.append(f"| Sharpe Ratio | {a.get('sharpe_ratio', 0.0):.2f} |")
        lines.append(f"| Sortino Ratio | {a.get('sortino_ratio', 0.0):.2f} |")
        lines.append(f"| Calmar Ratio | {a.get('calmar_ratio', 0.0):.2f} |")
        lines.append(f"| Exposure Time | {a.get('exposure_time', 0.0) * 100:.1f}% |")
        lines.append(f"| Fills | {a.get('n_fills', 0)} |")
        lines.append(f"| Win Rate | {a.get('win_rate', 0.0) * 100:.1f}% |")
        lines.append(f"| Liquidated | {'yes' if self.result.liquidated else 'no'} |")
        if self.result.error:
            lines.append("")
            lines.append(f"**Error:** {self.result.error}")
        lines.append("")
        return "\n".join(lines)

    def _print_header(self):
        print("\n" + "=" * 80)
        print(f"BACKTEST REPORT - {self.result.symbol}")
        print("=" * 80)
        if self.result.equity:
            print(
                f"\nTest Period:      {_fmt_ts(self.result.equity[0].timestamp)} to "
                f"{_fmt_ts(self.result.equity[-1].timestamp)}"
            )
        print(f"Status:           {self.result.status.value}")
        print(f"Starting Balance: {self.result.starting_balance:,.2f}")
        print(f"Final Balance:    {self.analysis.get('final_balance', 0.0):,.2f}")
        if self.result.error:
            print(f"Error:            {self.result.error}")

    def _print_performance_summary(self):
        a = self.analysis
        print("\n" + "-" * 80)
        print("PERFORMANCE SUMMARY")
        print("-" * 80)
        print(f"\n  Total Return:      {a.get('total_return', 0.0) * 100:+.2f}%")
        print(f"  Worst Drawdown:    {a.get('drawdown_worst', 0.0) * 100:.2f}%")
        print(f"  Sharpe Ratio:      {a.get('sharpe_ratio', 0.0):.2f}")
        print(f"  Sortino Ratio:     {a.get('sortino_ratio', 0.0):.2f}")
        print(f"  Calmar Ratio:      {a.get('calmar_ratio', 0.0):.2f}")
        print(f"  Exposure Time:     {a.get('exposure_time', 0.0) * 100:.1f}%")
        print(f"  Max Exposure:      {a.get('wallet_exposure_max', 0.0):.3f}")

    def _print_trade_statistics(self):
        a = self.analysis
        print("\n" + "-" * 80)
        print("TRADE STATISTICS")
        print("-" * 80)
        print(f"\n  Fills:             {a.get('n_fills', 0)}")
        print(f"  Entries / Closes:  {a.get('n_entries', 0)} / {a.get('n_closes', 0)}")
        print(f"  Win Rate:          {a.get('win_rate', 0.0) * 100:.1f}%")
        print(f"  Profit Factor:     {a.get('profit_factor', 0.0):.2f}")
        print(f"  Skipped Ticks:     {self.result.skipped_ticks}")
        if self.result.clamps:
            print(f"  Clamped Params:    {', '.join(c['parameter'] for c in self.result.clamps)}")

    def _print_monthly_returns(self):
        print("\n" + "-" * 80)
        print("MONTHLY RETURNS (%)")
        print("-" * 80)
        monthly = self.monthly_returns()
        if monthly.empty:
            print("\n  No monthly data available")
            return
        print()
        for period, value in monthly.items():
            print(f"  {period.strftime('%Y-%m')}  {value:+7.2f}")

    def _print_liquidation(self):
        event = self.result.liquidation
        if event is None:
            return
        print("\n" + "-" * 80)
        print("LIQUIDATION")
        print("-" * 80)
        print(f"\n  Time:     {_fmt_ts(event.timestamp)}")
        print(f"  Price:    {event.price}")
        print(f"  Position: {event.position_side} {event.position_size} @ {event.position_price}")
        print(f"  Balance:  {event.balance_after:,.2f}")

    def monthly_returns(self) -> pd.Series:
        """Month-over-month equity change in percent."""
        if len(self.result.equity) < 2:
            return pd.Series(dtype=float)
        df = pd.DataFrame(list(self.result.equity))
        equity = df.set_index(pd.to_datetime(df["timestamp"], unit="ms"))["equity"]
        month_end = equity.resample("ME").last().dropna()
        previous = month_end.shift(1)
        previous.iloc[0] = equity.iloc[0]
        return (month_end / previous - 1.0) * 100


def save_result(result: BacktestResult, path: str) -> Path:
    filepath = Path(path)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    filepath.write_text(result.model_dump_json(indent=2))
    logger.info("backtest_report.saved", file=str(filepath), symbol=result.symbol)
    return filepath


def load_result(path: str) -> BacktestResult:
    return BacktestResult.model_validate_json(Path(path).read_text())


def save_report(result: BacktestResult, base_dir: str, exchange: str, run_id: Optional[str] = None) -> Path:
    """Write ``result.json`` and ``report.md`` into a fresh run directory."""
    run_id = run_id or datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    safe_symbol = result.symbol.replace("/", "_").replace(":", "_")
    run_dir = Path(base_dir) / exchange / safe_symbol / run_id
    save_result(result, str(run_dir / "result.json"))
    (run_dir / "report.md").write_text(BacktestReport(result).generate_markdown_report())
    return run_dir
