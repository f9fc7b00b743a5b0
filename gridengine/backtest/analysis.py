"""Performance metrics for backtest equity curves."""

from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from gridengine.core.models import EquitySample, Fill

PERIODS_PER_YEAR = 252


def empty_analysis(starting_balance: float) -> Dict[str, float]:
    return {
        "starting_balance": float(starting_balance),
        "final_balance": float(starting_balance),
        "final_equity": float(starting_balance),
        "total_return": 0.0,
        "drawdown_worst": 0.0,
        "sharpe_ratio": 0.0,
        "sortino_ratio": 0.0,
        "calmar_ratio": 0.0,
        "exposure_time": 0.0,
        "wallet_exposure_max": 0.0,
        "n_days": 0.0,
        "n_fills": 0,
        "n_entries": 0,
        "n_closes": 0,
        "win_rate": 0.0,
        "profit_factor": 0.0,
    }


def max_drawdown(equity: pd.Series) -> float:
    """Worst peak-to-trough drop as a fraction of the peak."""
    peak = equity.cummax()
    drawdown = (peak - equity) / peak
    return float(drawdown.max()) if len(drawdown) else 0.0


def sharpe_ratio(returns: pd.Series) -> float:
    if len(returns) < 2:
        return 0.0
    std = returns.std()
    if not std or np.isnan(std):
        return 0.0
    return float(returns.mean() / std * np.sqrt(PERIODS_PER_YEAR))


def sortino_ratio(returns: pd.Series) -> float:
    downside = returns[returns < 0]
    if len(downside) < 2:
        return 0.0
    downside_deviation = np.sqrt((downside**2).sum() / (len(downside) - 1))
    if downside_deviation == 0:
        return 0.0
    return float(returns.mean() / downside_deviation * np.sqrt(PERIODS_PER_YEAR))


def calmar_ratio(equity: pd.Series, drawdown_worst: float, n_days: float) -> float:
    if drawdown_worst == 0.0 or len(equity) == 0 or equity.iloc[0] == 0 or n_days <= 0:
        return 0.0
    total_return = equity.iloc[-1] / equity.iloc[0] - 1.0
    if total_return <= -1.0:
        return float(-1.0 / drawdown_worst)
    annualized = (1.0 + total_return) ** (365.0 / n_days) - 1.0
    return float(annualized / drawdown_worst)


def analyze(
    equity_samples: Sequence[EquitySample],
    fills: Sequence[Fill],
    starting_balance: float,
    final_balance: Optional[float] = None,
) -> Dict[str, float]:
    """Summarize an equity trajectory and its trade log.

    Returns are taken from daily closing equity when the run spans at least
    three days, otherwise from the raw samples. Fewer than two samples give
    the neutral defaults.
    """
    analysis = empty_analysis(starting_balance)
    if final_balance is not None:
        analysis["final_balance"] = float(final_balance)
        analysis["final_equity"] = float(final_balance)
    analysis.update(_trade_stats(fills))
    if len(equity_samples) < 2:
        return analysis

    df = pd.DataFrame(list(equity_samples))
    df.index = pd.to_datetime(df["timestamp"], unit="ms")
    daily = df["equity"].resample("1D").last().dropna()
    equity = daily if len(daily) >= 3 else df["equity"]
    # Equity at or below zero has no meaningful return
    returns = equity.clip(lower=1e-12).pct_change().dropna()

    n_days = max((df["timestamp"].iloc[-1] - df["timestamp"].iloc[0]) / 86_400_000, 1.0 / 1440)
    drawdown = max_drawdown(df["equity"].clip(lower=0.0))

    analysis.update(
        {
            "final_balance": float(final_balance if final_balance is not None else df["balance"].iloc[-1]),
            "final_equity": float(df["equity"].iloc[-1]),
            "total_return": float(df["equity"].iloc[-1] / starting_balance - 1.0),
            "drawdown_worst": drawdown,
            "sharpe_ratio": sharpe_ratio(returns),
            "sortino_ratio": sortino_ratio(returns),
            "calmar_ratio": calmar_ratio(df["equity"], drawdown, n_days),
            "exposure_time": float((df["position_size"] > 0).mean()),
            "wallet_exposure_max": float(df["wallet_exposure"].max()),
            "n_days": float(n_days),
        }
    )
    return analysis


def _trade_stats(fills: Sequence[Fill]) -> Dict[str, float]:
    entries = [f for f in fills if f.order_type.is_entry]
    closes = [f for f in fills if not f.order_type.is_entry]
    gains = sum(f.pnl for f in closes if f.pnl > 0)
    losses = -sum(f.pnl for f in closes if f.pnl < 0)
    return {
        "n_fills": len(fills),
        "n_entries": len(entries),
        "n_closes": len(closes),
        "win_rate": (sum(1 for f in closes if f.pnl > 0) / len(closes)) if closes else 0.0,
        "profit_factor": float(gains / losses) if losses > 0 else 0.0,
    }
