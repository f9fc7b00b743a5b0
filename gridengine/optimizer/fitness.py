"""Scoring of backtest results for the optimizer."""

import math
from typing import Any, Dict, List, Sequence, Tuple

from gridengine.backtest.simulator import BacktestResult
from gridengine.core.config import OptimizerConfig, OptimizerLimit
from gridengine.core.errors import InvalidConfiguration

# Fitness of a trial whose backtest did not complete
MIN_FITNESS = -1e9
# Objective value given to failed trials (objectives are minimized)
WORST_OBJECTIVE = 1e9

# +1: higher is better, -1: lower is better
METRIC_DIRECTIONS = {
    "sharpe_ratio": 1,
    "sortino_ratio": 1,
    "calmar_ratio": 1,
    "total_return": 1,
    "final_balance": 1,
    "final_equity": 1,
    "profit_factor": 1,
    "win_rate": 1,
    "drawdown_worst": -1,
    "exposure_time": -1,
    "wallet_exposure_max": -1,
}


def check_scoring(scoring: Sequence[str]) -> None:
    unknown = [m for m in scoring if m not in METRIC_DIRECTIONS]
    if unknown:
        raise InvalidConfiguration(f"unknown scoring metrics: {unknown}", field="optimizer.scoring")


def _metric(analysis: Dict[str, Any], name: str) -> float:
    value = float(analysis.get(name, 0.0))
    return value if math.isfinite(value) else 0.0


def objectives(analysis: Dict[str, Any], scoring: Sequence[str]) -> Tuple[float, ...]:
    """Minimization vector: maximized metrics are negated."""
    return tuple(-METRIC_DIRECTIONS[m] * _metric(analysis, m) for m in scoring)


def limit_violations(analysis: Dict[str, Any], limits: Sequence[OptimizerLimit]) -> List[str]:
    violated = []
    for limit in limits:
        value = _metric(analysis, limit.metric)
        if (limit.max is not None and value > limit.max) or (limit.min is not None and value < limit.min):
            violated.append(limit.metric)
    return violated


def scalar_fitness(result: BacktestResult, config: OptimizerConfig) -> float:
    """Risk-adjusted return with penalties; higher is better."""
    if not result.completed:
        return MIN_FITNESS
    analysis = result.analysis
    fitness = _metric(analysis, "sharpe_ratio")
    fitness -= config.drawdown_penalty * _metric(analysis, "drawdown_worst")
    if result.liquidated:
        fitness -= config.liquidation_penalty
    fitness -= config.limit_penalty * len(limit_violations(analysis, config.limits))
    return fitness


def evaluate_result(result: BacktestResult, config: OptimizerConfig) -> Tuple[float, Tuple[float, ...]]:
    """Scalar fitness and objective vector of one backtest."""
    if not result.completed:
        return MIN_FITNESS, tuple(WORST_OBJECTIVE for _ in config.scoring)
    return scalar_fitness(result, config), objectives(result.analysis, config.scoring)
