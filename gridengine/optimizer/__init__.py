"""Parameter optimizer: NSGA-II search scored by backtests."""

from gridengine.optimizer.fitness import MIN_FITNESS, evaluate_result, scalar_fitness
from gridengine.optimizer.optimizer import OptimizationRun, Optimizer, Trial
from gridengine.optimizer.search_space import ParameterRange, SearchSpace

__all__ = [
    "Optimizer",
    "OptimizationRun",
    "Trial",
    "SearchSpace",
    "ParameterRange",
    "MIN_FITNESS",
    "evaluate_result",
    "scalar_fitness",
]
