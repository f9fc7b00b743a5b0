"""Unit tests for NSGA-II operators and fitness scoring."""
import numpy as np
import pytest

from gridengine.backtest.simulator import BacktestResult, LiquidationEvent, SimulationStatus
from gridengine.core.config import OptimizerConfig, OptimizerLimit
from gridengine.core.errors import InvalidConfiguration
from gridengine.optimizer.fitness import (
    MIN_FITNESS,
    WORST_OBJECTIVE,
    check_scoring,
    evaluate_result,
    limit_violations,
    objectives,
    scalar_fitness,
)
from gridengine.optimizer.operators import (
    crowding_distance,
    dominates,
    fast_non_dominated_sort,
    polynomial_mutation,
    rank_and_crowding,
    sbx_crossover,
    select_survivors,
    tournament_select,
)


def result_with(analysis, status=SimulationStatus.COMPLETED, liquidated=False):
    liquidation = None
    if liquidated:
        liquidation = LiquidationEvent(
            timestamp=0, price=50.0, position_side="long", position_size=1.0,
            position_price=100.0, equity=0.0, balance_after=0.0,
        )
    return BacktestResult(
        status=status, symbol="BTC/USDT:USDT", starting_balance=1000.0,
        analysis=analysis, liquidation=liquidation,
    )


# =============================================================================
# Pareto Tests
# =============================================================================

class TestDominance:
    """Test dominance and front sorting."""

    def test_dominates(self):
        assert dominates(np.array([1.0, 1.0]), np.array([1.0, 2.0]))
        assert not dominates(np.array([1.0, 1.0]), np.array([1.0, 1.0]))
        assert not dominates(np.array([0.0, 2.0]), np.array([1.0, 1.0]))

    def test_fronts(self):
        objs = np.array([[1.0, 4.0], [2.0, 2.0], [4.0, 1.0], [3.0, 3.0], [5.0, 5.0]])
        assert fast_non_dominated_sort(objs) == [[0, 1, 2], [3], [4]]

    def test_crowding_boundaries_infinite(self):
        objs = np.array([[1.0, 4.0], [2.0, 2.0], [4.0, 1.0]])
        distance = crowding_distance(objs)
        assert np.isinf(distance[0]) and np.isinf(distance[2])
        assert distance[1] == pytest.approx(2.0)

    def test_rank_and_crowding(self):
        ranks, crowding = rank_and_crowding(np.array([[1.0, 1.0], [2.0, 2.0]]))
        assert list(ranks) == [0, 1]
        assert np.all(np.isinf(crowding))

    def test_select_survivors_prefers_fronts_then_spread(self):
        objs = np.array([[1.0, 4.0], [2.0, 2.9], [2.1, 3.0], [4.0, 1.0], [9.0, 9.0]])
        survivors = select_survivors(objs, 3)
        assert set(survivors) == {0, 1, 3}

    def test_tournament_prefers_lower_rank(self):
        rng = np.random.default_rng(0)
        ranks = np.array([0, 1])
        crowding = np.array([0.0, 0.0])
        winners = {tournament_select(rng, ranks, crowding) for _ in range(50)}
        # Index 1 only wins a tournament against itself
        assert 0 in winners


# =============================================================================
# Variation Tests
# =============================================================================

class TestVariation:
    """Test crossover and mutation."""

    @pytest.fixture
    def bounds(self):
        return np.array([0.0, 0.0]), np.array([1.0, 10.0])

    def test_sbx_children_within_bounds(self, bounds):
        rng = np.random.default_rng(3)
        lows, highs = bounds
        for _ in range(100):
            c1, c2 = sbx_crossover(rng, np.array([0.1, 9.0]), np.array([0.9, 1.0]), lows, highs, eta=2.0)
            assert np.all(c1 >= lows) and np.all(c1 <= highs)
            assert np.all(c2 >= lows) and np.all(c2 <= highs)

    def test_sbx_probability_zero_copies_parents(self, bounds):
        p1, p2 = np.array([0.1, 9.0]), np.array([0.9, 1.0])
        c1, c2 = sbx_crossover(np.random.default_rng(0), p1, p2, *bounds, probability=0.0)
        assert np.array_equal(c1, p1) and np.array_equal(c2, p2)
        assert c1 is not p1

    def test_mutation_probability_zero_is_identity(self, bounds):
        individual = np.array([0.5, 5.0])
        mutated = polynomial_mutation(np.random.default_rng(0), individual, *bounds, probability=0.0)
        assert np.array_equal(mutated, individual)

    def test_mutation_within_bounds(self, bounds):
        rng = np.random.default_rng(5)
        lows, highs = bounds
        for _ in range(100):
            mutated = polynomial_mutation(rng, np.array([0.0, 10.0]), lows, highs, eta=1.0, probability=1.0)
            assert np.all(mutated >= lows) and np.all(mutated <= highs)

    def test_same_seed_same_children(self, bounds):
        p1, p2 = np.array([0.1, 9.0]), np.array([0.9, 1.0])
        first = sbx_crossover(np.random.default_rng(11), p1, p2, *bounds)
        second = sbx_crossover(np.random.default_rng(11), p1, p2, *bounds)
        assert np.array_equal(first[0], second[0])


# =============================================================================
# Fitness Tests
# =============================================================================

class TestFitness:
    """Test scoring of backtest results."""

    def test_unknown_scoring_metric(self):
        with pytest.raises(InvalidConfiguration):
            check_scoring(["sharpe_ratio", "luck"])

    def test_objectives_are_minimized(self):
        analysis = {"sharpe_ratio": 2.0, "drawdown_worst": 0.1}
        assert objectives(analysis, ["sharpe_ratio", "drawdown_worst"]) == (-2.0, 0.1)

    def test_non_finite_metric_is_neutral(self):
        assert objectives({"sharpe_ratio": float("nan")}, ["sharpe_ratio"]) == (0.0,)

    def test_scalar_fitness_penalties(self):
        config = OptimizerConfig(
            drawdown_penalty=1.0,
            liquidation_penalty=10.0,
            limit_penalty=1.0,
            limits=[OptimizerLimit(metric="drawdown_worst", max=0.2)],
        )
        healthy = result_with({"sharpe_ratio": 2.0, "drawdown_worst": 0.1})
        deep = result_with({"sharpe_ratio": 2.0, "drawdown_worst": 0.5})
        liquidated = result_with({"sharpe_ratio": 2.0, "drawdown_worst": 0.1}, liquidated=True)

        assert scalar_fitness(healthy, config) == pytest.approx(1.9)
        assert scalar_fitness(deep, config) == pytest.approx(0.5)
        assert scalar_fitness(liquidated, config) == pytest.approx(-8.1)

    def test_limit_violations(self):
        limits = [OptimizerLimit(metric="win_rate", min=0.5), OptimizerLimit(metric="drawdown_worst", max=0.3)]
        assert limit_violations({"win_rate": 0.4, "drawdown_worst": 0.1}, limits) == ["win_rate"]

    def test_failed_result_scores_worst(self):
        config = OptimizerConfig()
        fitness, objs = evaluate_result(result_with({}, status=SimulationStatus.FAILED), config)
        assert fitness == MIN_FITNESS
        assert objs == (WORST_OBJECTIVE, WORST_OBJECTIVE)
