"""
Population-based parameter search (NSGA-II).

Each candidate configuration is scored by one full backtest over the same
price series. Candidates of a generation are evaluated in parallel worker
processes; the series is handed to each worker once, at start-up.
"""

import threading
import uuid
from concurrent.futures import ProcessPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import structlog
from pydantic import BaseModel, ConfigDict, Field

from gridengine.backtest.data_loader import validate_series
from gridengine.backtest.simulator import BacktestSimulator, expected_step_ms
from gridengine.core.config import (
    GridEngineConfig,
    OptimizerConfig,
    SimulatorConfig,
    StrategyConfig,
)
from gridengine.core.errors import DataGapError, GridEngineError, InsufficientData
from gridengine.core.models import MarketTick
from gridengine.optimizer.fitness import (
    MIN_FITNESS,
    WORST_OBJECTIVE,
    check_scoring,
    evaluate_result,
)
from gridengine.optimizer.operators import (
    polynomial_mutation,
    rank_and_crowding,
    sbx_crossover,
    select_survivors,
    tournament_select,
)
from gridengine.optimizer.search_space import SearchSpace
from gridengine.strategies.engine import StrategyEngine

logger = structlog.get_logger(__name__)


# =============================================================================
# Results
# =============================================================================


class Trial(BaseModel):
    """One evaluated candidate."""

    model_config = ConfigDict(frozen=True, ser_json_inf_nan="constants")

    generation: int
    index: int
    params: Dict[str, float]
    config: StrategyConfig
    fitness: float
    objectives: Tuple[float, ...]
    status: str
    analysis: Dict[str, Any] = Field(default_factory=dict)


class OptimizationRun(BaseModel):
    """Every trial of a search, in evaluation order, and the best one.

    Trials are only ever appended; ``best`` is replaced when a strictly
    fitter trial arrives, so it is always the maximum fitness seen.
    """

    model_config = ConfigDict(ser_json_inf_nan="constants")

    run_id: str
    parameters: List[str]
    seed: Optional[int] = None
    trials: List[Trial] = Field(default_factory=list)
    best: Optional[Trial] = None
    termination_reason: Optional[str] = None
    generations_completed: int = 0

    def add(self, trial: Trial) -> None:
        self.trials.append(trial)
        if self.best is None or trial.fitness > self.best.fitness:
            self.best = trial

    def top_n(self, n: int = 5) -> List[Trial]:
        return sorted(self.trials, key=lambda t: t.fitness, reverse=True)[:n]

    def param_impact(self) -> Dict[str, float]:
        """Pearson correlation of each searched parameter with fitness,
        over completed trials."""
        completed = [t for t in self.trials if t.status == "completed"]
        if len(completed) < 3:
            return {name: 0.0 for name in self.parameters}
        fitness = np.array([t.fitness for t in completed])
        impact = {}
        for name in self.parameters:
            values = np.array([t.params[name] for t in completed], dtype=float)
            if np.std(values) == 0.0 or np.std(fitness) == 0.0:
                impact[name] = 0.0
            else:
                impact[name] = float(np.corrcoef(values, fitness)[0, 1])
        return impact

    def save(self, path: str) -> Path:
        filepath = Path(path)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        filepath.write_text(self.model_dump_json(indent=2))
        logger.info("optimizer.run_saved", file=str(filepath), trials=len(self.trials))
        return filepath

    @classmethod
    def load(cls, path: str) -> "OptimizationRun":
        return cls.model_validate_json(Path(path).read_text())


# =============================================================================
# Evaluation
# =============================================================================


def evaluate_candidate(
    series: Sequence[MarketTick],
    strategy_config: StrategyConfig,
    simulator_config: SimulatorConfig,
    starting_balance: float,
    optimizer_config: OptimizerConfig,
) -> Tuple[str, float, Tuple[float, ...], Dict[str, Any]]:
    """Run one backtest; returns (status, fitness, objectives, analysis)."""
    simulator = BacktestSimulator(strategy_config, simulator_config, starting_balance, engine=StrategyEngine())
    try:
        result = simulator.run(series)
    except GridEngineError as e:
        return "failed", MIN_FITNESS, tuple(WORST_OBJECTIVE for _ in optimizer_config.scoring), {"error": str(e)}
    fitness, objectives = evaluate_result(result, optimizer_config)
    analysis = dict(result.analysis)
    if result.error:
        analysis["error"] = result.error
    return result.status.value, fitness, objectives, analysis


# Read-only state of a worker process, set once by the pool initializer
_worker_state: Dict[str, Any] = {}


def _init_worker(
    series: Tuple[MarketTick, ...],
    simulator_config: SimulatorConfig,
    starting_balance: float,
    optimizer_config: OptimizerConfig,
) -> None:
    _worker_state.update(
        series=series,
        simulator_config=simulator_config,
        starting_balance=starting_balance,
        optimizer_config=optimizer_config,
    )


def _evaluate_in_worker(strategy_config: StrategyConfig):
    return evaluate_candidate(
        _worker_state["series"],
        strategy_config,
        _worker_state["simulator_config"],
        _worker_state["starting_balance"],
        _worker_state["optimizer_config"],
    )


# =============================================================================
# Optimizer
# =============================================================================


class Optimizer:
    """NSGA-II search over the configured parameter bounds.

    Args:
        strategy_config: Base configuration; searched parameters are
            overwritten per candidate, everything else is kept.
        optimizer_config: Search settings and bounds.
        simulator_config: Fill model used for every evaluation.
        starting_balance: Balance each backtest starts with.
    """

    def __init__(
        self,
        strategy_config: StrategyConfig,
        optimizer_config: Optional[OptimizerConfig] = None,
        simulator_config: Optional[SimulatorConfig] = None,
        starting_balance: float = 1000.0,
    ):
        self.strategy_config = strategy_config
        self.config = optimizer_config or OptimizerConfig()
        self.simulator_config = simulator_config or SimulatorConfig()
        self.starting_balance = starting_balance
        self._cancel_event = threading.Event()

    @classmethod
    def from_config(cls, config: GridEngineConfig) -> "Optimizer":
        return cls(config.bot, config.optimizer, config.simulator, config.backtest.starting_balance)

    def cancel(self) -> None:
        """Stop after the generation currently being evaluated."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _evaluate(self, executor, configs: List[StrategyConfig], series: Tuple[MarketTick, ...]):
        if executor is None:
            return [
                evaluate_candidate(series, c, self.simulator_config, self.starting_balance, self.config)
                for c in configs
            ]
        return list(executor.map(_evaluate_in_worker, configs))

    def _record(
        self,
        run: OptimizationRun,
        space: SearchSpace,
        generation: int,
        population: np.ndarray,
        configs: List[StrategyConfig],
        outcomes,
    ) -> np.ndarray:
        objectives = []
        for index, (vector, config, outcome) in enumerate(zip(population, configs, outcomes)):
            status, fitness, objs, analysis = outcome
            run.add(
                Trial(
                    generation=generation,
                    index=index,
                    params=space.decode(vector),
                    config=config,
                    fitness=fitness,
                    objectives=objs,
                    status=status,
                    analysis=analysis,
                )
            )
            objectives.append(objs)
        return np.array(objectives, dtype=float)

    def _offspring(
        self, rng: np.random.Generator, space: SearchSpace, population: np.ndarray, objectives: np.ndarray
    ) -> np.ndarray:
        ranks, crowding = rank_and_crowding(objectives)
        mutation_probability = self.config.mutation_probability
        if mutation_probability is None:
            mutation_probability = 1.0 / space.n_vars
        children = []
        while len(children) < len(population):
            parent1 = population[tournament_select(rng, ranks, crowding)]
            parent2 = population[tournament_select(rng, ranks, crowding)]
            for child in sbx_crossover(
                rng, parent1, parent2, space.lows, space.highs,
                eta=self.config.crossover_eta, probability=self.config.crossover_probability,
            ):
                child = polynomial_mutation(
                    rng, child, space.lows, space.highs,
                    eta=self.config.mutation_eta, probability=mutation_probability,
                )
                if len(children) < len(population):
                    children.append(space.clamp(child))
        return np.array(children)

    def run(self, series: Sequence[MarketTick]) -> OptimizationRun:
        """
        Search the parameter space against ``series``.

        Raises:
            InvalidSearchSpace: bounds are empty, unknown or invalid.
            InsufficientData: the series is shorter than min_series_length.
            DataGapError: ticks are missing, duplicated or out of order.
            InvalidConfiguration: the base strategy config is invalid or a
                scoring metric is unknown.
        """
        space = SearchSpace.from_bounds(self.config.bounds)
        check_scoring(self.config.scoring)
        if len(series) < self.config.min_series_length:
            raise InsufficientData(
                f"series has {len(series)} ticks, optimizer needs at least {self.config.min_series_length}"
            )
        if len(series) > 1:
            step_ms = expected_step_ms(series, self.simulator_config.step_ms)
            if step_ms is None:
                raise DataGapError(
                    f"timestamps must increase, got {series[0].timestamp} -> {series[1].timestamp}",
                    gap_start=series[0].timestamp,
                    gap_end=series[1].timestamp,
                )
            validate_series(series, step_ms)
        StrategyEngine().validate(self.strategy_config)

        series = tuple(series)
        rng = np.random.default_rng(self.config.seed)
        run = OptimizationRun(run_id=uuid.uuid4().hex[:12], parameters=space.names, seed=self.config.seed)
        pop_size = self.config.population_size
        logger.info(
            "optimizer.starting",
            run_id=run.run_id,
            parameters=space.names,
            population_size=pop_size,
            n_generations=self.config.n_generations,
            n_cpus=self.config.n_cpus,
            ticks=len(series),
        )

        executor = None
        if self.config.n_cpus > 1:
            executor = ProcessPoolExecutor(
                max_workers=self.config.n_cpus,
                initializer=_init_worker,
                initargs=(series, self.simulator_config, self.starting_balance, self.config),
            )
        try:
            population = space.sample(rng, pop_size)
            configs = [space.to_config(v, self.strategy_config) for v in population]
            objectives = self._record(run, space, 0, population, configs, self._evaluate(executor, configs, series))
            best_fitness = run.best.fitness
            stagnant = 0
            run.termination_reason = "budget"

            for generation in range(1, self.config.n_generations + 1):
                if self.cancelled:
                    run.termination_reason = "cancelled"
                    break
                offspring = self._offspring(rng, space, population, objectives)
                configs = [space.to_config(v, self.strategy_config) for v in offspring]
                offspring_objectives = self._record(
                    run, space, generation, offspring, configs, self._evaluate(executor, configs, series)
                )

                combined = np.vstack([population, offspring])
                combined_objectives = np.vstack([objectives, offspring_objectives])
                survivors = select_survivors(combined_objectives, pop_size)
                population = combined[survivors]
                objectives = combined_objectives[survivors]
                run.generations_completed = generation

                logger.info(
                    "optimizer.generation_complete",
                    run_id=run.run_id,
                    generation=generation,
                    best_fitness=run.best.fitness,
                    best_params=run.best.params,
                )

                if run.best.fitness > best_fitness + self.config.stagnation_tolerance:
                    best_fitness = run.best.fitness
                    stagnant = 0
                else:
                    stagnant += 1
                    if stagnant >= self.config.stagnation_generations:
                        run.termination_reason = "stagnation"
                        break
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        logger.info(
            "optimizer.finished",
            run_id=run.run_id,
            reason=run.termination_reason,
            trials=len(run.trials),
            best_fitness=run.best.fitness,
        )
        return run
