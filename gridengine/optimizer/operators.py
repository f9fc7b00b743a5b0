"""NSGA-II building blocks. Objectives are always minimized."""

from typing import List, Tuple

import numpy as np


def dominates(a: np.ndarray, b: np.ndarray) -> bool:
    """``a`` is no worse than ``b`` everywhere and strictly better somewhere."""
    return bool(np.all(a <= b) and np.any(a < b))


def fast_non_dominated_sort(objectives: np.ndarray) -> List[List[int]]:
    """Split row indices of ``objectives`` into Pareto fronts, best first."""
    n = len(objectives)
    dominated_by: List[List[int]] = [[] for _ in range(n)]
    counts = np.zeros(n, dtype=int)
    for i in range(n):
        for j in range(i + 1, n):
            if dominates(objectives[i], objectives[j]):
                dominated_by[i].append(j)
                counts[j] += 1
            elif dominates(objectives[j], objectives[i]):
                dominated_by[j].append(i)
                counts[i] += 1

    fronts: List[List[int]] = []
    current = [i for i in range(n) if counts[i] == 0]
    while current:
        fronts.append(current)
        following = []
        for i in current:
            for j in dominated_by[i]:
                counts[j] -= 1
                if counts[j] == 0:
                    following.append(j)
        current = sorted(following)
    return fronts


def crowding_distance(objectives: np.ndarray) -> np.ndarray:
    """Crowding distance of each row within one front; boundary rows get inf."""
    n, n_obj = objectives.shape
    distance = np.zeros(n)
    if n <= 2:
        distance[:] = np.inf
        return distance
    for m in range(n_obj):
        order = np.argsort(objectives[:, m], kind="stable")
        values = objectives[order, m]
        distance[order[0]] = np.inf
        distance[order[-1]] = np.inf
        span = values[-1] - values[0]
        if span <= 1e-12:
            continue
        distance[order[1:-1]] += (values[2:] - values[:-2]) / span
    return distance


def rank_and_crowding(objectives: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Front rank (0 = best) and crowding distance per row."""
    ranks = np.zeros(len(objectives), dtype=int)
    crowding = np.zeros(len(objectives))
    for rank, front in enumerate(fast_non_dominated_sort(objectives)):
        ranks[front] = rank
        crowding[front] = crowding_distance(objectives[front])
    return ranks, crowding


def select_survivors(objectives: np.ndarray, n: int) -> List[int]:
    """Indices of the ``n`` best rows by front, then by crowding distance."""
    survivors: List[int] = []
    for front in fast_non_dominated_sort(objectives):
        if len(survivors) + len(front) <= n:
            survivors.extend(front)
            continue
        distance = crowding_distance(objectives[front])
        order = np.argsort(-distance, kind="stable")
        survivors.extend(front[i] for i in order[: n - len(survivors)])
        break
    return survivors


def tournament_select(rng: np.random.Generator, ranks: np.ndarray, crowding: np.ndarray) -> int:
    """Binary tournament: lower rank wins, then larger crowding distance."""
    i, j = (int(k) for k in rng.integers(0, len(ranks), size=2))
    if ranks[i] != ranks[j]:
        return i if ranks[i] < ranks[j] else j
    if crowding[i] != crowding[j]:
        return i if crowding[i] > crowding[j] else j
    return i if rng.random() < 0.5 else j


def sbx_crossover(
    rng: np.random.Generator,
    parent1: np.ndarray,
    parent2: np.ndarray,
    lows: np.ndarray,
    highs: np.ndarray,
    eta: float = 20.0,
    probability: float = 0.9,
) -> Tuple[np.ndarray, np.ndarray]:
    """Simulated binary crossover; children are clamped into bounds."""
    if rng.random() > probability:
        return parent1.copy(), parent2.copy()
    u = rng.random(len(parent1))
    beta = np.where(
        u <= 0.5,
        (2.0 * u) ** (1.0 / (eta + 1.0)),
        (1.0 / (2.0 * (1.0 - u))) ** (1.0 / (eta + 1.0)),
    )
    child1 = 0.5 * ((1.0 + beta) * parent1 + (1.0 - beta) * parent2)
    child2 = 0.5 * ((1.0 - beta) * parent1 + (1.0 + beta) * parent2)
    return np.clip(child1, lows, highs), np.clip(child2, lows, highs)


def polynomial_mutation(
    rng: np.random.Generator,
    individual: np.ndarray,
    lows: np.ndarray,
    highs: np.ndarray,
    eta: float = 20.0,
    probability: float = 0.1,
) -> np.ndarray:
    """Per-gene polynomial mutation; the result is clamped into bounds."""
    mutate = rng.random(len(individual)) < probability
    u = rng.random(len(individual))
    delta = np.where(
        u < 0.5,
        (2.0 * u) ** (1.0 / (eta + 1.0)) - 1.0,
        1.0 - (2.0 * (1.0 - u)) ** (1.0 / (eta + 1.0)),
    )
    mutated = np.where(mutate, individual + delta * (highs - lows), individual)
    return np.clip(mutated, lows, highs)
