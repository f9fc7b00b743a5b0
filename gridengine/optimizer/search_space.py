"""Optimizer search space: named parameter bounds and their mapping onto configs."""

import math
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import numpy as np

from gridengine.core.config import StrategyConfig, integer_parameters, parameter_bounds
from gridengine.core.errors import InvalidSearchSpace

SIDES = ("long", "short")


@dataclass(frozen=True)
class ParameterRange:
    """Search bounds for one ``<side>.<parameter>``."""

    side: str
    parameter: str
    low: float
    high: float
    integer: bool = False

    @property
    def name(self) -> str:
        return f"{self.side}.{self.parameter}"


class SearchSpace:
    """Ordered set of parameter ranges; candidates are numpy vectors in that order."""

    def __init__(self, ranges: Sequence[ParameterRange]):
        if not ranges:
            raise InvalidSearchSpace("search space has no parameters")
        self.ranges = list(ranges)
        self.lows = np.array([r.low for r in self.ranges], dtype=float)
        self.highs = np.array([r.high for r in self.ranges], dtype=float)

    @classmethod
    def from_bounds(cls, bounds: Dict[str, Tuple[float, float]]) -> "SearchSpace":
        """Build and validate a space from ``{"long.param": (low, high)}``.

        Raises:
            InvalidSearchSpace: no parameters, an unknown name, non-finite or
                inverted bounds, or bounds outside the parameter's declared
                range.
        """
        declared = parameter_bounds()
        ints = set(integer_parameters())
        ranges: List[ParameterRange] = []
        for name, bound in bounds.items():
            side, _, parameter = name.partition(".")
            if side not in SIDES or parameter not in declared:
                raise InvalidSearchSpace(f"unknown parameter '{name}'")
            try:
                low, high = (float(b) for b in bound)
            except (TypeError, ValueError) as e:
                raise InvalidSearchSpace(f"{name}: bounds must be two numbers, got {bound!r}") from e
            if not (math.isfinite(low) and math.isfinite(high)):
                raise InvalidSearchSpace(f"{name}: bounds must be finite, got [{low}, {high}]")
            if low > high:
                raise InvalidSearchSpace(f"{name}: lower bound {low} above upper bound {high}")
            valid_low, valid_high = declared[parameter]
            if low < valid_low or high > valid_high:
                raise InvalidSearchSpace(
                    f"{name}: [{low}, {high}] exceeds valid range [{valid_low}, {valid_high}]"
                )
            ranges.append(ParameterRange(side, parameter, low, high, integer=parameter in ints))
        return cls(ranges)

    @property
    def names(self) -> List[str]:
        return [r.name for r in self.ranges]

    @property
    def n_vars(self) -> int:
        return len(self.ranges)

    def clamp(self, vector: np.ndarray) -> np.ndarray:
        return np.clip(vector, self.lows, self.highs)

    def sample(self, rng: np.random.Generator, n: int) -> np.ndarray:
        """``n`` uniform random candidates, shape (n, n_vars)."""
        return rng.uniform(self.lows, self.highs, size=(n, self.n_vars))

    def decode(self, vector: np.ndarray) -> Dict[str, float]:
        values = {}
        for r, value in zip(self.ranges, self.clamp(np.asarray(vector, dtype=float))):
            values[r.name] = int(round(value)) if r.integer else float(value)
        return values

    def to_config(self, vector: np.ndarray, base: StrategyConfig) -> StrategyConfig:
        """Apply a candidate vector to ``base``; the base config is not modified."""
        updates: Dict[str, Dict[str, float]] = {side: {} for side in SIDES}
        for name, value in self.decode(vector).items():
            side, _, parameter = name.partition(".")
            updates[side][parameter] = value
        return base.model_copy(
            update={
                side: getattr(base, side).model_copy(update=values)
                for side, values in updates.items()
                if values
            }
        )
