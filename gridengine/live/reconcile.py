"""Diff between the orders resting on the exchange and the engine's desired set."""

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from gridengine.core.models import Order


@dataclass(frozen=True)
class ReconcilePlan:
    """What to do to bring the exchange in line with the desired orders."""

    to_cancel: Tuple[Order, ...] = ()
    to_place: Tuple[Order, ...] = ()
    kept: Tuple[Order, ...] = ()
    # Desired orders left unplaced because they are too far from the market
    deferred: Tuple[Order, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.to_cancel and not self.to_place


def orders_match(resting: Order, desired: Order) -> bool:
    return (
        resting.side == desired.side
        and resting.reduce_only == desired.reduce_only
        and math.isclose(resting.qty, desired.qty, rel_tol=1e-9, abs_tol=1e-12)
        and math.isclose(resting.price, desired.price, rel_tol=1e-9, abs_tol=1e-12)
    )


def price_distance(order: Order, mid_price: float) -> float:
    return abs(order.price - mid_price) / mid_price


def reconcile(
    resting: Sequence[Order],
    desired: Sequence[Order],
    mid_price: float,
    price_distance_threshold: float = 0.0,
    max_cancellations: int = 5,
    max_creations: int = 3,
) -> ReconcilePlan:
    """Plan cancellations and placements.

    Resting orders that match a desired order are kept. Every other resting
    order is cancelled. Desired orders without a resting match are placed,
    closest to ``mid_price`` first, unless they lie further than
    ``price_distance_threshold`` (a fraction of ``mid_price``; 0 disables the
    filter) from the market. Both lists are capped per batch; whatever is
    left over is handled on the next cycle.
    """
    unmatched = list(resting)
    kept: List[Order] = []
    missing: List[Order] = []
    for order in desired:
        for i, candidate in enumerate(unmatched):
            if orders_match(candidate, order):
                kept.append(unmatched.pop(i))
                break
        else:
            missing.append(order)

    deferred: List[Order] = []
    to_place: List[Order] = []
    for order in missing:
        if price_distance_threshold > 0.0 and mid_price > 0.0 and price_distance(order, mid_price) > price_distance_threshold:
            deferred.append(order)
        else:
            to_place.append(order)

    if mid_price > 0.0:
        unmatched.sort(key=lambda o: price_distance(o, mid_price))
        to_place.sort(key=lambda o: price_distance(o, mid_price))
    return ReconcilePlan(
        to_cancel=tuple(unmatched[:max_cancellations]),
        to_place=tuple(to_place[:max_creations]),
        kept=tuple(kept),
        deferred=tuple(deferred),
    )
