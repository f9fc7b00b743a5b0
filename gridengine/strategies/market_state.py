"""Derived market inputs: EMA bands and trailing price extremes.

The strategy engine is stateless, so anything that depends on price history
is folded here and handed to it as a MarketState. The simulator and the live
symbol loops both use this tracker, which keeps their engine inputs identical.
"""

from dataclasses import dataclass, field, replace
from typing import Optional

from gridengine.core.config import BotSideConfig, StrategyConfig
from gridengine.core.models import EMABands, ExchangeParams, MarketTick, TrailingPriceBundle
from gridengine.strategies.utils import calc_ema, ema_alpha


@dataclass(frozen=True)
class MarketState:
    """Everything about the market the engine needs for one decision."""

    tick: Optional[MarketTick]
    exchange_params: ExchangeParams = field(default_factory=ExchangeParams)
    ema_long: EMABands = field(default_factory=EMABands)
    ema_short: EMABands = field(default_factory=EMABands)
    trailing_long: TrailingPriceBundle = field(default_factory=TrailingPriceBundle)
    trailing_short: TrailingPriceBundle = field(default_factory=TrailingPriceBundle)
    # Reference time for staleness checks; None disables them
    as_of: Optional[int] = None

    def ema_bands(self, long: bool) -> EMABands:
        return self.ema_long if long else self.ema_short

    def trailing(self, long: bool) -> TrailingPriceBundle:
        return self.trailing_long if long else self.trailing_short


def update_trailing(bundle: TrailingPriceBundle, price: float) -> TrailingPriceBundle:
    min_since_open = bundle.min_since_open
    max_since_min = bundle.max_since_min
    max_since_open = bundle.max_since_open
    min_since_max = bundle.min_since_max
    if price < min_since_open:
        min_since_open = price
        max_since_min = price
    else:
        max_since_min = max(max_since_min, price)
    if price > max_since_open:
        max_since_open = price
        min_since_max = price
    else:
        min_since_max = min(min_since_max, price)
    return TrailingPriceBundle(min_since_open, max_since_min, max_since_open, min_since_max)


class _EMAPair:
    def __init__(self, params: BotSideConfig):
        self.alphas = (ema_alpha(params.ema_span_0), ema_alpha(params.ema_span_1))
        self.values = None

    def update(self, price: float) -> EMABands:
        if self.values is None:
            self.values = (price, price)
        else:
            self.values = tuple(calc_ema(a, v, price) for a, v in zip(self.alphas, self.values))
        return EMABands(lower=min(self.values), upper=max(self.values))


class MarketStateTracker:
    """Folds ticks of one symbol into MarketState snapshots."""

    def __init__(self, config: StrategyConfig, exchange_params: Optional[ExchangeParams] = None):
        self.exchange_params = exchange_params or ExchangeParams()
        self._ema_long = _EMAPair(config.long)
        self._ema_short = _EMAPair(config.short)
        self._state = MarketState(tick=None, exchange_params=self.exchange_params)

    @property
    def state(self) -> MarketState:
        return self._state

    def update(self, tick: MarketTick, as_of: Optional[int] = None) -> MarketState:
        """Advance with a new tick. Invalid prices leave the bands untouched."""
        if not tick.is_valid():
            self._state = replace(self._state, tick=tick, as_of=as_of)
            return self._state
        self._state = MarketState(
            tick=tick,
            exchange_params=self.exchange_params,
            ema_long=self._ema_long.update(tick.price),
            ema_short=self._ema_short.update(tick.price),
            trailing_long=update_trailing(self._state.trailing_long, tick.price),
            trailing_short=update_trailing(self._state.trailing_short, tick.price),
            as_of=as_of,
        )
        return self._state

    def reset_trailing(self, long: bool) -> None:
        """Restart trailing extremes after the side's position changed."""
        fresh = TrailingPriceBundle()
        if self._state.tick is not None and self._state.tick.is_valid():
            fresh = update_trailing(fresh, self._state.tick.price)
        if long:
            self._state = replace(self._state, trailing_long=fresh)
        else:
            self._state = replace(self._state, trailing_short=fresh)

