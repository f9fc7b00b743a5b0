"""Strategy engine: market state + account state + config -> desired orders.

The engine is a pure function object. It holds no state between calls, reads
no clock and performs no I/O, so the simulator and the live loops get the same
orders for the same inputs.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Tuple, Union

from gridengine.core.config import StrategyConfig, check_side_config
from gridengine.core.errors import InvalidConfiguration
from gridengine.core.models import AccountState, Order, PositionSide
from gridengine.strategies.closes import calc_closes
from gridengine.strategies.entries import calc_entries
from gridengine.strategies.market_state import MarketState
from gridengine.strategies.utils import calc_min_entry_qty, round_dn


@dataclass(frozen=True)
class Decision:
    """Desired order set for one symbol."""

    symbol: str
    orders: Tuple[Order, ...]
    # Parameters that were clamped into range, if clamping was requested
    clamps: Tuple[Dict[str, Any], ...] = ()

    @property
    def entries(self) -> Tuple[Order, ...]:
        return tuple(o for o in self.orders if o.is_entry)

    @property
    def closes(self) -> Tuple[Order, ...]:
        return tuple(o for o in self.orders if not o.is_entry)


@dataclass(frozen=True)
class NoDecision:
    """The tick cannot be decided on; callers keep their current orders."""

    reason: str


DecisionOutcome = Union[Decision, NoDecision]


class StrategyEngine:
    """Grid/DCA decision logic for both position sides.

    Args:
        clamp_out_of_range: Clamp out-of-range parameters into their declared
            ranges and record each clamp on the Decision, instead of raising
            InvalidConfiguration.
    """

    def __init__(self, clamp_out_of_range: bool = False):
        self.clamp_out_of_range = clamp_out_of_range

    def validate(self, config: StrategyConfig) -> Tuple[StrategyConfig, List[Dict[str, Any]]]:
        """Return the config to decide with, plus any clamps applied."""
        clamps: List[Dict[str, Any]] = []
        long_cfg, long_clamps = check_side_config(config.long, self.clamp_out_of_range, "long.")
        short_cfg, short_clamps = check_side_config(config.short, self.clamp_out_of_range, "short.")
        clamps.extend(long_clamps)
        clamps.extend(short_clamps)
        updates: Dict[str, Any] = {}
        for name, low, high in (("entry_grid_depth", 1, 50), ("max_tick_age_ms", 0, 86_400_000)):
            value = getattr(config, name)
            if isinstance(value, int) and low <= value <= high:
                continue
            if not self.clamp_out_of_range or not isinstance(value, (int, float)):
                raise InvalidConfiguration(
                    f"{name}={value!r} outside declared range [{low}, {high}]", field=name
                )
            clamped = int(min(max(value, low), high))
            updates[name] = clamped
            clamps.append({"parameter": name, "value": value, "clamped": clamped})
        if long_clamps or short_clamps or updates:
            updates.update(long=long_cfg, short=short_cfg)
            config = config.model_copy(update=updates)
        return config, clamps

    def decide(
        self, market: MarketState, account: AccountState, config: StrategyConfig
    ) -> DecisionOutcome:
        """Compute the orders that should be resting for ``market.tick.symbol``.

        Raises:
            InvalidConfiguration: a parameter is outside its declared range and
                clamping was not requested.
        """
        config, clamps = self.validate(config)

        tick = market.tick
        if tick is None:
            return NoDecision("missing_tick")
        if not tick.is_valid():
            return NoDecision("invalid_price")
        if (
            market.as_of is not None
            and config.max_tick_age_ms > 0
            and market.as_of - tick.timestamp > config.max_tick_age_ms
        ):
            return NoDecision("stale_tick")

        ex = market.exchange_params
        position = account.position(tick.symbol)
        orders: List[Order] = []
        for long in (True, False):
            side = PositionSide.LONG if long else PositionSide.SHORT
            params = config.long if long else config.short
            if not position.is_flat and position.side != side:
                # One position per symbol; the opposite side waits until flat
                continue
            psize = position.size_for(side)
            pprice = position.price_for(side)
            if not params.enabled and psize == 0.0:
                continue
            bands = market.ema_bands(long)
            if not bands.ready:
                return NoDecision("ema_not_ready")
            trailing = market.trailing(long)
            entry_book = tick.best_bid if long else tick.best_ask
            close_book = tick.best_ask if long else tick.best_bid

            grid_orders = calc_entries(
                long, account.balance, psize, pprice, entry_book, bands, trailing, params, ex,
                max_levels=config.entry_grid_depth,
            )
            grid_orders += calc_closes(
                long, account.balance, psize, pprice, close_book, bands, trailing, params, ex,
                account.pnl_cumsum_max, account.pnl_cumsum_last,
            )
            for grid_order in grid_orders:
                if grid_order.empty or grid_order.price <= 0.0:
                    continue
                closes_position = not grid_order.order_type.is_entry and grid_order.qty >= round_dn(psize, ex.qty_step)
                if grid_order.qty < calc_min_entry_qty(grid_order.price, ex) and not closes_position:
                    continue
                orders.append(
                    Order.from_grid(tick.symbol, grid_order.qty, grid_order.price, grid_order.order_type)
                )
        return Decision(symbol=tick.symbol, orders=tuple(orders), clamps=tuple(clamps))
