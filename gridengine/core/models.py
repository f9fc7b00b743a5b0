"""Data models for gridengine.

Everything the strategy engine reads or produces lives here. These are frozen
dataclasses rather than pydantic models: the simulator creates millions of them
per optimizer run, and the engine contract requires that inputs are never
mutated. Persisted results (``BacktestResult``, ``OptimizationRun``) are
pydantic models that hold these records as fields and serialize them.

Quantities are always positive; direction is carried by ``side`` and
``position_side``. Timestamps are integer milliseconds since the epoch.
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Optional, Tuple


# =============================================================================
# Enums
# =============================================================================


class Side(str, Enum):
    """Order side - buy or sell."""

    BUY = "buy"
    SELL = "sell"


class PositionSide(str, Enum):
    """Position side - long, short, or flat."""

    LONG = "long"
    SHORT = "short"
    FLAT = "flat"


class OrderKind(str, Enum):
    """Coarse order purpose."""

    ENTRY = "entry"
    TAKE_PROFIT = "take_profit"
    STOP = "stop"


class OrderStatus(str, Enum):
    """Order lifecycle status."""

    PENDING = "pending"  # Desired, not yet accepted by an exchange
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"


class GridOrderType(str, Enum):
    """Detailed label telling which rule produced an order."""

    ENTRY_INITIAL_NORMAL_LONG = "entry_initial_normal_long"
    ENTRY_INITIAL_PARTIAL_LONG = "entry_initial_partial_long"
    ENTRY_TRAILING_NORMAL_LONG = "entry_trailing_normal_long"
    ENTRY_TRAILING_CROPPED_LONG = "entry_trailing_cropped_long"
    ENTRY_GRID_NORMAL_LONG = "entry_grid_normal_long"
    ENTRY_GRID_CROPPED_LONG = "entry_grid_cropped_long"
    ENTRY_GRID_INFLATED_LONG = "entry_grid_inflated_long"
    ENTRY_UNSTUCK_LONG = "entry_unstuck_long"
    CLOSE_GRID_LONG = "close_grid_long"
    CLOSE_TRAILING_LONG = "close_trailing_long"
    CLOSE_UNSTUCK_LONG = "close_unstuck_long"
    CLOSE_LIQUIDATION_LONG = "close_liquidation_long"

    ENTRY_INITIAL_NORMAL_SHORT = "entry_initial_normal_short"
    ENTRY_INITIAL_PARTIAL_SHORT = "entry_initial_partial_short"
    ENTRY_TRAILING_NORMAL_SHORT = "entry_trailing_normal_short"
    ENTRY_TRAILING_CROPPED_SHORT = "entry_trailing_cropped_short"
    ENTRY_GRID_NORMAL_SHORT = "entry_grid_normal_short"
    ENTRY_GRID_CROPPED_SHORT = "entry_grid_cropped_short"
    ENTRY_GRID_INFLATED_SHORT = "entry_grid_inflated_short"
    ENTRY_UNSTUCK_SHORT = "entry_unstuck_short"
    CLOSE_GRID_SHORT = "close_grid_short"
    CLOSE_TRAILING_SHORT = "close_trailing_short"
    CLOSE_UNSTUCK_SHORT = "close_unstuck_short"
    CLOSE_LIQUIDATION_SHORT = "close_liquidation_short"

    @property
    def is_entry(self) -> bool:
        return self.value.startswith("entry_")

    @property
    def is_trailing(self) -> bool:
        return "_trailing_" in self.value

    @property
    def position_side(self) -> "PositionSide":
        return PositionSide.LONG if self.value.endswith("_long") else PositionSide.SHORT

    @property
    def side(self) -> Side:
        """Exchange side implied by the label."""
        long = self.position_side == PositionSide.LONG
        if self.is_entry:
            return Side.BUY if long else Side.SELL
        return Side.SELL if long else Side.BUY

    @property
    def kind(self) -> OrderKind:
        if self.is_entry:
            return OrderKind.ENTRY
        if self in (GridOrderType.CLOSE_LIQUIDATION_LONG, GridOrderType.CLOSE_LIQUIDATION_SHORT):
            return OrderKind.STOP
        return OrderKind.TAKE_PROFIT


# =============================================================================
# Market
# =============================================================================


@dataclass(frozen=True)
class MarketTick:
    """A single price observation for one instrument."""

    symbol: str
    timestamp: int
    price: float
    bid: Optional[float] = None
    ask: Optional[float] = None
    volume: float = 0.0

    @property
    def best_bid(self) -> float:
        return self.bid if self.bid is not None else self.price

    @property
    def best_ask(self) -> float:
        return self.ask if self.ask is not None else self.price

    def is_valid(self) -> bool:
        """Price is a finite positive number."""
        return (
            isinstance(self.price, (int, float))
            and math.isfinite(self.price)
            and self.price > 0
        )


@dataclass(frozen=True)
class ExchangeParams:
    """Instrument trading rules."""

    qty_step: float = 0.00001
    price_step: float = 0.00001
    min_qty: float = 0.00001
    min_cost: float = 1.0
    c_mult: float = 1.0
    inverse: bool = False


@dataclass(frozen=True)
class EMABands:
    """Lower and upper envelope of the configured EMAs."""

    lower: float = 0.0
    upper: float = 0.0

    @property
    def ready(self) -> bool:
        return self.lower > 0 and self.upper > 0


@dataclass(frozen=True)
class TrailingPriceBundle:
    """Price extremes tracked since the position last changed."""

    min_since_open: float = math.inf
    max_since_min: float = 0.0
    max_since_open: float = 0.0
    min_since_max: float = math.inf


# =============================================================================
# Orders and positions
# =============================================================================


@dataclass(frozen=True)
class Order:
    """A limit order, desired or resting.

    Desired orders come out of the strategy engine with status PENDING and no
    id. The simulator or an exchange adapter assigns the id when it accepts
    the order.
    """

    symbol: str
    side: Side
    position_side: PositionSide
    qty: float
    price: float
    order_type: GridOrderType
    kind: OrderKind = OrderKind.ENTRY
    id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    reduce_only: bool = False

    @classmethod
    def from_grid(cls, symbol: str, qty: float, price: float, order_type: GridOrderType) -> "Order":
        return cls(
            symbol=symbol,
            side=order_type.side,
            position_side=order_type.position_side,
            qty=abs(qty),
            price=price,
            order_type=order_type,
            kind=order_type.kind,
            reduce_only=not order_type.is_entry,
        )

    def accepted(self, order_id: str) -> "Order":
        return replace(self, id=order_id, status=OrderStatus.OPEN)

    @property
    def is_entry(self) -> bool:
        return self.kind == OrderKind.ENTRY

    def crosses(self, price: float) -> bool:
        """Whether a trade at ``price`` fills this order."""
        if self.side == Side.BUY:
            return price <= self.price
        return price >= self.price


@dataclass(frozen=True)
class PositionState:
    """Aggregate holding in one instrument."""

    symbol: str
    side: PositionSide = PositionSide.FLAT
    size: float = 0.0
    price: float = 0.0

    @property
    def is_flat(self) -> bool:
        return self.side == PositionSide.FLAT or self.size == 0.0

    def size_for(self, side: PositionSide) -> float:
        return self.size if self.side == side else 0.0

    def price_for(self, side: PositionSide) -> float:
        return self.price if self.side == side else 0.0

    def unrealized_pnl(self, price: float, c_mult: float = 1.0) -> float:
        if self.is_flat:
            return 0.0
        if self.side == PositionSide.LONG:
            return self.size * c_mult * (price - self.price)
        return self.size * c_mult * (self.price - price)


@dataclass(frozen=True)
class AccountState:
    """Balance, positions and resting orders at one point in time."""

    balance: float
    leverage: float = 1.0
    positions: Dict[str, PositionState] = field(default_factory=dict)
    open_orders: Tuple[Order, ...] = ()
    # Realized PnL running sum and its peak, for the unstuck loss allowance
    pnl_cumsum_last: float = 0.0
    pnl_cumsum_max: float = 0.0

    def position(self, symbol: str) -> PositionState:
        return self.positions.get(symbol) or PositionState(symbol=symbol)

    def orders_for(self, symbol: str) -> Tuple[Order, ...]:
        return tuple(o for o in self.open_orders if o.symbol == symbol)

    def with_position(self, position: PositionState) -> "AccountState":
        positions = dict(self.positions)
        positions[position.symbol] = position
        return replace(self, positions=positions)

    def equity(self, prices: Dict[str, float], c_mult: float = 1.0) -> float:
        total = self.balance
        for symbol, position in self.positions.items():
            if symbol in prices:
                total += position.unrealized_pnl(prices[symbol], c_mult)
        return total


# =============================================================================
# Simulation records
# =============================================================================


@dataclass(frozen=True)
class Fill:
    """One executed order as recorded in a trade log."""

    index: int
    timestamp: int
    symbol: str
    order_type: GridOrderType
    side: Side
    qty: float
    price: float
    fee_paid: float
    pnl: float
    balance: float
    position_size: float
    position_price: float


@dataclass(frozen=True)
class EquitySample:
    timestamp: int
    balance: float
    equity: float
    position_size: float = 0.0
    position_price: float = 0.0
    wallet_exposure: float = 0.0
