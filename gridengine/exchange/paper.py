"""In-memory paper trading exchange.

Prices come from preloaded tick series; resting orders fill with the same
rules the backtest simulator uses (limit price crossing, fill at the order
price, maker fee, futures accounting).
"""

import asyncio
from dataclasses import replace
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import structlog

from gridengine.backtest.simulator import apply_fill
from gridengine.core.errors import ExchangeError, OrderRejected
from gridengine.core.models import (
    AccountState,
    ExchangeParams,
    Fill,
    MarketTick,
    Order,
    OrderStatus,
)
from gridengine.exchange.base import ExchangeAdapter

logger = structlog.get_logger(__name__)


class PaperExchange(ExchangeAdapter):
    """Exchange adapter that never leaves the process.

    Args:
        series: Tick series per symbol, replayed by ``stream_price``.
        balance: Starting futures wallet balance in quote currency.
        exchange_params: Trading rules, shared by every symbol unless
            overridden in ``params_by_symbol``.
        maker_fee: Fee rate charged on every fill.
        tick_delay: Seconds to sleep between streamed ticks.
    """

    name = "paper"

    def __init__(
        self,
        series: Optional[Dict[str, Sequence[MarketTick]]] = None,
        balance: float = 1000.0,
        exchange_params: Optional[ExchangeParams] = None,
        params_by_symbol: Optional[Dict[str, ExchangeParams]] = None,
        maker_fee: float = 0.0002,
        leverage: float = 1.0,
        tick_delay: float = 0.0,
        markets: Optional[List[Dict[str, Any]]] = None,
    ):
        self.series = dict(series or {})
        self.exchange_params = exchange_params or ExchangeParams()
        self.params_by_symbol = dict(params_by_symbol or {})
        self.maker_fee = maker_fee
        self.tick_delay = tick_delay
        self.markets = list(markets or [])
        self.account = AccountState(balance=balance, leverage=leverage)
        self.spot_balances: Dict[str, float] = {}
        self.orders: Dict[str, Order] = {}
        self.fills: List[Fill] = []
        self.last_prices: Dict[str, float] = {}
        self._order_counter = 0

    def _params(self, symbol: str) -> ExchangeParams:
        return self.params_by_symbol.get(symbol, self.exchange_params)

    def _next_id(self) -> str:
        self._order_counter += 1
        return f"paper-{self._order_counter}"

    # =========================================================================
    # Orders
    # =========================================================================

    async def place_order(self, order: Order) -> str:
        ex = self._params(order.symbol)
        if order.qty <= 0.0 or order.price <= 0.0:
            raise OrderRejected(f"invalid qty/price {order.qty}@{order.price}", symbol=order.symbol)
        if order.qty < ex.min_qty:
            raise OrderRejected(f"qty {order.qty} below min_qty {ex.min_qty}", symbol=order.symbol)
        order_id = self._next_id()
        self.orders[order_id] = order.accepted(order_id)
        logger.debug("paper_exchange.order_placed", order_id=order_id, symbol=order.symbol, price=order.price)
        return order_id

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        order = self.orders.pop(order_id, None)
        if order is None:
            return False
        logger.debug("paper_exchange.order_cancelled", order_id=order_id, symbol=symbol)
        return True

    async def fetch_open_orders(self, symbol: str) -> List[Order]:
        return [o for o in self.orders.values() if o.symbol == symbol]

    # =========================================================================
    # Account
    # =========================================================================

    async def fetch_account_state(self, symbols: Sequence[str]) -> AccountState:
        positions = {s: p for s, p in self.account.positions.items() if s in symbols and not p.is_flat}
        open_orders = tuple(o for o in self.orders.values() if o.symbol in symbols)
        return replace(self.account, positions=positions, open_orders=open_orders)

    async def fetch_balance(self, asset: str) -> float:
        return self.account.balance

    async def transfer(
        self, asset: str, amount: float, from_account: str, to_account: str
    ) -> Optional[Dict[str, Any]]:
        if amount > self.account.balance:
            raise ExchangeError(f"cannot transfer {amount} {asset}, balance {self.account.balance}")
        self.account = replace(self.account, balance=self.account.balance - amount)
        self.spot_balances[asset] = self.spot_balances.get(asset, 0.0) + amount
        return {"asset": asset, "amount": amount, "from": from_account, "to": to_account}

    # =========================================================================
    # Market data
    # =========================================================================

    async def fetch_exchange_params(self, symbol: str) -> ExchangeParams:
        return self._params(symbol)

    async def fetch_markets(self) -> List[Dict[str, Any]]:
        return list(self.markets)

    async def stream_price(self, symbol: str) -> AsyncIterator[MarketTick]:
        """Replay the symbol's series, filling crossed orders before each tick
        is handed to the caller. Ends when the series is exhausted."""
        for tick in self.series.get(symbol, ()):
            self.process_tick(tick)
            yield tick
            await asyncio.sleep(self.tick_delay)

    def process_tick(self, tick: MarketTick) -> List[Fill]:
        """Fill every resting order of the tick's symbol that the price crosses."""
        if not tick.is_valid():
            return []
        self.last_prices[tick.symbol] = tick.price
        ex = self._params(tick.symbol)
        crossed = [o for o in self.orders.values() if o.symbol == tick.symbol and o.crosses(tick.price)]
        # Entries before closes, matching the simulator default
        crossed.sort(key=lambda o: 0 if o.is_entry else 1)
        new_fills = []
        for order in crossed:
            del self.orders[order.id]
            result = apply_fill(
                self.account, order, order.price, tick.timestamp, len(self.fills), self.maker_fee, ex
            )
            if result.fill is None:
                continue
            self.account = result.account
            self.fills.append(result.fill)
            new_fills.append(result.fill)
            logger.info(
                "paper_exchange.order_filled",
                order_id=order.id,
                symbol=order.symbol,
                order_type=order.order_type.value,
                qty=result.fill.qty,
                price=result.fill.price,
                status=OrderStatus.FILLED.value,
            )
        return new_fills
