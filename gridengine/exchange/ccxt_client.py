"""ccxt-backed exchange adapter.

Works with any ccxt exchange that supports linear perpetual swaps. Network
failures are retried with exponential backoff; once retries are exhausted,
or for any other ccxt error, the failure is re-raised as one of the
gridengine exchange errors.
"""

import asyncio
import functools
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import ccxt.async_support as ccxt
import structlog

from gridengine.core.config import UserConfig
from gridengine.core.errors import ExchangeError, OrderRejected, TransientExchangeError
from gridengine.core.models import (
    AccountState,
    ExchangeParams,
    GridOrderType,
    MarketTick,
    Order,
    OrderStatus,
    PositionSide,
    PositionState,
    Side,
)
from gridengine.exchange.base import ExchangeAdapter

logger = structlog.get_logger(__name__)


class RetryConfig:
    """Configuration for retry logic."""

    DEFAULT_MAX_RETRIES = 3
    DEFAULT_BASE_DELAY = 1.0  # seconds
    DEFAULT_MAX_DELAY = 30.0  # seconds
    DEFAULT_EXPONENTIAL_BASE = 2.0
    RATE_LIMIT_BASE_DELAY = 60.0
    RATE_LIMIT_MAX_DELAY = 300.0


def with_retry(
    max_retries: int = RetryConfig.DEFAULT_MAX_RETRIES,
    base_delay: float = RetryConfig.DEFAULT_BASE_DELAY,
    max_delay: float = RetryConfig.DEFAULT_MAX_DELAY,
    exponential_base: float = RetryConfig.DEFAULT_EXPONENTIAL_BASE,
    retryable_exceptions: tuple = (ccxt.NetworkError, ccxt.ExchangeNotAvailable, ccxt.RequestTimeout),
):
    """Decorator for adding retry logic with exponential backoff.

    Rate limit errors back off on a longer schedule than other network
    errors.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retryable_exceptions: Tuple of exceptions that should trigger a retry
    """

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except ccxt.RateLimitExceeded as e:
                    # Subclass of NetworkError, so it has to be caught first
                    last_exception = e
                    if attempt >= max_retries:
                        break
                    delay = min(
                        RetryConfig.RATE_LIMIT_BASE_DELAY * (2**attempt),
                        RetryConfig.RATE_LIMIT_MAX_DELAY,
                    )
                    logger.warning(f"{func.__name__}.rate_limit_hit", attempt=attempt + 1, delay=delay)
                    await asyncio.sleep(delay)
                except retryable_exceptions as e:
                    last_exception = e
                    if attempt >= max_retries:
                        break
                    delay = min(base_delay * (exponential_base**attempt), max_delay)
                    logger.warning(
                        f"{func.__name__}.retry_attempt",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            logger.error(
                f"{func.__name__}.max_retries_exceeded",
                max_retries=max_retries,
                last_error=str(last_exception),
            )
            raise last_exception

        return wrapper

    return decorator


def map_ccxt_error(error: Exception, symbol: Optional[str] = None) -> ExchangeError:
    """Translate a ccxt exception into the gridengine taxonomy."""
    if isinstance(error, (ccxt.InsufficientFunds, ccxt.InvalidOrder)):
        return OrderRejected(str(error), symbol=symbol)
    if isinstance(error, (ccxt.NetworkError, ccxt.AuthenticationError)):
        return TransientExchangeError(str(error), symbol=symbol)
    return ExchangeError(str(error), symbol=symbol)


def order_from_ccxt(raw: Dict[str, Any]) -> Order:
    """Build an open Order from a ccxt order structure.

    The detailed grid label is not known to the exchange; it is inferred from
    side and reduce-only flag.
    """
    side = Side(raw["side"])
    reduce_only = bool(raw.get("reduceOnly") or (raw.get("info") or {}).get("reduceOnly"))
    if side == Side.BUY:
        order_type = GridOrderType.CLOSE_GRID_SHORT if reduce_only else GridOrderType.ENTRY_GRID_NORMAL_LONG
    else:
        order_type = GridOrderType.CLOSE_GRID_LONG if reduce_only else GridOrderType.ENTRY_GRID_NORMAL_SHORT
    return Order(
        symbol=raw["symbol"],
        side=side,
        position_side=order_type.position_side,
        qty=float(raw.get("remaining") or raw["amount"]),
        price=float(raw["price"]),
        order_type=order_type,
        kind=order_type.kind,
        id=str(raw["id"]),
        status=OrderStatus.OPEN,
        reduce_only=reduce_only,
    )


class CcxtExchange(ExchangeAdapter):
    """ExchangeAdapter implementation on top of ccxt.async_support."""

    def __init__(
        self,
        user: UserConfig,
        quote: str = "USDT",
        leverage: float = 1.0,
        time_in_force: str = "good_till_cancelled",
        poll_interval: float = 1.0,
        exchange: Optional[ccxt.Exchange] = None,
    ):
        self.name = user.exchange
        self.user = user
        self.quote = quote
        self.leverage = leverage
        self.time_in_force = time_in_force
        self.poll_interval = poll_interval
        self.exchange = exchange or self._create_exchange(user)

    @staticmethod
    def _create_exchange(user: UserConfig) -> ccxt.Exchange:
        ccxt_config = {
            "apiKey": user.key,
            "secret": user.secret,
            "enableRateLimit": True,
            "options": {"defaultType": "swap", "adjustForTimeDifference": True},
        }
        if user.passphrase:
            ccxt_config["password"] = user.passphrase
        if user.wallet_address:
            ccxt_config["walletAddress"] = user.wallet_address
        if user.private_key:
            ccxt_config["privateKey"] = user.private_key
        return getattr(ccxt, user.exchange)(ccxt_config)

    # =========================================================================
    # Plumbing
    # =========================================================================

    @with_retry()
    async def _request(self, method: str, *args, **kwargs):
        return await getattr(self.exchange, method)(*args, **kwargs)

    async def _call(self, method: str, *args, symbol: Optional[str] = None, **kwargs):
        try:
            return await self._request(method, *args, **kwargs)
        except ccxt.BaseError as e:
            logger.error("ccxt_exchange.request_failed", method=method, symbol=symbol, error=str(e))
            raise map_ccxt_error(e, symbol) from e

    async def initialize(self) -> None:
        await self._call("load_markets")
        logger.info("ccxt_exchange.initialized", exchange=self.name, markets=len(self.exchange.markets))

    async def close(self) -> None:
        await self.exchange.close()
        logger.info("ccxt_exchange.closed", exchange=self.name)

    # =========================================================================
    # Orders
    # =========================================================================

    async def place_order(self, order: Order) -> str:
        params: Dict[str, Any] = {"reduceOnly": order.reduce_only}
        if self.time_in_force == "post_only":
            params["postOnly"] = True
        result = await self._call(
            "create_order",
            order.symbol,
            "limit",
            order.side.value,
            order.qty,
            order.price,
            params,
            symbol=order.symbol,
        )
        order_id = str(result["id"])
        logger.info(
            "ccxt_exchange.order_created",
            order_id=order_id,
            symbol=order.symbol,
            side=order.side.value,
            qty=order.qty,
            price=order.price,
            order_type=order.order_type.value,
        )
        return order_id

    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        try:
            await self._request("cancel_order", order_id, symbol)
        except ccxt.OrderNotFound:
            logger.warning("ccxt_exchange.cancel_order_not_found", order_id=order_id, symbol=symbol)
            return False
        except ccxt.BaseError as e:
            raise map_ccxt_error(e, symbol) from e
        logger.info("ccxt_exchange.order_cancelled", order_id=order_id, symbol=symbol)
        return True

    async def fetch_open_orders(self, symbol: str) -> List[Order]:
        raw_orders = await self._call("fetch_open_orders", symbol, symbol=symbol)
        return [order_from_ccxt(o) for o in raw_orders if o.get("price")]

    # =========================================================================
    # Account
    # =========================================================================

    async def fetch_balance(self, asset: str) -> float:
        balance = await self._call("fetch_balance")
        return float((balance.get("total") or {}).get(asset) or 0.0)

    async def fetch_account_state(self, symbols: Sequence[str]) -> AccountState:
        balance = await self.fetch_balance(self.quote)
        raw_positions = await self._call("fetch_positions", list(symbols))
        positions: Dict[str, PositionState] = {}
        for p in raw_positions:
            size = abs(float(p.get("contracts") or 0.0))
            if p.get("symbol") not in symbols or size == 0.0:
                continue
            side = PositionSide.LONG if p.get("side") == "long" else PositionSide.SHORT
            positions[p["symbol"]] = PositionState(
                symbol=p["symbol"], side=side, size=size, price=float(p.get("entryPrice") or 0.0)
            )
        open_orders: List[Order] = []
        for symbol in symbols:
            open_orders.extend(await self.fetch_open_orders(symbol))
        return AccountState(
            balance=balance, leverage=self.leverage, positions=positions, open_orders=tuple(open_orders)
        )

    async def transfer(
        self, asset: str, amount: float, from_account: str, to_account: str
    ) -> Optional[Dict[str, Any]]:
        result = await self._call("transfer", asset, amount, from_account, to_account)
        logger.info("ccxt_exchange.transfer", asset=asset, amount=amount, source=from_account, target=to_account)
        return result

    # =========================================================================
    # Market data
    # =========================================================================

    async def fetch_exchange_params(self, symbol: str) -> ExchangeParams:
        if not self.exchange.markets:
            await self.initialize()
        market = self.exchange.market(symbol)
        precision = market.get("precision") or {}
        limits = market.get("limits") or {}

        def step(value: Optional[float], fallback: float) -> float:
            if value is None:
                return fallback
            if self.exchange.precisionMode == ccxt.TICK_SIZE:
                return float(value)
            return 10.0 ** -int(value)

        return ExchangeParams(
            qty_step=step(precision.get("amount"), 0.001),
            price_step=step(precision.get("price"), 0.01),
            min_qty=float((limits.get("amount") or {}).get("min") or 0.0),
            min_cost=float((limits.get("cost") or {}).get("min") or 0.0),
            c_mult=float(market.get("contractSize") or 1.0),
            inverse=bool(market.get("inverse")),
        )

    async def fetch_markets(self) -> List[Dict[str, Any]]:
        if not self.exchange.markets:
            await self.initialize()
        tickers = await self._call("fetch_tickers")
        markets = []
        for symbol, market in self.exchange.markets.items():
            ticker = tickers.get(symbol) or {}
            markets.append(
                {
                    "symbol": symbol,
                    "active": bool(market.get("active", True)),
                    "swap": bool(market.get("swap")),
                    "linear": bool(market.get("linear")),
                    "quote": market.get("quote"),
                    "created": market.get("created"),
                    "quote_volume": float(ticker.get("quoteVolume") or 0.0),
                }
            )
        return markets

    async def stream_price(self, symbol: str) -> AsyncIterator[MarketTick]:
        """Poll the ticker; yields a tick only when its timestamp advances."""
        last_timestamp = None
        while True:
            ticker = await self._call("fetch_ticker", symbol, symbol=symbol)
            timestamp = int(ticker.get("timestamp") or self.exchange.milliseconds())
            if last_timestamp is None or timestamp > last_timestamp:
                last_timestamp = timestamp
                yield MarketTick(
                    symbol=symbol,
                    timestamp=timestamp,
                    price=float(ticker["last"]) if ticker.get("last") is not None else float("nan"),
                    bid=ticker.get("bid"),
                    ask=ticker.get("ask"),
                    volume=float(ticker.get("baseVolume") or 0.0),
                )
            await asyncio.sleep(self.poll_interval)
