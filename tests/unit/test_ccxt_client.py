"""Unit tests for the ccxt exchange adapter."""
from unittest.mock import AsyncMock, MagicMock, call, patch

import ccxt.async_support as ccxt
import pytest

from gridengine.core.config import UserConfig
from gridengine.core.errors import ExchangeError, OrderRejected, TransientExchangeError
from gridengine.core.models import GridOrderType, Order, OrderStatus, PositionSide
from gridengine.exchange.ccxt_client import (
    CcxtExchange,
    RetryConfig,
    map_ccxt_error,
    order_from_ccxt,
    with_retry,
)

SLEEP = "gridengine.exchange.ccxt_client.asyncio.sleep"


@pytest.fixture
def mock_ccxt():
    """ccxt exchange double with markets already loaded."""
    exchange = MagicMock()
    exchange.markets = {"BTC/USDT:USDT": {}}
    exchange.precisionMode = ccxt.TICK_SIZE
    exchange.load_markets = AsyncMock()
    exchange.close = AsyncMock()
    exchange.create_order = AsyncMock(return_value={"id": 12345})
    exchange.cancel_order = AsyncMock(return_value={})
    exchange.fetch_open_orders = AsyncMock(return_value=[])
    exchange.fetch_balance = AsyncMock(return_value={"total": {"USDT": 500.0}})
    exchange.fetch_positions = AsyncMock(return_value=[])
    exchange.transfer = AsyncMock(return_value={"id": "t1"})
    return exchange


@pytest.fixture
def client(mock_ccxt):
    return CcxtExchange(UserConfig(exchange="bybit", key="k", secret="s"), exchange=mock_ccxt)


@pytest.fixture
def buy_order(symbol):
    return Order.from_grid(symbol, 0.5, 98.0, GridOrderType.ENTRY_INITIAL_NORMAL_LONG)


# =============================================================================
# Retry Decorator Tests
# =============================================================================

class TestRetryDecorator:
    """Test retry decorator functionality."""

    def test_retry_config_defaults(self):
        assert RetryConfig.DEFAULT_MAX_RETRIES == 3
        assert RetryConfig.DEFAULT_BASE_DELAY == 1.0
        assert RetryConfig.RATE_LIMIT_BASE_DELAY == 60.0

    @pytest.mark.asyncio
    async def test_retry_success_first_attempt(self):
        """Test that successful calls don't retry."""
        call_count = 0

        @with_retry(max_retries=3)
        async def successful_function():
            nonlocal call_count
            call_count += 1
            return "success"

        assert await successful_function() == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_network_error_backs_off(self):
        """Test exponential backoff on network errors."""
        call_count = 0

        @with_retry(max_retries=3)
        async def failing_function():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ccxt.NetworkError("Network error")
            return "success"

        with patch(SLEEP, new_callable=AsyncMock) as mock_sleep:
            result = await failing_function()

        assert result == "success"
        assert call_count == 3
        assert mock_sleep.await_args_list == [call(1.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_retry_exhausted_raises(self):
        @with_retry(max_retries=2)
        async def always_fails():
            raise ccxt.RequestTimeout("Always fails")

        with patch(SLEEP, new_callable=AsyncMock):
            with pytest.raises(ccxt.RequestTimeout, match="Always fails"):
                await always_fails()

    @pytest.mark.asyncio
    async def test_no_retry_on_non_retryable_error(self):
        call_count = 0

        @with_retry(max_retries=3)
        async def raises_invalid_order():
            nonlocal call_count
            call_count += 1
            raise ccxt.InvalidOrder("bad price")

        with pytest.raises(ccxt.InvalidOrder):
            await raises_invalid_order()
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_uses_long_delay(self):
        """Test special handling for rate limit errors."""
        call_count = 0

        @with_retry(max_retries=2, base_delay=0.01)
        async def rate_limit_hit():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise ccxt.RateLimitExceeded("Rate limit")
            return "success"

        with patch(SLEEP, new_callable=AsyncMock) as mock_sleep:
            assert await rate_limit_hit() == "success"

        mock_sleep.assert_awaited_once_with(RetryConfig.RATE_LIMIT_BASE_DELAY)


# =============================================================================
# Error Mapping Tests
# =============================================================================

class TestErrorMapping:
    """Test translation of ccxt errors."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (ccxt.InsufficientFunds("no margin"), OrderRejected),
            (ccxt.InvalidOrder("bad qty"), OrderRejected),
            (ccxt.NetworkError("timeout"), TransientExchangeError),
            (ccxt.AuthenticationError("bad key"), TransientExchangeError),
            (ccxt.ExchangeError("boom"), ExchangeError),
        ],
    )
    def test_map_ccxt_error(self, error, expected):
        mapped = map_ccxt_error(error, symbol="BTC/USDT:USDT")
        assert type(mapped) is expected
        assert mapped.symbol == "BTC/USDT:USDT"

    def test_transient_flag(self):
        assert map_ccxt_error(ccxt.NetworkError("x")).transient
        assert not map_ccxt_error(ccxt.InvalidOrder("x")).transient


class TestOrderFromCcxt:
    """Test parsing of ccxt order structures."""

    def test_reduce_only_buy_closes_short(self):
        order = order_from_ccxt(
            {"id": 7, "symbol": "BTC/USDT:USDT", "side": "buy", "amount": 2.0, "remaining": 1.5,
             "price": 99.0, "reduceOnly": True}
        )
        assert order.id == "7"
        assert order.order_type == GridOrderType.CLOSE_GRID_SHORT
        assert order.position_side == PositionSide.SHORT
        assert order.qty == 1.5
        assert order.status == OrderStatus.OPEN

    def test_plain_sell_is_short_entry(self):
        order = order_from_ccxt(
            {"id": "a", "symbol": "BTC/USDT:USDT", "side": "sell", "amount": 1.0, "price": 101.0, "info": {}}
        )
        assert order.order_type == GridOrderType.ENTRY_GRID_NORMAL_SHORT
        assert not order.reduce_only


# =============================================================================
# CcxtExchange Tests
# =============================================================================

class TestCcxtExchangeOrders:
    """Test order placement and cancellation."""

    @pytest.mark.asyncio
    async def test_place_order(self, client, mock_ccxt, buy_order):
        order_id = await client.place_order(buy_order)

        assert order_id == "12345"
        mock_ccxt.create_order.assert_awaited_once_with(
            "BTC/USDT:USDT", "limit", "buy", 0.5, 98.0, {"reduceOnly": False}
        )

    @pytest.mark.asyncio
    async def test_post_only(self, mock_ccxt, buy_order):
        client = CcxtExchange(UserConfig(exchange="bybit"), time_in_force="post_only", exchange=mock_ccxt)
        await client.place_order(buy_order)
        params = mock_ccxt.create_order.await_args.args[5]
        assert params["postOnly"] is True

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_rejection(self, client, mock_ccxt, buy_order):
        mock_ccxt.create_order = AsyncMock(side_effect=ccxt.InsufficientFunds("Insufficient funds"))

        with pytest.raises(OrderRejected) as exc_info:
            await client.place_order(buy_order)

        assert exc_info.value.symbol == "BTC/USDT:USDT"
        mock_ccxt.create_order.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_network_failure_surfaces_as_transient(self, client, mock_ccxt, buy_order):
        mock_ccxt.create_order = AsyncMock(side_effect=ccxt.NetworkError("down"))

        with patch(SLEEP, new_callable=AsyncMock):
            with pytest.raises(TransientExchangeError):
                await client.place_order(buy_order)

        assert mock_ccxt.create_order.await_count == RetryConfig.DEFAULT_MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_cancel_order(self, client, mock_ccxt):
        assert await client.cancel_order("1", "BTC/USDT:USDT") is True
        mock_ccxt.cancel_order.assert_awaited_once_with("1", "BTC/USDT:USDT")

    @pytest.mark.asyncio
    async def test_cancel_missing_order(self, client, mock_ccxt):
        mock_ccxt.cancel_order = AsyncMock(side_effect=ccxt.OrderNotFound("gone"))
        assert await client.cancel_order("1", "BTC/USDT:USDT") is False


class TestCcxtExchangeAccount:
    """Test account state queries."""

    @pytest.mark.asyncio
    async def test_fetch_account_state(self, client, mock_ccxt):
        mock_ccxt.fetch_positions = AsyncMock(
            return_value=[
                {"symbol": "BTC/USDT:USDT", "side": "long", "contracts": 0.2, "entryPrice": 95.0},
                {"symbol": "ETH/USDT:USDT", "side": "short", "contracts": 1.0, "entryPrice": 10.0},
            ]
        )
        mock_ccxt.fetch_open_orders = AsyncMock(
            return_value=[
                {"id": "o1", "symbol": "BTC/USDT:USDT", "side": "sell", "amount": 0.2, "price": 97.0,
                 "reduceOnly": True},
                {"id": "o2", "symbol": "BTC/USDT:USDT", "side": "sell", "amount": 0.2, "price": None},
            ]
        )

        account = await client.fetch_account_state(["BTC/USDT:USDT"])

        assert account.balance == 500.0
        assert list(account.positions) == ["BTC/USDT:USDT"]
        position = account.positions["BTC/USDT:USDT"]
        assert position.side == PositionSide.LONG
        assert position.size == 0.2
        assert position.price == 95.0
        # Orders without a price (market/stop) are not grid orders
        assert [o.id for o in account.open_orders] == ["o1"]

    @pytest.mark.asyncio
    async def test_fetch_balance_missing_asset(self, client):
        assert await client.fetch_balance("BTC") == 0.0

    @pytest.mark.asyncio
    async def test_transfer(self, client, mock_ccxt):
        await client.transfer("USDT", 10.0, "future", "spot")
        mock_ccxt.transfer.assert_awaited_once_with("USDT", 10.0, "future", "spot")


class TestCcxtExchangeMarketData:
    """Test instrument rules, market lists and price polling."""

    @pytest.mark.asyncio
    async def test_exchange_params_tick_size(self, client, mock_ccxt):
        mock_ccxt.market = MagicMock(
            return_value={
                "precision": {"amount": 0.001, "price": 0.1},
                "limits": {"amount": {"min": 0.001}, "cost": {"min": 5.0}},
                "contractSize": 1.0,
                "inverse": False,
            }
        )

        params = await client.fetch_exchange_params("BTC/USDT:USDT")

        assert params.qty_step == 0.001
        assert params.price_step == 0.1
        assert params.min_qty == 0.001
        assert params.min_cost == 5.0

    @pytest.mark.asyncio
    async def test_exchange_params_decimal_places(self, client, mock_ccxt):
        mock_ccxt.precisionMode = ccxt.DECIMAL_PLACES
        mock_ccxt.market = MagicMock(return_value={"precision": {"amount": 3, "price": 2}, "limits": {}})

        params = await client.fetch_exchange_params("BTC/USDT:USDT")

        assert params.qty_step == pytest.approx(0.001)
        assert params.price_step == pytest.approx(0.01)
        assert params.min_qty == 0.0

    @pytest.mark.asyncio
    async def test_fetch_markets(self, client, mock_ccxt):
        mock_ccxt.markets = {
            "BTC/USDT:USDT": {"active": True, "swap": True, "linear": True, "quote": "USDT", "created": 1},
        }
        mock_ccxt.fetch_tickers = AsyncMock(return_value={"BTC/USDT:USDT": {"quoteVolume": 1e9}})

        markets = await client.fetch_markets()

        assert markets == [
            {
                "symbol": "BTC/USDT:USDT",
                "active": True,
                "swap": True,
                "linear": True,
                "quote": "USDT",
                "created": 1,
                "quote_volume": 1e9,
            }
        ]

    @pytest.mark.asyncio
    async def test_stream_price_skips_repeated_timestamps(self, mock_ccxt):
        mock_ccxt.fetch_ticker = AsyncMock(
            side_effect=[
                {"timestamp": 1000, "last": 100.0, "bid": 99.9, "ask": 100.1},
                {"timestamp": 1000, "last": 100.0},
                {"timestamp": 2000, "last": 101.0},
            ]
        )
        client = CcxtExchange(UserConfig(exchange="bybit"), poll_interval=0.0, exchange=mock_ccxt)

        ticks = []
        async for tick in client.stream_price("BTC/USDT:USDT"):
            ticks.append(tick)
            if len(ticks) == 2:
                break

        assert [t.timestamp for t in ticks] == [1000, 2000]
        assert ticks[0].bid == 99.9
        assert ticks[1].price == 101.0

    @pytest.mark.asyncio
    async def test_close(self, client, mock_ccxt):
        await client.close()
        mock_ccxt.close.assert_awaited_once()
