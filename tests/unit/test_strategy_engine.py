"""Unit tests for the strategy engine and its entry/close rules."""
import math
from dataclasses import replace

import pytest

from gridengine.core.config import BotSideConfig, StrategyConfig
from gridengine.core.errors import InvalidConfiguration
from gridengine.core.models import (
    AccountState,
    EMABands,
    GridOrderType,
    MarketTick,
    OrderKind,
    PositionSide,
    PositionState,
    Side,
    TrailingPriceBundle,
)
from gridengine.strategies.closes import calc_closes, generate_raw_close_prices
from gridengine.strategies.engine import Decision, NoDecision, StrategyEngine
from gridengine.strategies.entries import calc_entries, calc_initial_entry_price, calc_reentry_price
from gridengine.strategies.market_state import MarketState, MarketStateTracker, update_trailing
from gridengine.strategies.utils import calc_wallet_exposure_if_filled, qty_to_cost


@pytest.fixture
def engine():
    return StrategyEngine()


# =============================================================================
# Flat Position Tests
# =============================================================================

class TestFlatPosition:
    """Test decisions for a symbol without a position."""

    def test_single_initial_entry_below_distance(
        self, engine, strategy_config, flat_account, exchange_params, market_factory
    ):
        market = market_factory(100.0, strategy_config, exchange_params)

        decision = engine.decide(market, flat_account, strategy_config)

        assert isinstance(decision, Decision)
        assert len(decision.orders) == 1
        order = decision.orders[0]
        assert order.order_type == GridOrderType.ENTRY_INITIAL_NORMAL_LONG
        assert order.side == Side.BUY
        assert order.position_side == PositionSide.LONG
        assert order.price <= 98.0
        assert order.qty * order.price <= 1000.0
        assert not order.reduce_only

    def test_initial_entry_qty(self, engine, strategy_config, flat_account, exchange_params, market_factory):
        market = market_factory(100.0, strategy_config, exchange_params)
        order = engine.decide(market, flat_account, strategy_config).orders[0]
        # 1000 balance * 1.0 limit * 1.5% at 98
        assert order.qty == pytest.approx(0.153)

    def test_short_side_mirrors_long(self, engine, flat_account, exchange_params, market_factory):
        config = StrategyConfig(
            long=BotSideConfig(total_wallet_exposure_limit=0.0),
            short=BotSideConfig(total_wallet_exposure_limit=1.0, entry_initial_ema_dist=0.02),
            max_tick_age_ms=0,
        )
        market = market_factory(100.0, config, exchange_params)

        decision = engine.decide(market, flat_account, config)

        assert len(decision.orders) == 1
        order = decision.orders[0]
        assert order.order_type == GridOrderType.ENTRY_INITIAL_NORMAL_SHORT
        assert order.side == Side.SELL
        assert order.price >= 102.0

    def test_zero_balance_places_nothing(self, engine, strategy_config, exchange_params, market_factory):
        market = market_factory(100.0, strategy_config, exchange_params)
        decision = engine.decide(market, AccountState(balance=0.0), strategy_config)
        assert decision.orders == ()


# =============================================================================
# Open Position Tests
# =============================================================================

class TestOpenPosition:
    """Test decisions for a symbol holding a long position."""

    @pytest.fixture
    def account(self, symbol):
        position = PositionState(symbol=symbol, side=PositionSide.LONG, size=5.0, price=100.0)
        return AccountState(balance=1000.0, positions={symbol: position})

    def test_entries_and_closes(self, engine, strategy_config, account, exchange_params, market_factory):
        market = market_factory(100.0, strategy_config, exchange_params)

        decision = engine.decide(market, account, strategy_config)

        assert decision.entries
        assert decision.closes
        assert all(o.price < 100.0 for o in decision.entries)
        assert all(o.price > 100.0 for o in decision.closes)
        assert all(o.reduce_only and o.kind == OrderKind.TAKE_PROFIT for o in decision.closes)

    def test_closes_never_exceed_position(self, engine, strategy_config, account, exchange_params, market_factory):
        market = market_factory(100.0, strategy_config, exchange_params)
        decision = engine.decide(market, account, strategy_config)
        assert sum(o.qty for o in decision.closes) == pytest.approx(5.0)

    def test_entry_keeps_exposure_near_limit(
        self, engine, strategy_config, account, exchange_params, market_factory
    ):
        market = market_factory(100.0, strategy_config, exchange_params)
        entry = engine.decide(market, account, strategy_config).entries[0]

        exposure = calc_wallet_exposure_if_filled(1000.0, 5.0, 100.0, entry.qty, entry.price, exchange_params)

        assert exposure <= strategy_config.long.wallet_exposure_limit * 1.01

    def test_no_entries_at_exposure_limit(self, engine, strategy_config, exchange_params, market_factory, symbol):
        position = PositionState(symbol=symbol, side=PositionSide.LONG, size=10.0, price=100.0)
        account = AccountState(balance=1000.0, positions={symbol: position})
        market = market_factory(100.0, strategy_config, exchange_params)

        decision = engine.decide(market, account, strategy_config)

        assert decision.entries == ()
        assert decision.closes

    def test_position_below_min_qty_still_closes(
        self, engine, strategy_config, exchange_params, market_factory, symbol
    ):
        # min_cost 1.0 at 100 means 0.01 is the smallest order
        position = PositionState(symbol=symbol, side=PositionSide.LONG, size=0.005, price=100.0)
        account = AccountState(balance=1000.0, positions={symbol: position})
        market = market_factory(100.0, strategy_config, exchange_params)

        decision = engine.decide(market, account, strategy_config)

        assert len(decision.closes) == 1
        close = decision.closes[0]
        assert close.qty == pytest.approx(0.005)
        assert close.reduce_only
        assert close.price > 100.0

    def test_opposite_side_waits_for_flat(self, engine, account, exchange_params, market_factory):
        config = StrategyConfig(
            long=BotSideConfig(total_wallet_exposure_limit=1.0),
            short=BotSideConfig(total_wallet_exposure_limit=1.0),
            max_tick_age_ms=0,
        )
        market = market_factory(100.0, config, exchange_params)

        decision = engine.decide(market, account, config)

        assert all(o.position_side == PositionSide.LONG for o in decision.orders)


# =============================================================================
# Outcome / Validation Tests
# =============================================================================

class TestNoDecision:
    """Test ticks the engine refuses to decide on."""

    def test_missing_tick(self, engine, strategy_config, flat_account):
        assert engine.decide(MarketState(tick=None), flat_account, strategy_config) == NoDecision("missing_tick")

    def test_invalid_price(self, engine, strategy_config, flat_account, exchange_params, symbol):
        tracker = MarketStateTracker(strategy_config, exchange_params)
        tracker.update(MarketTick(symbol=symbol, timestamp=1, price=100.0))
        market = tracker.update(MarketTick(symbol=symbol, timestamp=2, price=math.nan))

        assert engine.decide(market, flat_account, strategy_config) == NoDecision("invalid_price")

    def test_stale_tick(self, engine, strategy_config, flat_account, exchange_params, market_factory):
        config = strategy_config.model_copy(update={"max_tick_age_ms": 1_000})
        market = market_factory(100.0, config, exchange_params, timestamp=0, as_of=5_000)

        assert engine.decide(market, flat_account, config) == NoDecision("stale_tick")

    def test_staleness_disabled_without_reference_time(
        self, engine, strategy_config, flat_account, exchange_params, market_factory
    ):
        config = strategy_config.model_copy(update={"max_tick_age_ms": 1_000})
        market = market_factory(100.0, config, exchange_params, timestamp=0)

        assert isinstance(engine.decide(market, flat_account, config), Decision)

    def test_ema_not_ready(self, engine, strategy_config, flat_account, exchange_params, symbol):
        market = MarketState(
            tick=MarketTick(symbol=symbol, timestamp=0, price=100.0), exchange_params=exchange_params
        )
        assert engine.decide(market, flat_account, strategy_config) == NoDecision("ema_not_ready")


class TestValidation:
    """Test out-of-range configuration handling."""

    @pytest.fixture
    def bad_config(self, strategy_config):
        long = strategy_config.long.model_copy(update={"entry_grid_spacing_pct": 5.0})
        return strategy_config.model_copy(update={"long": long})

    def test_out_of_range_raises(self, engine, bad_config, flat_account, exchange_params, market_factory):
        market = market_factory(100.0, bad_config, exchange_params)
        with pytest.raises(InvalidConfiguration):
            engine.decide(market, flat_account, bad_config)

    def test_clamping_recorded_on_decision(self, bad_config, flat_account, exchange_params, market_factory):
        engine = StrategyEngine(clamp_out_of_range=True)
        market = market_factory(100.0, bad_config, exchange_params)

        decision = engine.decide(market, flat_account, bad_config)

        assert isinstance(decision, Decision)
        assert decision.clamps == (
            {"parameter": "long.entry_grid_spacing_pct", "value": 5.0, "clamped": 0.5},
        )


class TestPurity:
    """Test that decisions depend only on their inputs."""

    def test_same_inputs_same_orders(self, engine, strategy_config, exchange_params, market_factory, symbol):
        position = PositionState(symbol=symbol, side=PositionSide.LONG, size=3.0, price=101.0)
        account = AccountState(balance=1000.0, positions={symbol: position})
        market = market_factory(100.0, strategy_config, exchange_params)

        first = engine.decide(market, account, strategy_config)
        second = StrategyEngine().decide(market, account, strategy_config)

        assert first == second
        assert account.positions[symbol] == position


# =============================================================================
# Rule-Level Tests
# =============================================================================

class TestEntryRules:
    """Test individual entry price/qty rules."""

    def test_initial_price_capped_by_book(self, exchange_params):
        params = BotSideConfig(entry_initial_ema_dist=-0.05)
        bands = EMABands(lower=100.0, upper=100.0)
        # Negative distance would bid above the market; the book caps it
        assert calc_initial_entry_price(True, 100.0, bands, params, exchange_params) == 100.0

    def test_reentry_spacing_widens_with_exposure(self, exchange_params):
        params = BotSideConfig(entry_grid_spacing_pct=0.03, entry_grid_spacing_weight=1.0)
        low_exposure = calc_reentry_price(True, 100.0, 0.1, 100.0, 1.0, params, exchange_params)
        high_exposure = calc_reentry_price(True, 100.0, 0.9, 100.0, 1.0, params, exchange_params)
        assert high_exposure < low_exposure < 100.0

    def test_disabled_side_has_no_entries(self, exchange_params):
        params = BotSideConfig(total_wallet_exposure_limit=0.0)
        bands = EMABands(lower=100.0, upper=100.0)
        assert calc_entries(True, 1000.0, 0.0, 0.0, 100.0, bands, TrailingPriceBundle(), params, exchange_params) == []

    def test_trailing_only_waits_for_threshold(self, exchange_params):
        params = BotSideConfig(
            entry_trailing_grid_ratio=1.0,
            entry_trailing_threshold_pct=0.05,
            entry_trailing_retracement_pct=0.01,
        )
        bands = EMABands(lower=100.0, upper=100.0)
        trailing = update_trailing(TrailingPriceBundle(), 100.0)
        entries = calc_entries(True, 1000.0, 1.0, 100.0, 100.0, bands, trailing, params, exchange_params)
        assert entries == []


class TestCloseRules:
    """Test take-profit ladders."""

    def test_raw_close_prices_long(self):
        prices = generate_raw_close_prices(True, 100.0, 0.01, 0.02, 3)
        assert prices == pytest.approx([101.0, 102.0, 103.0])

    def test_raw_close_prices_short(self):
        prices = generate_raw_close_prices(False, 100.0, 0.01, 0.02, 3)
        assert prices == pytest.approx([99.0, 98.0, 97.0])

    def test_flat_position_has_no_closes(self, exchange_params):
        bands = EMABands(lower=100.0, upper=100.0)
        assert calc_closes(True, 1000.0, 0.0, 0.0, 100.0, bands, TrailingPriceBundle(), BotSideConfig(), exchange_params) == []

    def test_unreachable_ladder_closes_at_book(self, exchange_params):
        bands = EMABands(lower=100.0, upper=100.0)
        params = BotSideConfig(close_grid_min_markup=0.01, close_grid_markup_range=0.02)
        closes = calc_closes(True, 1000.0, 1.0, 90.0, 100.0, bands, TrailingPriceBundle(), params, exchange_params)
        assert len(closes) == 1
        assert closes[0].price == 100.0
        assert closes[0].qty == 1.0

    def test_close_cost_matches_position(self, exchange_params):
        bands = EMABands(lower=100.0, upper=100.0)
        closes = calc_closes(
            True, 1000.0, 2.0, 100.0, 100.0, bands, TrailingPriceBundle(), BotSideConfig(), exchange_params
        )
        assert sum(qty_to_cost(c.qty, 100.0) for c in closes) == pytest.approx(200.0)
