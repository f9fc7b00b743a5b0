"""Unit tests for EMA bands and trailing price tracking."""
import math

import pytest

from gridengine.core.models import MarketTick, TrailingPriceBundle
from gridengine.strategies.market_state import MarketStateTracker, update_trailing


class TestUpdateTrailing:
    """Test trailing extremes."""

    def test_new_low_resets_bounce(self):
        bundle = update_trailing(TrailingPriceBundle(), 100.0)
        bundle = update_trailing(bundle, 95.0)
        assert bundle.min_since_open == 95.0
        assert bundle.max_since_min == 95.0
        assert bundle.max_since_open == 100.0

    def test_bounce_after_low(self):
        bundle = TrailingPriceBundle()
        for price in (100.0, 95.0, 97.0):
            bundle = update_trailing(bundle, price)
        assert bundle.max_since_min == 97.0
        assert bundle.min_since_max == 95.0


class TestMarketStateTracker:
    """Test folding ticks into market state."""

    def test_first_tick_seeds_bands(self, strategy_config, symbol):
        tracker = MarketStateTracker(strategy_config)
        state = tracker.update(MarketTick(symbol=symbol, timestamp=0, price=100.0))
        assert state.ema_long.lower == state.ema_long.upper == 100.0
        assert state.ema_long.ready

    def test_bands_follow_price(self, strategy_config, symbol):
        tracker = MarketStateTracker(strategy_config)
        tracker.update(MarketTick(symbol=symbol, timestamp=0, price=100.0))
        state = tracker.update(MarketTick(symbol=symbol, timestamp=1, price=110.0))
        assert 100.0 < state.ema_long.lower <= state.ema_long.upper < 110.0

    def test_invalid_tick_keeps_bands(self, strategy_config, symbol):
        tracker = MarketStateTracker(strategy_config)
        before = tracker.update(MarketTick(symbol=symbol, timestamp=0, price=100.0))
        after = tracker.update(MarketTick(symbol=symbol, timestamp=1, price=math.inf))
        assert after.ema_long == before.ema_long
        assert after.tick.timestamp == 1

    def test_reset_trailing_restarts_at_last_price(self, strategy_config, symbol):
        tracker = MarketStateTracker(strategy_config)
        for i, price in enumerate((100.0, 90.0, 95.0)):
            tracker.update(MarketTick(symbol=symbol, timestamp=i, price=price))
        tracker.reset_trailing(True)

        trailing = tracker.state.trailing_long
        assert trailing.min_since_open == 95.0
        assert trailing.max_since_open == 95.0
        # The short side is untouched
        assert tracker.state.trailing_short.min_since_open == 90.0

    def test_as_of_recorded(self, strategy_config, symbol):
        tracker = MarketStateTracker(strategy_config)
        state = tracker.update(MarketTick(symbol=symbol, timestamp=0, price=100.0), as_of=1234)
        assert state.as_of == 1234
        assert state.exchange_params.qty_step == pytest.approx(0.00001)
