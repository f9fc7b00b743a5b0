"""Pytest fixtures and utilities for the gridengine test suite."""
from typing import Optional, Sequence, Tuple

import pytest
import pytest_asyncio

from gridengine.core.config import (
    BotSideConfig,
    GridEngineConfig,
    LiveConfig,
    OptimizerConfig,
    SimulatorConfig,
    StrategyConfig,
)
from gridengine.core.models import AccountState, ExchangeParams, MarketTick, PositionSide, PositionState
from gridengine.exchange.paper import PaperExchange
from gridengine.storage.database import TradeJournal
from gridengine.strategies.market_state import MarketState, MarketStateTracker

SYMBOL = "BTC/USDT:USDT"
START_MS = 1_704_067_200_000  # 2024-01-01T00:00:00Z
STEP_MS = 60_000


# =============================================================================
# Helpers
# =============================================================================

def make_series(
    prices: Sequence[float],
    symbol: str = SYMBOL,
    start: int = START_MS,
    step: int = STEP_MS,
) -> Tuple[MarketTick, ...]:
    """One tick per price, ``step`` ms apart."""
    return tuple(
        MarketTick(symbol=symbol, timestamp=start + i * step, price=float(p))
        for i, p in enumerate(prices)
    )


def make_market(
    price: float,
    config: StrategyConfig,
    ex: Optional[ExchangeParams] = None,
    symbol: str = SYMBOL,
    timestamp: int = START_MS,
    as_of: Optional[int] = None,
) -> MarketState:
    """Market state after a single tick: EMA bands sit at ``price``."""
    tracker = MarketStateTracker(config, ex)
    return tracker.update(MarketTick(symbol=symbol, timestamp=timestamp, price=price), as_of=as_of)


def long_position(size: float, price: float, symbol: str = SYMBOL) -> PositionState:
    return PositionState(symbol=symbol, side=PositionSide.LONG, size=size, price=price)


@pytest.fixture
def series_factory():
    return make_series


@pytest.fixture
def market_factory():
    return make_market


@pytest.fixture
def symbol():
    return SYMBOL


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def exchange_params():
    """Instrument rules used across tests."""
    return ExchangeParams(qty_step=0.001, price_step=0.01, min_qty=0.001, min_cost=1.0)


@pytest.fixture
def simulator_config():
    return SimulatorConfig(qty_step=0.001, price_step=0.01, min_qty=0.001, min_cost=1.0)


@pytest.fixture
def strategy_config():
    """Long-only grid with a 2% initial entry distance."""
    return StrategyConfig(
        long=BotSideConfig(
            total_wallet_exposure_limit=1.0,
            n_positions=1,
            entry_initial_ema_dist=0.02,
            entry_initial_qty_pct=0.015,
            entry_grid_spacing_pct=0.03,
            entry_trailing_grid_ratio=0.0,
            close_grid_min_markup=0.01,
            close_grid_markup_range=0.02,
        ),
        short=BotSideConfig(total_wallet_exposure_limit=0.0),
        max_tick_age_ms=0,
    )


@pytest.fixture
def grid_config(strategy_config, simulator_config):
    """Full run configuration for live and backtest flows."""
    return GridEngineConfig(
        bot=strategy_config,
        live=LiveConfig(
            approved_coins=[SYMBOL],
            execution_delay_seconds=0.0,
            snapshot_refresh_seconds=0.05,
            price_distance_threshold=0.0,
            cancel_orders_on_stop=False,
            minimum_coin_age_days=0.0,
        ),
        simulator=simulator_config,
        optimizer=OptimizerConfig(
            n_generations=2,
            population_size=4,
            seed=7,
            min_series_length=5,
            bounds={"long.entry_grid_spacing_pct": (0.01, 0.05)},
        ),
    )


@pytest.fixture
def flat_account():
    return AccountState(balance=1000.0)


# =============================================================================
# Exchange / Storage Fixtures
# =============================================================================

@pytest.fixture
def paper_exchange(exchange_params):
    """Paper exchange replaying a small dip and recovery."""
    series = make_series([100.0, 100.0, 97.0, 97.0, 100.0, 100.0])
    return PaperExchange(series={SYMBOL: series}, balance=1000.0, exchange_params=exchange_params)


@pytest_asyncio.fixture
async def journal(tmp_path):
    """Trade journal backed by a throwaway SQLite file."""
    db = TradeJournal(db_url=f"sqlite+aiosqlite:///{tmp_path / 'journal.db'}", echo=False)
    await db.initialize()
    yield db
    await db.close()
