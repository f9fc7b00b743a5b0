"""Unit tests for the profit transfer tool."""
import asyncio
import json
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from gridengine.core.errors import InvalidConfiguration, TransientExchangeError
from gridengine.tools.profit_transfer import ProfitState, ProfitTransferer


def set_balance(exchange, balance):
    exchange.account = replace(exchange.account, balance=balance)


@pytest.fixture
def transferer(paper_exchange, tmp_path):
    return ProfitTransferer(paper_exchange, "main", 0.5, state_dir=str(tmp_path))


# =============================================================================
# High-Water Mark Tests
# =============================================================================

class TestRunOnce:
    """Test single profit checks."""

    @pytest.mark.asyncio
    async def test_first_run_sets_high_water_mark(self, transferer, paper_exchange):
        assert await transferer.run_once() == 0.0

        assert transferer.load_state() == ProfitState(high_water_mark=1000.0)
        assert paper_exchange.spot_balances == {}

    @pytest.mark.asyncio
    async def test_transfers_share_of_profit(self, transferer, paper_exchange):
        await transferer.run_once()
        set_balance(paper_exchange, 1100.0)

        amount = await transferer.run_once()

        assert amount == 50.0
        assert paper_exchange.spot_balances["USDT"] == 50.0
        assert await paper_exchange.fetch_balance("USDT") == 1050.0
        state = transferer.load_state()
        assert state.high_water_mark == 1050.0
        assert state.transferred_total == 50.0

    @pytest.mark.asyncio
    async def test_recovery_from_drawdown_not_transferred(self, transferer, paper_exchange):
        await transferer.run_once()
        set_balance(paper_exchange, 900.0)
        assert await transferer.run_once() == 0.0

        set_balance(paper_exchange, 1000.0)
        assert await transferer.run_once() == 0.0

        set_balance(paper_exchange, 1010.0)
        assert await transferer.run_once() == 5.0

    @pytest.mark.asyncio
    async def test_state_file_per_user(self, transferer, tmp_path):
        await transferer.run_once()
        data = json.loads((tmp_path / "main.json").read_text())
        assert data == {"high_water_mark": 1000.0, "transferred_total": 0.0}

    @pytest.mark.parametrize("percentage", [0.0, -0.1, 1.5])
    def test_invalid_percentage(self, paper_exchange, tmp_path, percentage):
        with pytest.raises(InvalidConfiguration):
            ProfitTransferer(paper_exchange, "main", percentage, state_dir=str(tmp_path))


class TestRunLoop:
    """Test the periodic loop."""

    @pytest.mark.asyncio
    async def test_loop_stops_on_event(self, paper_exchange, tmp_path):
        transferer = ProfitTransferer(paper_exchange, "main", 0.5, state_dir=str(tmp_path), interval_seconds=0.01)
        stop_event = asyncio.Event()

        task = asyncio.create_task(transferer.run(stop_event))
        await asyncio.sleep(0.05)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert transferer.load_state().high_water_mark == 1000.0

    @pytest.mark.asyncio
    async def test_transient_errors_do_not_end_loop(self, paper_exchange, tmp_path):
        transferer = ProfitTransferer(paper_exchange, "main", 0.5, state_dir=str(tmp_path), interval_seconds=0.01)
        paper_exchange.fetch_balance = AsyncMock(side_effect=[TransientExchangeError("timeout")] + [1000.0] * 100)
        stop_event = asyncio.Event()

        task = asyncio.create_task(transferer.run(stop_event))
        while paper_exchange.fetch_balance.await_count < 2:
            await asyncio.sleep(0.005)
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert transferer.load_state().high_water_mark == 1000.0
