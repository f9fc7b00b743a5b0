"""Unit tests for the trade journal."""
import pytest
import pytest_asyncio

from gridengine.core.models import GridOrderType, Order
from gridengine.storage.database import TradeJournal


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def memory_journal():
    """Create an in-memory test database."""
    db = TradeJournal("sqlite+aiosqlite:///:memory:", echo=False)
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def sample_order(symbol):
    return Order.from_grid(symbol, 0.153, 98.0, GridOrderType.ENTRY_INITIAL_NORMAL_LONG).accepted("ex_123")


# =============================================================================
# Order Event Tests
# =============================================================================

class TestOrderEvents:
    """Test order event persistence."""

    @pytest.mark.asyncio
    async def test_record_and_read_back(self, memory_journal, sample_order, symbol):
        await memory_journal.record_order("placed", sample_order)

        events = await memory_journal.get_order_events(symbol=symbol)

        assert len(events) == 1
        event = events[0]
        assert event.event == "placed"
        assert event.order_id == "ex_123"
        assert event.side == "buy"
        assert event.position_side == "long"
        assert event.order_type == "entry_initial_normal_long"
        assert event.qty == 0.153
        assert event.price == 98.0
        assert event.error is None
        assert event.created_at is not None

    @pytest.mark.asyncio
    async def test_filter_by_event_newest_first(self, memory_journal, sample_order):
        await memory_journal.record_order("placed", sample_order)
        await memory_journal.record_order("rejected", sample_order, error="insufficient margin")
        await memory_journal.record_order("placed", sample_order.accepted("ex_456"))

        placed = await memory_journal.get_order_events(event="placed")
        rejected = await memory_journal.get_order_events(event="rejected")

        assert [e.order_id for e in placed] == ["ex_456", "ex_123"]
        assert rejected[0].error == "insufficient margin"

    @pytest.mark.asyncio
    async def test_filter_by_symbol(self, memory_journal, sample_order):
        await memory_journal.record_order("placed", sample_order)
        assert await memory_journal.get_order_events(symbol="ETH/USDT:USDT") == []


# =============================================================================
# Halt / Balance Tests
# =============================================================================

class TestHaltEvents:
    """Test halt bookkeeping."""

    @pytest.mark.asyncio
    async def test_halts_in_order(self, memory_journal, symbol):
        await memory_journal.record_halt(symbol, "halt", reason="rejected", error="bad qty")
        await memory_journal.record_halt(symbol, "resume", reason="rejected")
        await memory_journal.record_halt("ETH/USDT:USDT", "halt", reason="connectivity")

        events = await memory_journal.get_halt_events(symbol)

        assert [e.action for e in events] == ["halt", "resume"]
        assert events[0].error == "bad qty"
        assert len(await memory_journal.get_halt_events()) == 3


class TestBalanceSnapshots:
    """Test balance snapshot persistence."""

    @pytest.mark.asyncio
    async def test_latest_balance(self, memory_journal):
        assert await memory_journal.get_latest_balance() is None

        await memory_journal.record_balance(1000.0, 0.0, 0)
        await memory_journal.record_balance(990.0, 0.5, 1)

        latest = await memory_journal.get_latest_balance()
        assert latest.balance == 990.0
        assert latest.total_wallet_exposure == 0.5
        assert latest.n_positions == 1

    @pytest.mark.asyncio
    async def test_file_database_creates_directory(self, tmp_path):
        db = TradeJournal(f"sqlite+aiosqlite:///{tmp_path / 'nested' / 'journal.db'}", echo=False)
        await db.initialize()
        await db.record_balance(1.0, 0.0, 0)
        await db.close()

        assert (tmp_path / "nested" / "journal.db").exists()
