"""Trade journal: async SQL store of live order events, halts and balance snapshots."""
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from sqlalchemy import Column, DateTime, Float, Integer, String, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from gridengine.core.config import database_config
from gridengine.core.models import Order

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderEventModel(Base):
    """One order placement, cancellation or rejection."""
    __tablename__ = 'order_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    event = Column(String, nullable=False)
    order_id = Column(String, nullable=True)
    symbol = Column(String, nullable=False)
    side = Column(String, nullable=False)
    position_side = Column(String, nullable=False)
    order_type = Column(String, nullable=False)
    qty = Column(Float, nullable=False)
    price = Column(Float, nullable=False)
    error = Column(String, nullable=True)


class HaltEventModel(Base):
    """Order placement halted or resumed for a symbol."""
    __tablename__ = 'halt_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    symbol = Column(String, nullable=False)
    action = Column(String, nullable=False)  # halt / resume
    reason = Column(String, nullable=True)
    error = Column(String, nullable=True)


class BalanceSnapshotModel(Base):
    """Wallet balance and total exposure at one snapshot refresh."""
    __tablename__ = 'balance_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    balance = Column(Float, nullable=False)
    total_wallet_exposure = Column(Float, nullable=False)
    n_positions = Column(Integer, default=0)


class TradeJournal:
    """Async database interface."""

    def __init__(self, db_url: Optional[str] = None, echo: Optional[bool] = None):
        # Convert SQLite URL to async version if needed
        db_url = db_url or database_config.url
        if db_url.startswith('sqlite:///') and not db_url.startswith('sqlite+aiosqlite:///'):
            db_url = db_url.replace('sqlite:///', 'sqlite+aiosqlite:///')
        if db_url.startswith('sqlite+aiosqlite:///') and ':memory:' not in db_url:
            Path(db_url[len('sqlite+aiosqlite:///'):]).parent.mkdir(parents=True, exist_ok=True)

        self.engine: AsyncEngine = create_async_engine(
            db_url, echo=database_config.echo if echo is None else echo
        )
        self.session_maker = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def initialize(self):
        """Create tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    # Order events
    async def record_order(self, event: str, order: Order, error: Optional[str] = None):
        async with self.session_maker() as session:
            session.add(
                OrderEventModel(
                    event=event,
                    order_id=order.id,
                    symbol=order.symbol,
                    side=order.side.value,
                    position_side=order.position_side.value,
                    order_type=order.order_type.value,
                    qty=order.qty,
                    price=order.price,
                    error=error,
                )
            )
            await session.commit()

    async def get_order_events(
        self,
        symbol: Optional[str] = None,
        event: Optional[str] = None,
        limit: int = 100
    ) -> List[OrderEventModel]:
        """Most recent order events first."""
        async with self.session_maker() as session:
            query = select(OrderEventModel).order_by(OrderEventModel.id.desc()).limit(limit)
            if symbol:
                query = query.where(OrderEventModel.symbol == symbol)
            if event:
                query = query.where(OrderEventModel.event == event)
            result = await session.execute(query)
            return list(result.scalars().all())

    # Halts
    async def record_halt(self, symbol: str, action: str, reason: Optional[str] = None, error: Optional[str] = None):
        async with self.session_maker() as session:
            session.add(HaltEventModel(symbol=symbol, action=action, reason=reason, error=error))
            await session.commit()

    async def get_halt_events(self, symbol: Optional[str] = None) -> List[HaltEventModel]:
        async with self.session_maker() as session:
            query = select(HaltEventModel).order_by(HaltEventModel.id)
            if symbol:
                query = query.where(HaltEventModel.symbol == symbol)
            result = await session.execute(query)
            return list(result.scalars().all())

    # Balance snapshots
    async def record_balance(self, balance: float, total_wallet_exposure: float, n_positions: int):
        async with self.session_maker() as session:
            session.add(
                BalanceSnapshotModel(
                    balance=balance,
                    total_wallet_exposure=total_wallet_exposure,
                    n_positions=n_positions,
                )
            )
            await session.commit()

    async def get_latest_balance(self) -> Optional[BalanceSnapshotModel]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(BalanceSnapshotModel).order_by(BalanceSnapshotModel.id.desc()).limit(1)
            )
            return result.scalar_one_or_none()
