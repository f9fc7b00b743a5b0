"""
Profit transfer.

Moves a share of the futures wallet's profit into the spot wallet. Profit is
measured against a high-water mark persisted per user, so a drawdown followed
by a recovery is never transferred twice.
"""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel

from gridengine.core.errors import InvalidConfiguration, TransientExchangeError
from gridengine.exchange.base import ExchangeAdapter

logger = structlog.get_logger(__name__)


class ProfitState(BaseModel):
    high_water_mark: Optional[float] = None
    transferred_total: float = 0.0


class ProfitTransferer:
    """Periodically transfers ``percentage`` of new profit to spot.

    Args:
        exchange: Connected exchange adapter.
        user: api-keys.json user; names the state file.
        percentage: Share of profit above the high-water mark to move, 0-1.
        quote: Asset to transfer.
        state_dir: Directory holding ``{user}.json`` state files.
        interval_seconds: Pause between checks in ``run``.
    """

    FROM_ACCOUNT = "future"
    TO_ACCOUNT = "spot"

    def __init__(
        self,
        exchange: ExchangeAdapter,
        user: str,
        percentage: float,
        quote: str = "USDT",
        state_dir: str = "data/profit_transfer",
        interval_seconds: float = 3600.0,
    ):
        if not 0.0 < percentage <= 1.0:
            raise InvalidConfiguration(f"percentage must be in (0, 1], got {percentage}", field="percentage")
        self.exchange = exchange
        self.user = user
        self.percentage = percentage
        self.quote = quote
        self.state_path = Path(state_dir) / f"{user}.json"
        self.interval_seconds = interval_seconds

    def load_state(self) -> ProfitState:
        if not self.state_path.exists():
            return ProfitState()
        return ProfitState.model_validate_json(self.state_path.read_text())

    def save_state(self, state: ProfitState) -> None:
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        self.state_path.write_text(state.model_dump_json(indent=2))

    async def run_once(self) -> float:
        """Check the balance and transfer if it is above the high-water mark.

        Returns the amount transferred (0.0 when nothing was due).
        """
        balance = await self.exchange.fetch_balance(self.quote)
        state = self.load_state()
        if state.high_water_mark is None:
            state.high_water_mark = balance
            self.save_state(state)
            logger.info("profit_transfer.initialized", user=self.user, high_water_mark=balance)
            return 0.0

        profit = balance - state.high_water_mark
        if profit <= 0.0:
            logger.info(
                "profit_transfer.no_profit",
                user=self.user,
                balance=balance,
                high_water_mark=state.high_water_mark,
            )
            return 0.0

        amount = round(profit * self.percentage, 8)
        if amount <= 0.0:
            return 0.0
        await self.exchange.transfer(self.quote, amount, self.FROM_ACCOUNT, self.TO_ACCOUNT)
        state.high_water_mark = balance - amount
        state.transferred_total += amount
        self.save_state(state)
        logger.info(
            "profit_transfer.transferred",
            user=self.user,
            amount=amount,
            asset=self.quote,
            high_water_mark=state.high_water_mark,
            transferred_total=state.transferred_total,
        )
        return amount

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info("profit_transfer.started", user=self.user, percentage=self.percentage)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except TransientExchangeError as e:
                logger.warning("profit_transfer.check_failed", user=self.user, error=str(e))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("profit_transfer.stopped", user=self.user)
