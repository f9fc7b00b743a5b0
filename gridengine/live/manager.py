"""
Live execution.

One ``SymbolLoop`` task per symbol owns that symbol's account state, market
state and resting orders exclusively. Each price tick drives a cycle:
refresh account state, ask the strategy engine for the desired orders, diff
them against the exchange and cancel/place the difference. Cross-symbol
exposure is read from the ``ExposureSnapshot`` the ``LiveManager`` refreshes
on a short interval.
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import structlog

from gridengine.core.config import GridEngineConfig
from gridengine.core.errors import ExchangeError, InvalidConfiguration, TransientExchangeError
from gridengine.core.models import AccountState, ExchangeParams, MarketTick, Order
from gridengine.exchange.base import ExchangeAdapter
from gridengine.live.forager import select_symbols
from gridengine.live.reconcile import ReconcilePlan, reconcile
from gridengine.risk.risk_manager import ExposureSnapshot, HaltReason, RiskManager
from gridengine.storage.database import TradeJournal
from gridengine.strategies.engine import NoDecision, StrategyEngine
from gridengine.strategies.market_state import MarketStateTracker
from gridengine.utils.logging_config import log_context

logger = structlog.get_logger(__name__)


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


class SymbolLoop:
    """Reconciliation loop for one symbol."""

    def __init__(
        self,
        symbol: str,
        exchange: ExchangeAdapter,
        config: GridEngineConfig,
        risk: RiskManager,
        snapshot_provider: Callable[[], Optional[ExposureSnapshot]],
        engine: Optional[StrategyEngine] = None,
        journal: Optional[TradeJournal] = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.symbol = symbol
        self.exchange = exchange
        self.config = config
        self.live = config.live
        self.strategy = config.bot
        self.risk = risk
        self.engine = engine or StrategyEngine()
        self.journal = journal
        self._snapshot = snapshot_provider
        self._clock = clock

        self.exchange_params: Optional[ExchangeParams] = None
        self.tracker: Optional[MarketStateTracker] = None
        self.account: Optional[AccountState] = None
        self.cycles = 0
        self._cycle_lock = asyncio.Lock()
        self._stopping = False
        self._last_cycle: Optional[float] = None

    @property
    def halted(self) -> bool:
        return self.risk.is_halted(self.symbol)

    async def start(self) -> None:
        """Load trading rules and the initial account state.

        Raises:
            ExchangeError: the exchange could not be reached or refused; the
                loop must not run on unknown account state.
        """
        self.exchange_params = await self.exchange.fetch_exchange_params(self.symbol)
        self.tracker = MarketStateTracker(self.strategy, self.exchange_params)
        await self.refresh()
        logger.info("symbol_loop.initialized", symbol=self.symbol, balance=self.account.balance)

    async def refresh(self) -> AccountState:
        account = await self.exchange.fetch_account_state([self.symbol])
        if self.account is not None and account.position(self.symbol) != self.account.position(self.symbol):
            self.tracker.reset_trailing(True)
            self.tracker.reset_trailing(False)
        self.account = account
        if self.risk.on_refresh_success(self.symbol) and self.journal:
            await self.journal.record_halt(self.symbol, "resume", reason=HaltReason.CONNECTIVITY.value)
        return account

    async def run(self) -> None:
        if self.tracker is None:
            await self.start()
        with log_context(symbol=self.symbol):
            logger.info("symbol_loop.started")
            try:
                async for tick in self.exchange.stream_price(self.symbol):
                    if self._stopping:
                        break
                    await self.on_tick(tick)
            except ExchangeError as e:
                # Only this symbol stops; the other loops keep their streams
                logger.error("symbol_loop.stream_failed", error=str(e), exc_info=True)
                await self._halt(HaltReason.CONNECTIVITY if e.transient else HaltReason.REJECTED, e)
            logger.info("symbol_loop.finished", cycles=self.cycles)

    async def on_tick(self, tick: MarketTick) -> Optional[ReconcilePlan]:
        self.tracker.update(tick, as_of=self._clock())
        now = time.monotonic()
        if self._last_cycle is not None and now - self._last_cycle < self.live.execution_delay_seconds:
            return None
        self._last_cycle = now
        return await self.cycle()

    async def cycle(self) -> Optional[ReconcilePlan]:
        """One decide-and-reconcile pass against the latest market state."""
        async with self._cycle_lock:
            if self._stopping:
                return None
            try:
                await self.refresh()
            except TransientExchangeError as e:
                await self._halt(HaltReason.CONNECTIVITY, e)
                return None
            self.cycles += 1

            market = self.tracker.state
            outcome = self.engine.decide(market, self.account, self.strategy)
            if isinstance(outcome, NoDecision):
                logger.debug("symbol_loop.no_decision", symbol=self.symbol, reason=outcome.reason)
                return None

            position = self.account.position(self.symbol)
            check = self.risk.check_symbol(self.symbol, position.side, self._snapshot(), self.strategy)
            if not check.passed:
                logger.debug("symbol_loop.blocked", symbol=self.symbol, reason=check.reason)
                return None
            desired = outcome.orders if check.allow_entries else outcome.closes
            if not check.allow_entries:
                logger.info("symbol_loop.entries_blocked", symbol=self.symbol, reason=check.reason)

            tick = market.tick
            plan = reconcile(
                self.account.orders_for(self.symbol),
                desired,
                mid_price=(tick.best_bid + tick.best_ask) / 2.0,
                price_distance_threshold=self.live.price_distance_threshold,
                max_cancellations=self.live.max_n_cancellations_per_batch,
                max_creations=self.live.max_n_creations_per_batch,
            )
            if not plan.empty:
                await self._execute(plan)
            return plan

    async def _execute(self, plan: ReconcilePlan) -> None:
        for order in plan.to_cancel:
            try:
                cancelled = await self.exchange.cancel_order(order.id, self.symbol)
            except ExchangeError as e:
                await self._halt(HaltReason.CONNECTIVITY if e.transient else HaltReason.REJECTED, e)
                return
            logger.info(
                "symbol_loop.order_cancelled",
                symbol=self.symbol,
                order_id=order.id,
                price=order.price,
                qty=order.qty,
                found=cancelled,
            )
            await self._journal_order("cancelled" if cancelled else "cancel_missing", order)

        for order in plan.to_place:
            try:
                order_id = await self.exchange.place_order(order)
            except ExchangeError as e:
                if not e.transient:
                    await self._journal_order("rejected", order, error=str(e))
                await self._halt(HaltReason.CONNECTIVITY if e.transient else HaltReason.REJECTED, e)
                return
            placed = order.accepted(order_id)
            logger.info(
                "symbol_loop.order_placed",
                symbol=self.symbol,
                order_id=order_id,
                order_type=order.order_type.value,
                side=order.side.value,
                qty=order.qty,
                price=order.price,
            )
            await self._journal_order("placed", placed)

    async def _halt(self, reason: HaltReason, error: Exception) -> None:
        self.risk.halt(self.symbol, reason, str(error))
        if self.journal:
            await self.journal.record_halt(self.symbol, "halt", reason=reason.value, error=str(error))

    async def _journal_order(self, event: str, order: Order, error: Optional[str] = None) -> None:
        if self.journal:
            await self.journal.record_order(event, order, error=error)

    def resume(self) -> bool:
        """Operator action: lift a halt on this symbol."""
        reason = self.risk.halt_reason(self.symbol)
        if reason is None:
            return False
        logger.info("symbol_loop.resume_requested", symbol=self.symbol, halt_reason=reason.value)
        return self.risk.resume(self.symbol)

    async def stop(self, cancel_orders: bool = True) -> None:
        """Stop deciding, wait for the in-flight cycle, optionally cancel
        this symbol's resting orders."""
        self._stopping = True
        async with self._cycle_lock:
            if not cancel_orders:
                return
            try:
                for order in await self.exchange.fetch_open_orders(self.symbol):
                    await self.exchange.cancel_order(order.id, self.symbol)
                    await self._journal_order("cancelled", order)
            except ExchangeError as e:
                logger.error("symbol_loop.cancel_on_stop_failed", symbol=self.symbol, error=str(e), exc_info=True)
                raise
        logger.info("symbol_loop.stopped", symbol=self.symbol, cancelled_orders=cancel_orders)


class LiveManager:
    """Runs one SymbolLoop per symbol and keeps the exposure snapshot fresh."""

    def __init__(
        self,
        config: GridEngineConfig,
        exchange: ExchangeAdapter,
        symbols: Optional[List[str]] = None,
        engine: Optional[StrategyEngine] = None,
        journal: Optional[TradeJournal] = None,
        risk: Optional[RiskManager] = None,
        clock: Callable[[], int] = wall_clock_ms,
    ):
        self.config = config
        self.exchange = exchange
        self.symbols = list(symbols or [])
        self.engine = engine or StrategyEngine()
        self.journal = journal
        self.risk = risk or RiskManager()
        self.clock = clock
        self.loops: Dict[str, SymbolLoop] = {}
        self._snapshot: Optional[ExposureSnapshot] = None
        self._stop_event = asyncio.Event()
        self._stopped = False
        self._tasks: List[asyncio.Task] = []
        self._snapshot_task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> Optional[ExposureSnapshot]:
        return self._snapshot

    def risk_report(self) -> Dict[str, Any]:
        """Halted symbols and, once a snapshot exists, account exposure."""
        return self.risk.get_risk_report(self._snapshot)

    async def _select_symbols(self) -> List[str]:
        live = self.config.live
        if live.approved_coins and not live.empty_means_all_approved:
            candidates = [s for s in live.approved_coins if s not in live.ignored_coins]
            # Approved coins still have to pass the market filters
            markets = await self.exchange.fetch_markets()
            if markets:
                allowed = set(select_symbols(markets, live, self.clock()))
                candidates = [s for s in candidates if s in allowed]
            return candidates
        max_symbols = max(self.config.bot.long.n_positions, self.config.bot.short.n_positions)
        return select_symbols(await self.exchange.fetch_markets(), live, self.clock(), max_symbols=max_symbols)

    async def start(self) -> None:
        """Connect, pick symbols, initialize every loop and take the first
        snapshot. Any exchange failure here propagates."""
        self.engine.validate(self.config.bot)
        await self.exchange.initialize()
        if not self.symbols:
            self.symbols = await self._select_symbols()
        if not self.symbols:
            raise InvalidConfiguration("no eligible symbols to trade", field="live.approved_coins")
        for symbol in self.symbols:
            loop = SymbolLoop(
                symbol,
                self.exchange,
                self.config,
                self.risk,
                lambda: self._snapshot,
                engine=self.engine,
                journal=self.journal,
                clock=self.clock,
            )
            await loop.start()
            self.loops[symbol] = loop
        await self.refresh_snapshot()
        logger.info("live_manager.started", symbols=self.symbols, exchange=self.exchange.name)

    async def refresh_snapshot(self) -> ExposureSnapshot:
        account = await self.exchange.fetch_account_state(self.symbols)
        params = {s: loop.exchange_params for s, loop in self.loops.items()}
        self._snapshot = ExposureSnapshot.from_account(account, params, time.time())
        if self.journal:
            await self.journal.record_balance(
                self._snapshot.balance, self._snapshot.total_wallet_exposure, self._snapshot.n_positions
            )
        return self._snapshot

    async def _snapshot_loop(self) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self.config.live.snapshot_refresh_seconds)
            try:
                await self.refresh_snapshot()
            except TransientExchangeError as e:
                # Loops keep reading the previous snapshot
                logger.warning("live_manager.snapshot_refresh_failed", error=str(e))

    async def run(self) -> None:
        """Run until every price stream ends, stop is requested, or a loop
        fails. A loop failure stops all loops and is re-raised."""
        await self.start()
        self._tasks = [
            asyncio.create_task(loop.run(), name=f"symbol_loop:{symbol}") for symbol, loop in self.loops.items()
        ]
        self._snapshot_task = asyncio.create_task(self._snapshot_loop(), name="snapshot_loop")
        stop_waiter = asyncio.create_task(self._stop_event.wait())
        pending = set(self._tasks)
        try:
            while pending and not self._stop_event.is_set():
                done, pending = await asyncio.wait(pending | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                pending.discard(stop_waiter)
                for task in done:
                    if task is stop_waiter or task.cancelled():
                        continue
                    if task.exception() is not None:
                        logger.error("live_manager.loop_failed", task=task.get_name(), error=str(task.exception()))
                        raise task.exception()
        finally:
            stop_waiter.cancel()
            await self.stop()

    def request_stop(self) -> None:
        """Signal-handler safe: ask ``run`` to shut down."""
        logger.info("live_manager.stop_requested")
        self._stop_event.set()

    async def stop(self) -> None:
        """Orderly shutdown: no new decisions, wait for in-flight order
        operations, optionally cancel resting orders, then end all tasks."""
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        cancel_orders = self.config.live.cancel_orders_on_stop
        errors = []
        for loop in self.loops.values():
            try:
                await loop.stop(cancel_orders=cancel_orders)
            except ExchangeError as e:
                errors.append(e)
        tasks = list(self._tasks)
        if self._snapshot_task is not None:
            tasks.append(self._snapshot_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(
            "live_manager.stopped",
            symbols=self.symbols,
            failed_cancellations=len(errors),
            halted=sorted(self.risk_report()["halted"]),
        )
        if errors:
            raise errors[0]

    def resume(self, symbol: str) -> bool:
        loop = self.loops.get(symbol)
        return loop.resume() if loop else False
