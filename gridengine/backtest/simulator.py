"""Deterministic tick-by-tick backtest simulator.

One run replays one symbol's price series through the strategy engine:

    IDLE -> RUNNING -> COMPLETED   (end of data, or early on liquidation)
                    -> FAILED      (malformed tick or missing ticks)

Each tick: update market state, ask the engine for the desired orders,
reconcile them against the resting simulated orders, fill whatever the tick
price crosses, update the account, record an equity sample and check for
liquidation. The loop reads no clock, draws no random numbers and does no
I/O, so identical inputs give identical results.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, Field

from gridengine.backtest.analysis import analyze
from gridengine.core.config import SimulatorConfig, StrategyConfig
from gridengine.core.errors import SimulationFailed
from gridengine.core.models import (
    AccountState,
    EquitySample,
    ExchangeParams,
    Fill,
    GridOrderType,
    MarketTick,
    Order,
    PositionSide,
    PositionState,
)
from gridengine.strategies.engine import Decision, StrategyEngine
from gridengine.strategies.market_state import MarketStateTracker
from gridengine.strategies.utils import (
    calc_new_psize_pprice,
    calc_pnl,
    calc_wallet_exposure,
    qty_to_cost,
)

logger = structlog.get_logger(__name__)


class SimulationStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class LiquidationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int
    price: float
    position_side: str
    position_size: float
    position_price: float
    equity: float
    balance_after: float


class BacktestResult(BaseModel):
    """Outcome of one simulator run. Immutable once produced."""

    model_config = ConfigDict(frozen=True, ser_json_inf_nan="constants")

    status: SimulationStatus
    symbol: str
    starting_balance: float
    equity: Tuple[EquitySample, ...] = ()
    fills: Tuple[Fill, ...] = ()
    liquidation: Optional[LiquidationEvent] = None
    analysis: Dict[str, Any] = Field(default_factory=dict)
    clamps: Tuple[Dict[str, Any], ...] = ()
    skipped_ticks: int = 0
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.status == SimulationStatus.COMPLETED

    @property
    def liquidated(self) -> bool:
        return self.liquidation is not None

    def require_completed(self) -> "BacktestResult":
        if not self.completed:
            raise SimulationFailed(self.error or f"backtest ended in state {self.status.value}")
        return self


def expected_step_ms(series: Sequence[MarketTick], step_ms: Optional[int] = None) -> Optional[int]:
    """Tick spacing a series must keep: ``step_ms`` when given, otherwise the
    spacing of its first two ticks."""
    if step_ms is not None:
        return step_ms
    if len(series) >= 2 and series[1].timestamp > series[0].timestamp:
        return series[1].timestamp - series[0].timestamp
    return None


def exchange_params_from(config: SimulatorConfig) -> ExchangeParams:
    return ExchangeParams(
        qty_step=config.qty_step,
        price_step=config.price_step,
        min_qty=config.min_qty,
        min_cost=config.min_cost,
        c_mult=config.c_mult,
        inverse=config.inverse,
    )


def order_key(order: Order) -> Tuple:
    return (order.side, order.position_side, order.qty, order.price)


def reconcile_orders(
    resting: Sequence[Order], desired: Sequence[Order], next_id
) -> Tuple[List[Order], List[Order], List[Order]]:
    """Match desired orders against resting ones.

    Returns (orders now resting, cancelled, newly placed). Resting orders equal
    in side, position side, qty and price to a desired order are kept as they
    are; ``next_id`` supplies ids for new ones.
    """
    remaining = {}
    for order in resting:
        remaining.setdefault(order_key(order), []).append(order)
    kept: List[Order] = []
    placed: List[Order] = []
    for order in desired:
        matches = remaining.get(order_key(order))
        if matches:
            kept.append(matches.pop(0))
        else:
            new = order.accepted(next_id())
            placed.append(new)
            kept.append(new)
    cancelled = [o for orders in remaining.values() for o in orders]
    return kept, cancelled, placed


@dataclass
class FillResult:
    account: AccountState
    fill: Optional[Fill]


def apply_fill(
    account: AccountState,
    order: Order,
    price: float,
    timestamp: int,
    index: int,
    maker_fee: float,
    ex: ExchangeParams,
) -> FillResult:
    """Execute ``order`` at ``price`` against ``account``.

    Futures accounting: entries only pay the fee; closes realize PnL. Closes
    larger than the position are trimmed; a close with no position, or an
    entry against an opposite position, does nothing.
    """
    long = order.position_side == PositionSide.LONG
    side = order.position_side
    position = account.position(order.symbol)
    if not position.is_flat and position.side != side:
        return FillResult(account, None)
    psize = position.size_for(side)
    pprice = position.price_for(side)

    qty = order.qty
    pnl = 0.0
    if order.is_entry:
        new_psize, new_pprice = calc_new_psize_pprice(psize, pprice, qty, price, ex.qty_step)
    else:
        qty = min(qty, psize)
        if qty <= 0.0:
            return FillResult(account, None)
        pnl = calc_pnl(long, pprice, price, qty, ex)
        new_psize, new_pprice = calc_new_psize_pprice(psize, pprice, -qty, price, ex.qty_step)
        if new_psize <= 0.0:
            new_psize, new_pprice = 0.0, 0.0
        else:
            new_pprice = pprice
    fee = qty_to_cost(qty, price, ex.inverse, ex.c_mult) * maker_fee
    balance = account.balance + pnl - fee

    new_position = PositionState(
        symbol=order.symbol,
        side=side if new_psize > 0.0 else PositionSide.FLAT,
        size=new_psize,
        price=new_pprice,
    )
    pnl_cumsum_last = account.pnl_cumsum_last + pnl
    account = replace(
        account.with_position(new_position),
        balance=balance,
        pnl_cumsum_last=pnl_cumsum_last,
        pnl_cumsum_max=max(account.pnl_cumsum_max, pnl_cumsum_last),
    )
    fill = Fill(
        index=index,
        timestamp=timestamp,
        symbol=order.symbol,
        order_type=order.order_type,
        side=order.side,
        qty=qty,
        price=price,
        fee_paid=fee,
        pnl=pnl,
        balance=balance,
        position_size=new_psize,
        position_price=new_pprice,
    )
    return FillResult(account, fill)


class BacktestSimulator:
    """Replays a price series through the strategy engine.

    A simulator instance is single-use: ``run`` may be called once.
    """

    def __init__(
        self,
        strategy_config: StrategyConfig,
        simulator_config: Optional[SimulatorConfig] = None,
        starting_balance: float = 1000.0,
        engine: Optional[StrategyEngine] = None,
    ):
        self.strategy_config = strategy_config
        self.simulator_config = simulator_config or SimulatorConfig()
        self.starting_balance = starting_balance
        self.engine = engine or StrategyEngine()
        self.exchange_params = exchange_params_from(self.simulator_config)
        self._status = SimulationStatus.IDLE
        self._order_counter = 0

    @property
    def status(self) -> SimulationStatus:
        return self._status

    def _next_id(self) -> str:
        self._order_counter += 1
        return f"sim-{self._order_counter}"

    def _fill_sequence(self, orders: Sequence[Order], price: float) -> List[Order]:
        crossed = [o for o in orders if o.crosses(price)]
        entries = [o for o in crossed if o.is_entry]
        closes = [o for o in crossed if not o.is_entry]
        if self.simulator_config.fill_priority == "entries_first":
            return entries + closes
        return closes + entries

    def run(self, series: Sequence[MarketTick]) -> BacktestResult:
        """Run the full series and return the result.

        Raises:
            InvalidConfiguration: before the run starts, if the strategy
                config is out of range and the engine does not clamp.
        """
        if self._status != SimulationStatus.IDLE:
            raise RuntimeError("simulator instances are single-use")
        # Validate up front so a bad config never produces a partial run
        config, clamps = self.engine.validate(self.strategy_config)

        symbol = series[0].symbol if series else ""
        step_ms = expected_step_ms(series, self.simulator_config.step_ms)
        ex = self.exchange_params
        maker_fee = self.simulator_config.maker_fee
        mmr = self.simulator_config.maintenance_margin_rate
        tracker = MarketStateTracker(config, ex)
        account = AccountState(balance=self.starting_balance)
        resting: List[Order] = []
        samples: List[EquitySample] = []
        fills: List[Fill] = []
        liquidation: Optional[LiquidationEvent] = None
        skipped = 0
        error: Optional[str] = None
        prev_timestamp: Optional[int] = None

        self._status = SimulationStatus.RUNNING
        for tick in series:
            if tick.symbol != symbol:
                error = f"tick for {tick.symbol} in {symbol} series at {tick.timestamp}"
            elif not tick.is_valid():
                error = f"malformed price {tick.price!r} at {tick.timestamp}"
            elif prev_timestamp is not None and tick.timestamp <= prev_timestamp:
                error = f"non-increasing timestamp {tick.timestamp} after {prev_timestamp}"
            elif prev_timestamp is not None and step_ms is not None and tick.timestamp - prev_timestamp != step_ms:
                error = f"missing ticks between {prev_timestamp} and {tick.timestamp} (expected {step_ms}ms step)"
            if error is not None:
                self._status = SimulationStatus.FAILED
                break
            prev_timestamp = tick.timestamp

            market = tracker.update(tick)
            outcome = self.engine.decide(market, account, config)
            if isinstance(outcome, Decision):
                resting, _, _ = reconcile_orders(resting, outcome.orders, self._next_id)
            else:
                skipped += 1

            filled_ids = set()
            for order in self._fill_sequence(resting, tick.price):
                result = apply_fill(account, order, order.price, tick.timestamp, len(fills), maker_fee, ex)
                filled_ids.add(order.id)
                if result.fill is None:
                    continue
                account = result.account
                fills.append(result.fill)
                tracker.reset_trailing(order.position_side == PositionSide.LONG)
            if filled_ids:
                resting = [o for o in resting if o.id not in filled_ids]

            position = account.position(symbol)
            equity = account.balance
            if not position.is_flat:
                equity += calc_pnl(
                    position.side == PositionSide.LONG, position.price, tick.price, position.size, ex
                )
            samples.append(
                EquitySample(
                    timestamp=tick.timestamp,
                    balance=account.balance,
                    equity=equity,
                    position_size=position.size,
                    position_price=position.price,
                    wallet_exposure=calc_wallet_exposure(account.balance, position.size, position.price, ex),
                )
            )

            if not position.is_flat:
                notional = qty_to_cost(position.size, tick.price, ex.inverse, ex.c_mult)
                if equity <= mmr * notional:
                    long = position.side == PositionSide.LONG
                    forced = Order.from_grid(
                        symbol,
                        position.size,
                        tick.price,
                        GridOrderType.CLOSE_LIQUIDATION_LONG if long else GridOrderType.CLOSE_LIQUIDATION_SHORT,
                    )
                    result = apply_fill(account, forced, tick.price, tick.timestamp, len(fills), maker_fee, ex)
                    account = result.account
                    if result.fill is not None:
                        fills.append(result.fill)
                    liquidation = LiquidationEvent(
                        timestamp=tick.timestamp,
                        price=tick.price,
                        position_side=position.side.value,
                        position_size=position.size,
                        position_price=position.price,
                        equity=equity,
                        balance_after=account.balance,
                    )
                    resting = []
                    break

        if self._status == SimulationStatus.RUNNING:
            self._status = SimulationStatus.COMPLETED

        analysis = analyze(samples, fills, self.starting_balance, final_balance=account.balance)
        analysis["liquidated"] = liquidation is not None
        analysis["skipped_ticks"] = skipped
        analysis["n_clamps"] = len(clamps)
        logger.debug(
            "simulator.finished",
            symbol=symbol,
            status=self._status.value,
            ticks=len(samples),
            fills=len(fills),
            liquidated=liquidation is not None,
        )
        return BacktestResult(
            status=self._status,
            symbol=symbol,
            starting_balance=self.starting_balance,
            equity=tuple(samples),
            fills=tuple(fills),
            liquidation=liquidation,
            analysis=analysis,
            clamps=tuple(clamps),
            skipped_ticks=skipped,
            error=error,
        )


def run_backtest(
    series: Sequence[MarketTick],
    strategy_config: StrategyConfig,
    simulator_config: Optional[SimulatorConfig] = None,
    starting_balance: float = 1000.0,
    clamp_out_of_range: bool = False,
) -> BacktestResult:
    """Convenience wrapper: one fresh simulator, one run."""
    simulator = BacktestSimulator(
        strategy_config,
        simulator_config,
        starting_balance,
        engine=StrategyEngine(clamp_out_of_range=clamp_out_of_range),
    )
    return simulator.run(series)
