"""Live risk controls.

Two concerns live here:

- ``ExposureSnapshot``: an immutable view of wallet exposure across all
  live symbols. Symbol loops never read each other's state; they read the
  latest snapshot, which the live manager replaces on a short interval.
- ``RiskManager``: per-symbol halt bookkeeping. A halted symbol places no new
  orders. Connectivity halts lift themselves after the next successful
  account refresh; rejection halts stay until an operator resumes the symbol.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog

from gridengine.core.config import StrategyConfig
from gridengine.core.models import AccountState, ExchangeParams, PositionSide
from gridengine.strategies.utils import calc_wallet_exposure

logger = structlog.get_logger(__name__)


class HaltReason(str, Enum):
    """Why new order placement is halted for a symbol."""
    CONNECTIVITY = "connectivity"  # lifted by the next successful refresh
    REJECTED = "rejected"          # lifted by resume()


@dataclass
class HaltState:
    reason: HaltReason
    triggered_at: datetime
    error: Optional[str] = None


@dataclass
class RiskCheck:
    """Result of a risk validation check.

    Attributes:
        passed: Whether new orders may be placed at all
        allow_entries: Whether entry orders may be placed
        reason: Human-readable explanation if something is blocked
    """
    passed: bool
    allow_entries: bool = True
    reason: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExposureSnapshot:
    """Cross-symbol wallet exposure at one point in time."""

    timestamp: float = 0.0
    balance: float = 0.0
    # symbol -> (position side, wallet exposure)
    exposures: Mapping[str, tuple] = field(default_factory=dict)

    @classmethod
    def from_account(
        cls,
        account: AccountState,
        exchange_params: Mapping[str, ExchangeParams],
        timestamp: float,
    ) -> "ExposureSnapshot":
        exposures = {}
        for symbol, position in account.positions.items():
            if position.is_flat:
                continue
            ex = exchange_params.get(symbol) or ExchangeParams()
            exposures[symbol] = (
                position.side,
                calc_wallet_exposure(account.balance, position.size, position.price, ex),
            )
        return cls(timestamp=timestamp, balance=account.balance, exposures=exposures)

    def total_exposure(self, side: PositionSide) -> float:
        return sum(we for s, we in self.exposures.values() if s == side)

    @property
    def total_wallet_exposure(self) -> float:
        return sum(we for _, we in self.exposures.values())

    @property
    def n_positions(self) -> int:
        return len(self.exposures)


class RiskManager:
    """Halt bookkeeping and cross-symbol exposure checks for live trading."""

    # Tolerance over the configured total exposure before entries are blocked
    EXPOSURE_TOLERANCE = 1.01

    def __init__(self):
        self.halts: Dict[str, HaltState] = {}

    def halt(self, symbol: str, reason: HaltReason, error: Optional[str] = None) -> None:
        current = self.halts.get(symbol)
        # A rejection halt is never downgraded to a self-clearing one
        if current is not None and current.reason == HaltReason.REJECTED:
            return
        self.halts[symbol] = HaltState(reason=reason, triggered_at=datetime.now(timezone.utc), error=error)
        logger.warning("risk_manager.symbol_halted", symbol=symbol, reason=reason.value, error=error)

    def resume(self, symbol: str) -> bool:
        """Lift any halt on ``symbol``. Returns False if it was not halted."""
        state = self.halts.pop(symbol, None)
        if state is None:
            return False
        logger.info("risk_manager.symbol_resumed", symbol=symbol, reason=state.reason.value)
        return True

    def on_refresh_success(self, symbol: str) -> bool:
        """Lift a connectivity halt after account state was fetched again."""
        state = self.halts.get(symbol)
        if state is None or state.reason != HaltReason.CONNECTIVITY:
            return False
        return self.resume(symbol)

    def is_halted(self, symbol: str) -> bool:
        return symbol in self.halts

    def halt_reason(self, symbol: str) -> Optional[HaltReason]:
        state = self.halts.get(symbol)
        return state.reason if state else None

    def check_symbol(
        self,
        symbol: str,
        position_side: PositionSide,
        snapshot: Optional[ExposureSnapshot],
        config: StrategyConfig,
    ) -> RiskCheck:
        """May ``symbol`` place orders now, and may those include entries?

        Entries are blocked while the snapshot shows the side's combined
        exposure over other symbols already at its total limit.
        """
        if self.is_halted(symbol):
            state = self.halts[symbol]
            return RiskCheck(
                passed=False,
                allow_entries=False,
                reason=f"halted: {state.reason.value}",
                metadata={"error": state.error},
            )
        if snapshot is None:
            return RiskCheck(passed=True)
        sides = [position_side] if position_side != PositionSide.FLAT else [PositionSide.LONG, PositionSide.SHORT]
        for side in sides:
            limit = config.side(side.value).total_wallet_exposure_limit
            others = sum(we for s, (ps, we) in snapshot.exposures.items() if s != symbol and ps == side)
            if limit > 0.0 and others >= limit * self.EXPOSURE_TOLERANCE:
                return RiskCheck(
                    passed=True,
                    allow_entries=False,
                    reason=f"{side.value} exposure {others:.4f} over limit {limit}",
                    metadata={"side": side.value, "exposure": others, "limit": limit},
                )
        return RiskCheck(passed=True)

    def get_risk_report(self, snapshot: Optional[ExposureSnapshot] = None) -> Dict[str, Any]:
        report: Dict[str, Any] = {
            "halted": {
                symbol: {
                    "reason": state.reason.value,
                    "since": state.triggered_at.isoformat(),
                    "error": state.error,
                }
                for symbol, state in self.halts.items()
            }
        }
        if snapshot is not None:
            report.update(
                balance=snapshot.balance,
                total_wallet_exposure=snapshot.total_wallet_exposure,
                long_exposure=snapshot.total_exposure(PositionSide.LONG),
                short_exposure=snapshot.total_exposure(PositionSide.SHORT),
                n_positions=snapshot.n_positions,
            )
        return report
