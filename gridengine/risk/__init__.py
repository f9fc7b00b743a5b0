"""Risk management for live trading: exposure snapshots and symbol halts."""

from gridengine.risk.risk_manager import (
    ExposureSnapshot,
    HaltReason,
    HaltState,
    RiskCheck,
    RiskManager,
)

__all__ = [
    "ExposureSnapshot",
    "HaltReason",
    "HaltState",
    "RiskCheck",
    "RiskManager",
]
