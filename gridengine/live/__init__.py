"""Live trading: per-symbol reconciliation loops, symbol selection."""

from gridengine.live.forager import select_symbols
from gridengine.live.manager import LiveManager, SymbolLoop
from gridengine.live.reconcile import ReconcilePlan, reconcile

__all__ = [
    "LiveManager",
    "ReconcilePlan",
    "SymbolLoop",
    "reconcile",
    "select_symbols",
]
