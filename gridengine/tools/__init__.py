"""Operational tools that run beside the trading loops."""

from gridengine.tools.profit_transfer import ProfitState, ProfitTransferer

__all__ = ["ProfitState", "ProfitTransferer"]
