"""Grid/DCA strategy engine and the market state it decides on."""

from gridengine.strategies.engine import Decision, DecisionOutcome, NoDecision, StrategyEngine
from gridengine.strategies.market_state import MarketState, MarketStateTracker

__all__ = [
    "Decision",
    "DecisionOutcome",
    "MarketState",
    "MarketStateTracker",
    "NoDecision",
    "StrategyEngine",
]
