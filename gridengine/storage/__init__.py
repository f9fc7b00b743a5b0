"""Persistent storage for live trading events."""

from gridengine.storage.database import TradeJournal

__all__ = ["TradeJournal"]
