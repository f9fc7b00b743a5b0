"""Exchange adapters: the interface, a ccxt implementation and a paper exchange."""

from gridengine.exchange.base import ExchangeAdapter
from gridengine.exchange.ccxt_client import CcxtExchange, with_retry
from gridengine.exchange.paper import PaperExchange

__all__ = ["ExchangeAdapter", "CcxtExchange", "PaperExchange", "with_retry"]
