"""Exchange adapter interface consumed by the live execution layer."""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from gridengine.core.models import AccountState, ExchangeParams, MarketTick, Order


class ExchangeAdapter(ABC):
    """Capabilities the live loops need from an exchange connection.

    Implementations raise ``TransientExchangeError`` for failures that may
    clear up on their own (after their own retries are exhausted) and
    ``OrderRejected`` / ``ExchangeError`` for everything else.
    """

    name: str = "exchange"

    async def initialize(self) -> None:
        """Open connections and load market metadata."""

    async def close(self) -> None:
        """Release connections."""

    @abstractmethod
    async def place_order(self, order: Order) -> str:
        """Submit a limit order; returns the exchange order id."""

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str) -> bool:
        """Cancel an order; False when it no longer exists."""

    @abstractmethod
    async def fetch_account_state(self, symbols: Sequence[str]) -> AccountState:
        """Balance, positions and open orders for ``symbols``."""

    @abstractmethod
    async def fetch_open_orders(self, symbol: str) -> List[Order]:
        ...

    @abstractmethod
    async def fetch_balance(self, asset: str) -> float:
        ...

    @abstractmethod
    async def fetch_exchange_params(self, symbol: str) -> ExchangeParams:
        ...

    @abstractmethod
    def stream_price(self, symbol: str) -> AsyncIterator[MarketTick]:
        """Async iterator of price ticks for ``symbol``."""

    @abstractmethod
    async def fetch_markets(self) -> List[Dict[str, Any]]:
        """Tradable markets with ``symbol``, ``active``, ``swap``, ``linear``,
        ``quote``, ``created`` (ms or None) and ``quote_volume`` keys."""

    @abstractmethod
    async def transfer(
        self, asset: str, amount: float, from_account: str, to_account: str
    ) -> Optional[Dict[str, Any]]:
        """Move funds between wallets of the same account."""
