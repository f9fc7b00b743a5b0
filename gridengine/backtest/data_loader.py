"""
Historical Data Loader for backtesting and optimization.

Downloads OHLCV candles via CCXT, caches them as one CSV per symbol and
timeframe, and turns the cache into gap-free MarketTick series (one tick per
candle, priced at the close).
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import ccxt.async_support as ccxt
import pandas as pd
import structlog

from gridengine.core.errors import DataGapError, InsufficientData
from gridengine.core.models import MarketTick
from gridengine.exchange.ccxt_client import with_retry

logger = structlog.get_logger(__name__)

OHLCV_COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]
FETCH_LIMIT = 1000

DateLike = Union[int, str, datetime, None]


def timeframe_to_ms(timeframe: str) -> int:
    return int(ccxt.Exchange.parse_timeframe(timeframe) * 1000)


def to_ms(value: DateLike) -> Optional[int]:
    """Milliseconds since epoch from an int, ISO date string or datetime."""
    if value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    return int(pd.Timestamp(value, tz="UTC").value // 1_000_000)


def validate_series(ticks: Sequence[MarketTick], step_ms: int) -> None:
    """Raise unless ``ticks`` is non-empty and spaced exactly ``step_ms`` apart.

    Raises:
        InsufficientData: the series is empty.
        DataGapError: two consecutive timestamps differ by anything but
            ``step_ms``.
    """
    if not ticks:
        raise InsufficientData("price series is empty")
    for prev, tick in zip(ticks, ticks[1:]):
        if tick.timestamp - prev.timestamp != step_ms:
            raise DataGapError(
                f"{tick.symbol}: expected {step_ms}ms step, got "
                f"{prev.timestamp} -> {tick.timestamp}",
                gap_start=prev.timestamp,
                gap_end=tick.timestamp,
            )


class HistoricalDataLoader:
    """
    Load historical market data for backtests.

    Features:
    - Downloads perpetual swap candles via CCXT, paginated
    - Caches to ``{data_dir}/{exchange}/{symbol}_{timeframe}.csv``
    - Merges new downloads into the existing cache
    - Refuses series with gaps
    """

    def __init__(
        self,
        data_dir: str = "historical_data",
        exchange_id: str = "binance",
        timeframe: str = "1m",
        exchange: Optional[ccxt.Exchange] = None,
    ):
        self.data_dir = Path(data_dir)
        self.exchange_id = exchange_id
        self.timeframe = timeframe
        self.step_ms = timeframe_to_ms(timeframe)
        self.exchange = exchange

    async def initialize(self):
        """Initialize exchange connection."""
        if self.exchange is None:
            self.exchange = getattr(ccxt, self.exchange_id)(
                {
                    "enableRateLimit": True,
                    "options": {"defaultType": "swap"},
                }
            )
        if not self.exchange.markets:
            await self.exchange.load_markets()
        logger.info("data_loader.exchange_initialized", exchange=self.exchange_id)

    async def close(self):
        """Close exchange connection."""
        if self.exchange:
            await self.exchange.close()
            self.exchange = None

    def cache_path(self, symbol: str) -> Path:
        safe_symbol = symbol.replace("/", "_").replace(":", "_")
        return self.data_dir / self.exchange_id / f"{safe_symbol}_{self.timeframe}.csv"

    # =========================================================================
    # Download
    # =========================================================================

    @with_retry()
    async def _fetch_page(self, symbol: str, since: int) -> List[List]:
        return await self.exchange.fetch_ohlcv(symbol, timeframe=self.timeframe, since=since, limit=FETCH_LIMIT)

    async def download(self, symbol: str, start_date: DateLike, end_date: DateLike) -> int:
        """
        Download candles for ``[start_date, end_date)`` and merge them into the
        cache.

        Returns:
            Number of candles in the cache after merging.
        """
        start_ms = to_ms(start_date)
        end_ms = to_ms(end_date)
        logger.info("data_loader.downloading", symbol=symbol, start=start_ms, end=end_ms)

        await self.initialize()
        rows: List[List] = []
        since = start_ms
        while since < end_ms:
            page = await self._fetch_page(symbol, since)
            if not page:
                break
            rows.extend(c for c in page if c[0] < end_ms)
            last_timestamp = page[-1][0]
            if last_timestamp >= end_ms or last_timestamp < since:
                break
            since = last_timestamp + 1
            # Rate limit protection
            await asyncio.sleep(0.1)

        df = pd.DataFrame(rows, columns=OHLCV_COLUMNS)
        path = self.cache_path(symbol)
        if path.exists():
            df = pd.concat([pd.read_csv(path), df], ignore_index=True)
        df = df.drop_duplicates(subset="timestamp", keep="last").sort_values("timestamp")
        path.parent.mkdir(parents=True, exist_ok=True)
        df.to_csv(path, index=False)
        logger.info("data_loader.cached", symbol=symbol, file=str(path), records=len(df), new=len(rows))
        return len(df)

    # =========================================================================
    # Load
    # =========================================================================

    def load_frame(self, symbol: str, start_date: DateLike = None, end_date: DateLike = None) -> pd.DataFrame:
        path = self.cache_path(symbol)
        if not path.exists():
            raise InsufficientData(f"no cached data for {symbol} at {path}")
        df = pd.read_csv(path)
        start_ms = to_ms(start_date)
        end_ms = to_ms(end_date)
        if start_ms is not None:
            df = df[df["timestamp"] >= start_ms]
        if end_ms is not None:
            df = df[df["timestamp"] < end_ms]
        return df.sort_values("timestamp").reset_index(drop=True)

    def load_series(
        self, symbol: str, start_date: DateLike = None, end_date: DateLike = None
    ) -> Tuple[MarketTick, ...]:
        """
        Load a finite, ordered, gap-free tick series from the cache.

        Raises:
            InsufficientData: nothing cached in the requested range.
            DataGapError: candles are missing inside the range.
        """
        df = self.load_frame(symbol, start_date, end_date)
        ticks = tuple(
            MarketTick(symbol=symbol, timestamp=int(ts), price=float(close), volume=float(volume))
            for ts, close, volume in zip(df["timestamp"], df["close"], df["volume"])
        )
        validate_series(ticks, self.step_ms)
        logger.info(
            "data_loader.series_loaded",
            symbol=symbol,
            ticks=len(ticks),
            start=ticks[0].timestamp,
            end=ticks[-1].timestamp,
        )
        return ticks
