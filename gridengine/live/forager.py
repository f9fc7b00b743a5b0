"""Symbol selection for live trading."""

from typing import Any, Dict, List, Optional, Sequence

import structlog

from gridengine.core.config import LiveConfig

logger = structlog.get_logger(__name__)

MS_PER_DAY = 86_400_000


def select_symbols(
    markets: Sequence[Dict[str, Any]],
    config: LiveConfig,
    now_ms: int,
    max_symbols: Optional[int] = None,
) -> List[str]:
    """
    Eligible symbols, highest 24h quote volume first.

    A market is eligible when it is an active linear swap quoted in
    ``config.quote``, not ignored, approved (or ``empty_means_all_approved``
    with an empty approved list), listed at least ``minimum_coin_age_days``
    ago and trading at least ``min_vol_24h`` quote volume. Markets without a
    listing date are treated as old enough.
    """
    approved = set(config.approved_coins)
    ignored = set(config.ignored_coins)
    min_age_ms = config.minimum_coin_age_days * MS_PER_DAY
    eligible = []
    for market in markets:
        symbol = market["symbol"]
        if not (market.get("active") and market.get("swap") and market.get("linear")):
            continue
        if market.get("quote") != config.quote or symbol in ignored:
            continue
        if symbol not in approved and not (config.empty_means_all_approved and not approved):
            continue
        created = market.get("created")
        if created is not None and now_ms - created < min_age_ms:
            continue
        volume = float(market.get("quote_volume") or 0.0)
        if volume < config.min_vol_24h:
            continue
        eligible.append((volume, symbol))

    eligible.sort(key=lambda item: (-item[0], item[1]))
    symbols = [symbol for _, symbol in eligible]
    if max_symbols is not None:
        symbols = symbols[:max_symbols]
    logger.info("forager.selected", count=len(symbols), symbols=symbols, candidates=len(markets))
    return symbols
