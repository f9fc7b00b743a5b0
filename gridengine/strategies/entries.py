"""Entry order computation for grid/DCA positions.

Every function works for both position sides; ``long`` selects the direction.
Long entries buy below the market (rounding prices down, capped at the bid),
short entries sell above it (rounding up, floored at the ask).
"""

from typing import List

from gridengine.core.config import BotSideConfig
from gridengine.core.models import EMABands, ExchangeParams, GridOrderType, TrailingPriceBundle
from gridengine.strategies.utils import (
    NO_ORDER,
    GridOrder,
    calc_ema_price_ask,
    calc_ema_price_bid,
    calc_initial_entry_qty,
    calc_min_entry_qty,
    calc_new_psize_pprice,
    calc_pnl,
    calc_reentry_qty,
    calc_wallet_exposure,
    calc_wallet_exposure_if_filled,
    find_entry_qty_bringing_wallet_exposure_to_target,
    interpolate,
    round_,
    round_dn,
    round_up,
)

_TYPES = {
    True: {
        "initial_normal": GridOrderType.ENTRY_INITIAL_NORMAL_LONG,
        "initial_partial": GridOrderType.ENTRY_INITIAL_PARTIAL_LONG,
        "grid_normal": GridOrderType.ENTRY_GRID_NORMAL_LONG,
        "grid_cropped": GridOrderType.ENTRY_GRID_CROPPED_LONG,
        "grid_inflated": GridOrderType.ENTRY_GRID_INFLATED_LONG,
        "trailing_normal": GridOrderType.ENTRY_TRAILING_NORMAL_LONG,
        "trailing_cropped": GridOrderType.ENTRY_TRAILING_CROPPED_LONG,
        "unstuck": GridOrderType.ENTRY_UNSTUCK_LONG,
    },
    False: {
        "initial_normal": GridOrderType.ENTRY_INITIAL_NORMAL_SHORT,
        "initial_partial": GridOrderType.ENTRY_INITIAL_PARTIAL_SHORT,
        "grid_normal": GridOrderType.ENTRY_GRID_NORMAL_SHORT,
        "grid_cropped": GridOrderType.ENTRY_GRID_CROPPED_SHORT,
        "grid_inflated": GridOrderType.ENTRY_GRID_INFLATED_SHORT,
        "trailing_normal": GridOrderType.ENTRY_TRAILING_NORMAL_SHORT,
        "trailing_cropped": GridOrderType.ENTRY_TRAILING_CROPPED_SHORT,
        "unstuck": GridOrderType.ENTRY_UNSTUCK_SHORT,
    },
}


# =============================================================================
# Prices
# =============================================================================


def calc_initial_entry_price(
    long: bool, book_price: float, ema_bands: EMABands, params: BotSideConfig, ex: ExchangeParams
) -> float:
    if long:
        return calc_ema_price_bid(ex.price_step, book_price, ema_bands.lower, params.entry_initial_ema_dist)
    return calc_ema_price_ask(ex.price_step, book_price, ema_bands.upper, params.entry_initial_ema_dist)


def calc_reentry_price(
    long: bool,
    pprice: float,
    wallet_exposure: float,
    book_price: float,
    wallet_exposure_limit: float,
    params: BotSideConfig,
    ex: ExchangeParams,
) -> float:
    """Next grid level; spacing widens as exposure approaches the limit."""
    multiplier = 0.0
    if wallet_exposure_limit > 0.0:
        multiplier = wallet_exposure / wallet_exposure_limit * params.entry_grid_spacing_weight
    spacing = params.entry_grid_spacing_pct * (1.0 + multiplier)
    if long:
        price = min(round_dn(pprice * (1.0 - spacing), ex.price_step), book_price)
    else:
        price = max(round_up(pprice * (1.0 + spacing), ex.price_step), book_price)
    return 0.0 if price <= ex.price_step else price


def calc_cropped_reentry_qty(
    balance: float,
    psize: float,
    pprice: float,
    wallet_exposure: float,
    wallet_exposure_limit: float,
    reentry_qty: float,
    reentry_price: float,
    ex: ExchangeParams,
):
    """Shrink a reentry so exposure after the fill stays near the limit.

    Returns (wallet exposure if filled, possibly cropped qty).
    """
    we_if_filled = calc_wallet_exposure_if_filled(balance, psize, pprice, reentry_qty, reentry_price, ex)
    min_entry_qty = calc_min_entry_qty(reentry_price, ex)
    if we_if_filled > wallet_exposure_limit * 1.01:
        cropped = interpolate(
            wallet_exposure_limit, [wallet_exposure, we_if_filled], [psize, psize + reentry_qty]
        ) - psize
        cropped = max(round_(cropped, ex.qty_step), min_entry_qty)
        we_if_filled = calc_wallet_exposure_if_filled(balance, psize, pprice, cropped, reentry_price, ex)
        return we_if_filled, cropped
    return we_if_filled, max(reentry_qty, min_entry_qty)


def _initial_or_partial(
    long: bool,
    balance: float,
    psize: float,
    initial_price: float,
    wallet_exposure_limit: float,
    params: BotSideConfig,
    ex: ExchangeParams,
):
    """Initial entry for a flat or not-yet-filled position, else None."""
    initial_qty = calc_initial_entry_qty(
        balance, initial_price, wallet_exposure_limit, params.entry_initial_qty_pct, ex
    )
    if psize == 0.0:
        return GridOrder(initial_qty, initial_price, _TYPES[long]["initial_normal"]), initial_qty
    if psize < initial_qty * 0.8:
        qty = max(calc_min_entry_qty(initial_price, ex), round_dn(initial_qty - psize, ex.qty_step))
        return GridOrder(qty, initial_price, _TYPES[long]["initial_partial"]), initial_qty
    return None, initial_qty


# =============================================================================
# Grid entries
# =============================================================================


def calc_grid_entry(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    params: BotSideConfig,
    wallet_exposure_limit: float,
    ex: ExchangeParams,
) -> GridOrder:
    if wallet_exposure_limit == 0.0 or balance <= 0.0:
        return NO_ORDER
    initial_price = calc_initial_entry_price(long, book_price, ema_bands, params, ex)
    if initial_price <= ex.price_step:
        return NO_ORDER
    initial, initial_qty = _initial_or_partial(
        long, balance, psize, initial_price, wallet_exposure_limit, params, ex
    )
    if initial is not None:
        return initial

    wallet_exposure = calc_wallet_exposure(balance, psize, pprice, ex)
    if wallet_exposure >= wallet_exposure_limit * 0.999:
        return NO_ORDER

    reentry_price = calc_reentry_price(
        long, pprice, wallet_exposure, book_price, wallet_exposure_limit, params, ex
    )
    if reentry_price <= 0.0:
        return NO_ORDER
    reentry_qty = max(
        calc_reentry_qty(
            psize,
            balance,
            reentry_price,
            params.entry_grid_double_down_factor,
            params.entry_initial_qty_pct,
            wallet_exposure_limit,
            ex,
        ),
        initial_qty,
    )
    we_if_filled, cropped_qty = calc_cropped_reentry_qty(
        balance, psize, pprice, wallet_exposure, wallet_exposure_limit, reentry_qty, reentry_price, ex
    )
    if cropped_qty < reentry_qty:
        return GridOrder(cropped_qty, reentry_price, _TYPES[long]["grid_cropped"])

    # Preview the following level; inflate this one if the next would be too small
    psize_if_filled, pprice_if_filled = calc_new_psize_pprice(
        psize, pprice, reentry_qty, reentry_price, ex.qty_step
    )
    next_price = calc_reentry_price(
        long, pprice_if_filled, we_if_filled, book_price, wallet_exposure_limit, params, ex
    )
    if next_price > 0.0:
        next_qty = max(
            calc_reentry_qty(
                psize_if_filled,
                balance,
                next_price,
                params.entry_grid_double_down_factor,
                params.entry_initial_qty_pct,
                wallet_exposure_limit,
                ex,
            ),
            initial_qty,
        )
        _, next_cropped = calc_cropped_reentry_qty(
            balance,
            psize_if_filled,
            pprice_if_filled,
            we_if_filled,
            wallet_exposure_limit,
            next_qty,
            next_price,
            ex,
        )
        effective_ddf = next_cropped / psize_if_filled if psize_if_filled > 0.0 else 0.0
        if effective_ddf < params.entry_grid_double_down_factor * 0.25:
            inflated = interpolate(
                wallet_exposure_limit, [wallet_exposure, we_if_filled], [psize, psize + reentry_qty]
            ) - psize
            inflated = max(round_(inflated, ex.qty_step), calc_min_entry_qty(reentry_price, ex))
            return GridOrder(inflated, reentry_price, _TYPES[long]["grid_inflated"])
    return GridOrder(reentry_qty, reentry_price, _TYPES[long]["grid_normal"])


# =============================================================================
# Trailing entries
# =============================================================================


def calc_trailing_entry(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    trailing: TrailingPriceBundle,
    params: BotSideConfig,
    wallet_exposure_limit: float,
    ex: ExchangeParams,
) -> GridOrder:
    initial_price = calc_initial_entry_price(long, book_price, ema_bands, params, ex)
    if initial_price <= ex.price_step:
        return NO_ORDER
    initial, initial_qty = _initial_or_partial(
        long, balance, psize, initial_price, wallet_exposure_limit, params, ex
    )
    if initial is not None:
        return initial

    wallet_exposure = calc_wallet_exposure(balance, psize, pprice, ex)
    if wallet_exposure > wallet_exposure_limit * 0.999:
        return NO_ORDER

    threshold = params.entry_trailing_threshold_pct
    retracement = params.entry_trailing_retracement_pct
    triggered = False
    reentry_price = 0.0
    if long:
        bounced = trailing.max_since_min > trailing.min_since_open * (1.0 + retracement)
        if threshold <= 0.0:
            if retracement > 0.0 and bounced:
                triggered, reentry_price = True, book_price
        elif retracement <= 0.0:
            triggered = True
            reentry_price = min(book_price, round_dn(pprice * (1.0 - threshold), ex.price_step))
        elif trailing.min_since_open < pprice * (1.0 - threshold) and bounced:
            triggered = True
            reentry_price = min(
                book_price, round_dn(pprice * (1.0 - threshold + retracement), ex.price_step)
            )
    else:
        bounced = trailing.min_since_max < trailing.max_since_open * (1.0 - retracement)
        if threshold <= 0.0:
            if retracement > 0.0 and bounced:
                triggered, reentry_price = True, book_price
        elif retracement <= 0.0:
            triggered = True
            reentry_price = max(book_price, round_up(pprice * (1.0 + threshold), ex.price_step))
        elif trailing.max_since_open > pprice * (1.0 + threshold) and bounced:
            triggered = True
            reentry_price = max(
                book_price, round_up(pprice * (1.0 + threshold - retracement), ex.price_step)
            )
    if not triggered:
        return GridOrder(0.0, 0.0, _TYPES[long]["trailing_normal"])

    reentry_qty = max(
        calc_reentry_qty(
            psize,
            balance,
            reentry_price,
            params.entry_grid_double_down_factor,
            params.entry_initial_qty_pct,
            wallet_exposure_limit,
            ex,
        ),
        initial_qty,
    )
    _, cropped_qty = calc_cropped_reentry_qty(
        balance, psize, pprice, wallet_exposure, wallet_exposure_limit, reentry_qty, reentry_price, ex
    )
    if cropped_qty < reentry_qty:
        return GridOrder(cropped_qty, reentry_price, _TYPES[long]["trailing_cropped"])
    return GridOrder(reentry_qty, reentry_price, _TYPES[long]["trailing_normal"])


# =============================================================================
# Routing
# =============================================================================


def calc_next_entry(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    trailing: TrailingPriceBundle,
    params: BotSideConfig,
    ex: ExchangeParams,
) -> GridOrder:
    """Pick grid or trailing logic according to ``entry_trailing_grid_ratio``.

    ratio 0 means grid only, |ratio| >= 1 trailing only. A positive ratio uses
    trailing entries until wallet exposure reaches ``ratio`` of the limit, then
    grid entries; a negative ratio does grid first up to ``1 + ratio``.
    """
    wel = params.wallet_exposure_limit
    if wel == 0.0 or balance <= 0.0:
        return NO_ORDER
    ratio = params.entry_trailing_grid_ratio

    def grid(limit: float) -> GridOrder:
        return calc_grid_entry(long, balance, psize, pprice, book_price, ema_bands, params, limit, ex)

    def trail(limit: float) -> GridOrder:
        return calc_trailing_entry(
            long, balance, psize, pprice, book_price, ema_bands, trailing, params, limit, ex
        )

    if ratio >= 1.0 or ratio <= -1.0:
        return trail(wel)
    if ratio == 0.0:
        return grid(wel)

    wallet_exposure = calc_wallet_exposure(balance, psize, pprice, ex)
    we_ratio = wallet_exposure / wel
    if ratio > 0.0:
        if we_ratio < ratio:
            return trail(wel if wallet_exposure == 0.0 else wel * ratio * 1.01)
        return grid(wel)
    if we_ratio < 1.0 + ratio:
        return grid(wel if wallet_exposure == 0.0 else wel * (1.0 + ratio) * 1.01)
    return trail(wel)


def calc_auto_unstuck_entry(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    params: BotSideConfig,
    ex: ExchangeParams,
) -> GridOrder:
    """Entry far beyond the EMA band that brings exposure up to the limit."""
    if long:
        price = min(book_price, round_dn(ema_bands.lower * (1.0 - params.unstuck_ema_dist), ex.price_step))
    else:
        price = max(book_price, round_up(ema_bands.upper * (1.0 + params.unstuck_ema_dist), ex.price_step))
    if price <= ex.price_step:
        return NO_ORDER
    qty = find_entry_qty_bringing_wallet_exposure_to_target(
        balance, psize, pprice, params.wallet_exposure_limit, price, ex
    )
    if qty == 0.0:
        return NO_ORDER
    return GridOrder(max(qty, calc_min_entry_qty(price, ex)), price, _TYPES[long]["unstuck"])


def calc_entries(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    trailing: TrailingPriceBundle,
    params: BotSideConfig,
    ex: ExchangeParams,
    max_levels: int = 1,
) -> List[GridOrder]:
    """Entry ladder for one side.

    A flat position gets exactly one initial entry. Otherwise an auto-unstuck
    entry may come first, followed by up to ``max_levels`` grid levels, each
    computed as if the previous one had filled.
    """
    if balance <= 0.0 or not params.enabled:
        return []
    if psize == 0.0:
        entry = calc_next_entry(long, balance, 0.0, 0.0, book_price, ema_bands, trailing, params, ex)
        return [] if entry.empty else [entry]

    entries: List[GridOrder] = []
    pos_pnl_pct = calc_pnl(long, pprice, book_price, psize, ex) / balance
    if long:
        band_dist = book_price / ema_bands.lower - 1.0 if ema_bands.lower > 0 else 0.0
    else:
        band_dist = ema_bands.upper / book_price - 1.0 if book_price > 0 else 0.0
    if -pos_pnl_pct > params.unstuck_threshold and band_dist > params.unstuck_ema_dist:
        unstuck = calc_auto_unstuck_entry(long, balance, psize, pprice, book_price, ema_bands, params, ex)
        if not unstuck.empty:
            entries.append(unstuck)

    for _ in range(max_levels):
        entry = calc_next_entry(long, balance, psize, pprice, book_price, ema_bands, trailing, params, ex)
        if entry.empty:
            break
        if entries:
            if entry.order_type is not None and entry.order_type.is_trailing:
                break
            if entries[-1].price == entry.price:
                break
        psize, pprice = calc_new_psize_pprice(psize, pprice, entry.qty, entry.price, ex.qty_step)
        book_price = min(book_price, entry.price) if long else max(book_price, entry.price)
        entries.append(entry)
    return entries
