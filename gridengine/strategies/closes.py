"""Take-profit and unstuck close orders.

Long closes sell above the average entry price, short closes buy below it.
Grid closes split the position across ``n_close_orders`` levels spread from
``close_grid_min_markup`` over ``close_grid_markup_range``; a trailing close
replaces the grid when its retracement trigger fires.
"""

from typing import List

from gridengine.core.config import BotSideConfig
from gridengine.core.models import EMABands, ExchangeParams, GridOrderType, TrailingPriceBundle
from gridengine.strategies.utils import (
    GridOrder,
    calc_auto_unstuck_allowance,
    calc_clock_qty,
    calc_min_entry_qty,
    calc_pnl,
    calc_wallet_exposure,
    cost_to_qty,
    find_close_qty_bringing_wallet_exposure_to_target,
    round_,
    round_dn,
    round_up,
)


def _grid_type(long: bool) -> GridOrderType:
    return GridOrderType.CLOSE_GRID_LONG if long else GridOrderType.CLOSE_GRID_SHORT


def _unstuck_type(long: bool) -> GridOrderType:
    return GridOrderType.CLOSE_UNSTUCK_LONG if long else GridOrderType.CLOSE_UNSTUCK_SHORT


def _trailing_type(long: bool) -> GridOrderType:
    return GridOrderType.CLOSE_TRAILING_LONG if long else GridOrderType.CLOSE_TRAILING_SHORT


def generate_raw_close_prices(
    long: bool, pprice: float, min_markup: float, markup_range: float, n_close_orders: int
) -> List[float]:
    if long:
        start = pprice * (1.0 + min_markup)
    else:
        start = pprice * (1.0 - min_markup)
    step = pprice * markup_range / max(n_close_orders - 1.0, 1.0)
    return [start + step * i if long else start - step * i for i in range(n_close_orders)]


def _round_close_price(long: bool, price: float, ex: ExchangeParams) -> float:
    return round_up(price, ex.price_step) if long else round_dn(price, ex.price_step)


def _reachable(long: bool, price: float, book_price: float) -> bool:
    """Close price is on the passive side of the book."""
    return price >= book_price if long else price <= book_price


# =============================================================================
# Auto-unstuck
# =============================================================================


def calc_auto_unstuck_close(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    params: BotSideConfig,
    ex: ExchangeParams,
    lowest_normal_close_price: float,
    pnl_cumsum_max: float = 0.0,
    pnl_cumsum_last: float = 0.0,
) -> GridOrder:
    """Close part of a stuck position at a loss, near the EMA band.

    Only active when exposure is above ``limit * (1 - unstuck_threshold)`` and
    the band price is closer than the first regular take-profit. The realized
    loss is kept within the loss allowance measured from the balance peak.
    """
    wel = params.wallet_exposure_limit
    threshold = wel * (1.0 - params.unstuck_threshold)
    wallet_exposure = calc_wallet_exposure(balance, psize, pprice, ex)
    if wallet_exposure <= threshold:
        return GridOrder(0.0, 0.0, _unstuck_type(long))

    if long:
        price = max(book_price, round_up(ema_bands.upper * (1.0 + params.unstuck_ema_dist), ex.price_step))
        if price >= lowest_normal_close_price:
            return GridOrder(0.0, 0.0, _unstuck_type(long))
    else:
        price = min(book_price, round_dn(ema_bands.lower * (1.0 - params.unstuck_ema_dist), ex.price_step))
        if price <= lowest_normal_close_price:
            return GridOrder(0.0, 0.0, _unstuck_type(long))

    qty = find_close_qty_bringing_wallet_exposure_to_target(
        long, balance, psize, pprice, threshold * 1.01, price, ex
    )
    if params.unstuck_close_pct > 0.0:
        qty = min(qty, calc_clock_qty(balance, wallet_exposure, price, params.unstuck_close_pct, wel, ex))
    if qty == 0.0:
        return GridOrder(0.0, 0.0, _unstuck_type(long))

    loss_per_unit = -calc_pnl(long, pprice, price, 1.0, ex)
    if loss_per_unit > 0.0:
        allowance = calc_auto_unstuck_allowance(
            balance, params.unstuck_loss_allowance_pct * wel, pnl_cumsum_max, pnl_cumsum_last
        )
        qty = min(qty, round_dn(allowance / loss_per_unit, ex.qty_step))
    min_qty = calc_min_entry_qty(price, ex)
    if qty < min_qty:
        return GridOrder(0.0, 0.0, _unstuck_type(long))
    return GridOrder(min(qty, psize), price, _unstuck_type(long))


# =============================================================================
# Grid closes
# =============================================================================


def _prepend_unstuck(
    long: bool,
    closes: List[GridOrder],
    psize_: float,
    psize: float,
    first_close_price: float,
    balance: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    params: BotSideConfig,
    ex: ExchangeParams,
    pnl_cumsum_max: float,
    pnl_cumsum_last: float,
):
    """Returns (remaining size, full close order or None)."""
    if params.unstuck_threshold == 0.0:
        return psize_, None
    unstuck = calc_auto_unstuck_close(
        long, balance, psize, pprice, book_price, ema_bands, params, ex,
        first_close_price, pnl_cumsum_max, pnl_cumsum_last,
    )
    if unstuck.empty:
        return psize_, None
    psize_ = round_(psize_ - unstuck.qty, ex.qty_step)
    if psize_ < calc_min_entry_qty(unstuck.price, ex):
        return psize_, GridOrder(psize, unstuck.price, _unstuck_type(long))
    closes.append(unstuck)
    return psize_, None


def calc_close_grid_frontwards(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    params: BotSideConfig,
    ex: ExchangeParams,
    pnl_cumsum_max: float = 0.0,
    pnl_cumsum_last: float = 0.0,
) -> List[GridOrder]:
    """Take-profit ladder filled from the nearest level outward."""
    psize_ = round_dn(psize, ex.qty_step)
    if psize_ == 0.0:
        return []
    raw = generate_raw_close_prices(
        long, pprice, params.close_grid_min_markup, params.close_grid_markup_range, params.n_close_orders
    )
    close_prices = []
    for p in raw:
        price = _round_close_price(long, p, ex)
        if _reachable(long, price, book_price):
            close_prices.append(price)
    if not close_prices:
        return [GridOrder(psize, book_price, _grid_type(long))]

    closes: List[GridOrder] = []
    psize_, full = _prepend_unstuck(
        long, closes, psize_, psize, close_prices[0], balance, pprice, book_price,
        ema_bands, params, ex, pnl_cumsum_max, pnl_cumsum_last,
    )
    if full is not None:
        return [full]

    if len(close_prices) == 1:
        if psize_ >= calc_min_entry_qty(close_prices[0], ex) or (not closes and psize_ > 0.0):
            closes.append(GridOrder(psize_, close_prices[0], _grid_type(long)))
        return closes

    default_qty = round_dn(psize_ / len(close_prices), ex.qty_step)
    for price in close_prices[:-1]:
        min_close_qty = calc_min_entry_qty(price, ex)
        if psize_ < min_close_qty:
            break
        qty = min(psize_, max(default_qty, min_close_qty))
        closes.append(GridOrder(qty, price, _grid_type(long)))
        psize_ = round_(psize_ - qty, ex.qty_step)

    last_price = close_prices[-1]
    if psize_ >= calc_min_entry_qty(last_price, ex):
        closes.append(GridOrder(psize_, last_price, _grid_type(long)))
    elif closes and psize_ > 0.0:
        last = closes[-1]
        closes[-1] = GridOrder(round_(last.qty + psize_, ex.qty_step), last.price, last.order_type)
    elif psize_ > 0.0:
        # Remainder below the minimum still closes in one order
        closes.append(GridOrder(psize_, close_prices[0], _grid_type(long)))
    return closes


def calc_close_grid_backwards(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    params: BotSideConfig,
    ex: ExchangeParams,
    pnl_cumsum_max: float = 0.0,
    pnl_cumsum_last: float = 0.0,
) -> List[GridOrder]:
    """Take-profit ladder sized for a full position, filled from the far end.

    Each level holds ``full position / n`` where a full position is the one at
    the exposure limit, so a small position only occupies the farthest levels.
    """
    psize_ = round_dn(psize, ex.qty_step)
    if psize_ == 0.0:
        return []
    full_psize = cost_to_qty(balance * params.wallet_exposure_limit, pprice, ex.inverse, ex.c_mult)
    n_close_orders = max(
        min(float(params.n_close_orders), full_psize / calc_min_entry_qty(pprice, ex)), 1.0
    )
    raw = generate_raw_close_prices(
        long, pprice, params.close_grid_min_markup, params.close_grid_markup_range, int(round(n_close_orders))
    )
    close_prices_all: List[float] = []
    close_prices: List[float] = []
    for p in raw:
        price = _round_close_price(long, p, ex)
        if price not in close_prices_all:
            close_prices_all.append(price)
            if _reachable(long, price, book_price):
                close_prices.append(price)
    if not close_prices:
        return [GridOrder(psize, book_price, _grid_type(long))]

    closes: List[GridOrder] = []
    psize_, full = _prepend_unstuck(
        long, closes, psize_, psize, close_prices[0], balance, pprice, book_price,
        ema_bands, params, ex, pnl_cumsum_max, pnl_cumsum_last,
    )
    if full is not None:
        return [full]

    if len(close_prices) == 1:
        if psize_ >= calc_min_entry_qty(close_prices[0], ex) or (not closes and psize_ > 0.0):
            closes.append(GridOrder(psize_, close_prices[0], _grid_type(long)))
        return closes

    qty_per_close = round_up(max(full_psize / len(close_prices_all), ex.min_qty), ex.qty_step)
    grid: List[GridOrder] = []
    for price in reversed(close_prices):
        min_close_qty = calc_min_entry_qty(price, ex)
        qty = min(psize_, max(qty_per_close, min_close_qty))
        if qty < min_close_qty:
            if grid:
                last = grid[-1]
                grid[-1] = GridOrder(round_(last.qty + psize_, ex.qty_step), last.price, last.order_type)
            else:
                grid.append(GridOrder(psize_, price, _grid_type(long)))
            psize_ = 0.0
            break
        grid.append(GridOrder(qty, price, _grid_type(long)))
        psize_ = round_(psize_ - qty, ex.qty_step)
        if psize_ <= 0.0:
            break
    if psize_ > 0.0 and grid:
        last = grid[-1]
        grid[-1] = GridOrder(round_(last.qty + psize_, ex.qty_step), last.price, last.order_type)

    closes.extend(grid)
    closes.sort(key=lambda o: o.price, reverse=not long)
    return closes


# =============================================================================
# Trailing close
# =============================================================================


def calc_trailing_close(
    long: bool,
    psize: float,
    pprice: float,
    book_price: float,
    trailing: TrailingPriceBundle,
    params: BotSideConfig,
    ex: ExchangeParams,
) -> List[GridOrder]:
    """Market-side close once price ran past the threshold and retraced."""
    if psize == 0.0 or params.close_trailing_threshold_pct <= 0.0:
        return []
    if long:
        threshold_price = pprice * (1.0 + params.close_trailing_threshold_pct)
        retracement_price = trailing.max_since_open * (1.0 - params.close_trailing_retracement_pct)
        triggered = trailing.max_since_open > threshold_price and book_price < retracement_price
    else:
        threshold_price = pprice * (1.0 - params.close_trailing_threshold_pct)
        retracement_price = trailing.min_since_open * (1.0 + params.close_trailing_retracement_pct)
        triggered = trailing.min_since_open < threshold_price and book_price > retracement_price
    if not triggered:
        return []
    qty = min(psize, round_(psize * params.close_trailing_qty_pct, ex.qty_step))
    if qty < calc_min_entry_qty(book_price, ex):
        return []
    return [GridOrder(qty, book_price, _trailing_type(long))]


def calc_closes(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    book_price: float,
    ema_bands: EMABands,
    trailing: TrailingPriceBundle,
    params: BotSideConfig,
    ex: ExchangeParams,
    pnl_cumsum_max: float = 0.0,
    pnl_cumsum_last: float = 0.0,
) -> List[GridOrder]:
    """Trailing close when configured and triggered, otherwise the grid."""
    if psize == 0.0:
        return []
    if params.close_trailing_threshold_pct > 0.0 and params.close_trailing_retracement_pct > 0.0:
        trailing_closes = calc_trailing_close(long, psize, pprice, book_price, trailing, params, ex)
        if trailing_closes:
            return trailing_closes
    grid_fn = calc_close_grid_backwards if params.backwards_tp else calc_close_grid_frontwards
    return grid_fn(
        long, balance, psize, pprice, book_price, ema_bands, params, ex, pnl_cumsum_max, pnl_cumsum_last
    )
