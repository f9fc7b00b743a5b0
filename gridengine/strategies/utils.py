"""Grid math shared by entries, closes, the simulator and live code.

All quantities are positive; the position side is passed as ``long``.
Results are rounded to the instrument's steps and then to 10 decimals so
that float noise never leaks into order prices.
"""

import math
from typing import NamedTuple, Optional, Sequence, Tuple

from gridengine.core.models import ExchangeParams, GridOrderType

# =============================================================================
# Rounding
# =============================================================================


def round_(n: float, step: float) -> float:
    return round(round(n / step) * step, 10)


def round_up(n: float, step: float) -> float:
    return round(math.ceil(round(n / step, 10)) * step, 10)


def round_dn(n: float, step: float) -> float:
    return round(math.floor(round(n / step, 10)) * step, 10)


def nan_to_0(x: float) -> float:
    return 0.0 if math.isnan(x) else x


# =============================================================================
# Cost / quantity
# =============================================================================


def cost_to_qty(cost: float, price: float, inverse: bool = False, c_mult: float = 1.0) -> float:
    if price <= 0:
        return 0.0
    if inverse:
        return cost * price / c_mult
    return cost / price / c_mult


def qty_to_cost(qty: float, price: float, inverse: bool = False, c_mult: float = 1.0) -> float:
    if inverse:
        return abs(qty / price) * c_mult if price > 0 else 0.0
    return abs(qty * price) * c_mult


def calc_min_entry_qty(price: float, ex: ExchangeParams) -> float:
    """Smallest order quantity the instrument accepts at ``price``."""
    if ex.inverse:
        return ex.min_qty
    return max(ex.min_qty, round_up(cost_to_qty(ex.min_cost, price, False, ex.c_mult), ex.qty_step))


# =============================================================================
# Exposure / position
# =============================================================================


def calc_wallet_exposure(balance: float, psize: float, pprice: float, ex: ExchangeParams) -> float:
    """Position cost as a fraction of balance."""
    if balance <= 0.0 or psize == 0.0:
        return 0.0
    return qty_to_cost(psize, pprice, ex.inverse, ex.c_mult) / balance


def calc_new_psize_pprice(
    psize: float, pprice: float, qty: float, price: float, qty_step: float
) -> Tuple[float, float]:
    """Position after adding ``qty`` at ``price``; negative qty reduces."""
    if qty == 0.0:
        return psize, pprice
    if psize == 0.0:
        return qty, price
    new_psize = round_(psize + qty, qty_step)
    if new_psize == 0.0:
        return 0.0, 0.0
    return new_psize, nan_to_0(pprice) * (psize / new_psize) + price * (qty / new_psize)


def calc_wallet_exposure_if_filled(
    balance: float, psize: float, pprice: float, qty: float, price: float, ex: ExchangeParams
) -> float:
    psize = round_(abs(psize), ex.qty_step)
    qty = round_(abs(qty), ex.qty_step)
    new_psize, new_pprice = calc_new_psize_pprice(psize, pprice, qty, price, ex.qty_step)
    return calc_wallet_exposure(balance, new_psize, new_pprice, ex)


def calc_pnl_long(entry_price: float, close_price: float, qty: float, ex: ExchangeParams) -> float:
    if ex.inverse:
        if entry_price == 0.0 or close_price == 0.0:
            return 0.0
        return abs(qty) * ex.c_mult * (1.0 / entry_price - 1.0 / close_price)
    return abs(qty) * ex.c_mult * (close_price - entry_price)


def calc_pnl_short(entry_price: float, close_price: float, qty: float, ex: ExchangeParams) -> float:
    if ex.inverse:
        if entry_price == 0.0 or close_price == 0.0:
            return 0.0
        return abs(qty) * ex.c_mult * (1.0 / close_price - 1.0 / entry_price)
    return abs(qty) * ex.c_mult * (entry_price - close_price)


def calc_pnl(long: bool, entry_price: float, close_price: float, qty: float, ex: ExchangeParams) -> float:
    if long:
        return calc_pnl_long(entry_price, close_price, qty, ex)
    return calc_pnl_short(entry_price, close_price, qty, ex)


# =============================================================================
# EMA
# =============================================================================


def ema_alpha(span: float) -> float:
    return 2.0 / (span + 1.0)


def calc_ema(alpha: float, prev: float, new: float) -> float:
    return prev * (1.0 - alpha) + new * alpha


def calc_ema_price_bid(price_step: float, bid: float, ema_lower: float, ema_dist: float) -> float:
    return min(bid, round_dn(ema_lower * (1.0 - ema_dist), price_step))


def calc_ema_price_ask(price_step: float, ask: float, ema_upper: float, ema_dist: float) -> float:
    return max(ask, round_up(ema_upper * (1.0 + ema_dist), price_step))


# =============================================================================
# Solvers
# =============================================================================


def interpolate(x: float, xs: Sequence[float], ys: Sequence[float]) -> float:
    """Lagrange polynomial through (xs, ys) evaluated at ``x``.

    Duplicate xs have no unique polynomial; the last y is returned then.
    """
    if len(set(xs)) < len(xs):
        return ys[-1]
    result = 0.0
    for i in range(len(xs)):
        term = ys[i]
        for j in range(len(xs)):
            if i != j:
                term *= (x - xs[j]) / (xs[i] - xs[j])
        result += term
    return result


def find_entry_qty_bringing_wallet_exposure_to_target(
    balance: float, psize: float, pprice: float, target: float, entry_price: float, ex: ExchangeParams
) -> float:
    """Entry quantity that brings wallet exposure to ``target`` within 1%."""
    if target == 0.0:
        return 0.0
    wallet_exposure = calc_wallet_exposure(balance, psize, pprice, ex)
    if wallet_exposure >= target * 0.99:
        return 0.0

    def evaluate(guess: float) -> float:
        return calc_wallet_exposure_if_filled(balance, psize, pprice, guess, entry_price, ex)

    guesses = [round_(abs(psize) * target / max(0.01, wallet_exposure), ex.qty_step)]
    vals = [evaluate(guesses[0])]
    evals = [abs(vals[0] - target) / target]

    guesses.append(max(0.0, round_(max(guesses[0] * 1.2, guesses[0] + ex.qty_step), ex.qty_step)))
    vals.append(evaluate(guesses[1]))
    evals.append(abs(vals[1] - target) / target)

    for _ in range(15):
        if guesses[-1] == guesses[-2]:
            guesses.append(max(guesses[-1] * 1.1, guesses[-1] + ex.qty_step))
            vals.append(evaluate(guesses[-1]))
            evals.append(abs(vals[-1] - target) / target)
        new_guess = round_(max(0.0, interpolate(target, vals[-2:], guesses[-2:])), ex.qty_step)
        guesses.append(new_guess)
        vals.append(evaluate(new_guess))
        evals.append(abs(vals[-1] - target) / target)
        if evals[-1] < 0.01:
            break

    return min(zip(evals, guesses))[1]


def find_close_qty_bringing_wallet_exposure_to_target(
    long: bool,
    balance: float,
    psize: float,
    pprice: float,
    target: float,
    close_price: float,
    ex: ExchangeParams,
) -> float:
    """Close quantity that brings wallet exposure down to ``target`` within 1%."""

    def evaluate(guess: float) -> float:
        new_balance = balance + calc_pnl(long, pprice, close_price, guess, ex)
        if new_balance <= 0.0:
            return math.inf
        return qty_to_cost(psize - guess, pprice, ex.inverse, ex.c_mult) / new_balance

    if target == 0.0:
        return psize
    wallet_exposure = calc_wallet_exposure(balance, psize, pprice, ex)
    if wallet_exposure <= target * 1.001:
        return 0.0

    def bounded(q: float) -> float:
        return min(max(q, 0.0), psize)

    guesses = [bounded(round_(psize * (1.0 - target / wallet_exposure), ex.qty_step))]
    vals = [evaluate(guesses[0])]
    evals = [abs(vals[0] - target) / target]

    next_guess = max(guesses[0] * 1.2, guesses[0] + ex.qty_step)
    if next_guess == guesses[0]:
        next_guess = min(guesses[0] * 0.8, guesses[0] - ex.qty_step)
    guesses.append(bounded(next_guess))
    vals.append(evaluate(guesses[1]))
    evals.append(abs(vals[1] - target) / target)

    for _ in range(15):
        ranked = sorted(zip(evals, guesses, vals))
        if not all(math.isfinite(v) for _, _, v in ranked[:2]):
            break
        new_guess = interpolate(target, [ranked[0][2], ranked[1][2]], [ranked[0][1], ranked[1][1]])
        new_guess = bounded(round_(new_guess, ex.qty_step))
        if new_guess in guesses:
            new_guess = bounded(new_guess - ex.qty_step)
            if new_guess in guesses:
                new_guess = bounded(new_guess + 2.0 * ex.qty_step)
                if new_guess in guesses:
                    break
        guesses.append(new_guess)
        vals.append(evaluate(new_guess))
        evals.append(abs(vals[-1] - target) / target)
        if evals[-1] < 0.01:
            break

    return min(zip(evals, guesses))[1]


# =============================================================================
# Sizing
# =============================================================================


def calc_initial_entry_qty(
    balance: float, price: float, wallet_exposure_limit: float, initial_qty_pct: float, ex: ExchangeParams
) -> float:
    return max(
        calc_min_entry_qty(price, ex),
        round_(
            cost_to_qty(balance * wallet_exposure_limit * initial_qty_pct, price, ex.inverse, ex.c_mult),
            ex.qty_step,
        ),
    )


def calc_reentry_qty(
    psize: float,
    balance: float,
    price: float,
    double_down_factor: float,
    initial_qty_pct: float,
    wallet_exposure_limit: float,
    ex: ExchangeParams,
) -> float:
    return max(
        calc_min_entry_qty(price, ex),
        round_(
            max(
                psize * double_down_factor,
                cost_to_qty(balance, price, ex.inverse, ex.c_mult) * wallet_exposure_limit * initial_qty_pct,
            ),
            ex.qty_step,
        ),
    )


def calc_clock_qty(
    balance: float,
    wallet_exposure: float,
    price: float,
    qty_pct: float,
    wallet_exposure_limit: float,
    ex: ExchangeParams,
    we_multiplier: float = 0.0,
) -> float:
    ratio = wallet_exposure / wallet_exposure_limit if wallet_exposure_limit > 0 else 0.0
    cost = balance * wallet_exposure_limit * qty_pct * (1.0 + ratio * we_multiplier)
    return max(
        calc_min_entry_qty(price, ex),
        round_(cost_to_qty(cost, price, ex.inverse, ex.c_mult), ex.qty_step),
    )


def calc_auto_unstuck_allowance(
    balance: float, loss_allowance_pct: float, pnl_cumsum_max: float, pnl_cumsum_last: float
) -> float:
    """Loss budget for unstuck closes: allowance_pct below the balance peak."""
    balance_peak = balance + (pnl_cumsum_max - pnl_cumsum_last)
    if balance_peak <= 0.0:
        return 0.0
    drop_since_peak_pct = balance / balance_peak - 1.0
    return max(balance_peak * (loss_allowance_pct + drop_since_peak_pct), 0.0)


# =============================================================================
# Grid order
# =============================================================================


class GridOrder(NamedTuple):
    """Quantity, price and label of one computed order; qty 0 means none."""

    qty: float
    price: float
    order_type: Optional[GridOrderType] = None

    @property
    def empty(self) -> bool:
        return self.qty == 0.0


NO_ORDER = GridOrder(0.0, 0.0, None)
