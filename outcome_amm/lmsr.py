"""
LMSR (Logarithmic Market Scoring Rule) for a two-outcome market. Pure math, no state.

All functions take 1e18 fixed-point ints and return 1e18 fixed-point ints.
The caller (market engine) handles state, fees, collateral units and
persistence.

Notation:
    q_yes, q_no: outstanding shares per outcome
    q_side, q_other: the same pair, ordered as (outcome traded, the other)
    b: liquidity parameter (higher = deeper book, max loss = b * ln 2)

Cost function, written so it never overflows:

    C(q) = max(q) + b * ln(1 + e^(-|q_yes - q_no| / b))

Buying is a search (the cost function has no closed-form inverse in the
"tokens for a given cost" direction). Selling is closed form.
"""

from outcome_amm.errors import (
    InsufficientOutput, InsufficientSupply, InvalidAmount, NoLiquidity,
)
from outcome_amm.fixed_point import (
    EXP2_MAX_INPUT, HALF, LN2, LOG2_E, SCALE, div, exp2, ln, mul,
)


SEARCH_ITERATIONS = 60   # fixed, never adaptive: results must be deterministic
MAX_DOUBLINGS = 32


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _check_b(b: int) -> None:
    if b <= 0:
        raise NoLiquidity("liquidity parameter b must be positive")


def _scaled_spread(q_a: int, q_b: int, b: int) -> int:
    """|q_a - q_b| / b, converted to base-2 exponent units."""
    return mul(div(abs(q_a - q_b), b), LOG2_E)


def _search(fits, start: int) -> tuple[int, int]:
    """
    Bracket-and-bisect over a monotone predicate.

    Doubles the upper bound from `start` until `fits(hi)` is false (at most
    MAX_DOUBLINGS times), then runs exactly SEARCH_ITERATIONS bisection
    steps. Returns the final (lo, hi) bracket: fits(lo) holds, and
    fits(hi) does not unless the doubling cap was hit.
    """
    lo = 0
    hi = start if start > 0 else SCALE
    for _ in range(MAX_DOUBLINGS):
        if not fits(hi):
            break
        lo = hi
        hi *= 2

    for _ in range(SEARCH_ITERATIONS):
        mid = (lo + hi) // 2
        if fits(mid):
            lo = mid
        else:
            hi = mid
    return lo, hi


# ---------------------------------------------------------------------------
# Cost function and prices
# ---------------------------------------------------------------------------

def cost(q_yes: int, q_no: int, b: int) -> int:
    """
    C(q) = max(q) + b * ln(1 + e^(-|q_yes - q_no| / b))

    Total collateral the market maker has collected relative to an empty
    book. Trading costs are always C(after) - C(before).

    With equal pools the log term is exactly ln 2. With a spread so wide
    that e^(spread) saturates, the log term vanishes and C(q) == max(q).
    """
    _check_b(b)
    hi = max(q_yes, q_no)
    lo = min(q_yes, q_no)
    if hi == lo:
        return hi + mul(b, LN2)

    scaled = _scaled_spread(hi, lo, b)
    if scaled > EXP2_MAX_INPUT:
        return hi

    inner = SCALE + div(SCALE, exp2(scaled))    # 1 + e^(-spread)
    return hi + mul(b, ln(inner))


def spot_price_yes(q_yes: int, q_no: int, b: int) -> int:
    """
    Marginal price of a Yes share, in [0, 1].

    p_yes = e / (1 + e) with e = e^((q_yes - q_no) / b), evaluated on the
    absolute spread so the exponent is never negative. Saturates to exactly
    1 or 0 once the spread exceeds the exp2 clamp.
    """
    _check_b(b)
    if q_yes == q_no:
        return HALF

    yes_greater = q_yes > q_no
    scaled = _scaled_spread(q_yes, q_no, b)
    if scaled > EXP2_MAX_INPUT:
        return SCALE if yes_greater else 0

    e = exp2(scaled)
    price = div(e, SCALE + e) if yes_greater else div(SCALE, SCALE + e)
    return min(max(price, 0), SCALE)


def spot_price(q_yes: int, q_no: int, b: int, is_yes: bool) -> int:
    """Marginal price of the given outcome. No is Yes with the pools swapped."""
    if is_yes:
        return spot_price_yes(q_yes, q_no, b)
    return spot_price_yes(q_no, q_yes, b)


# ---------------------------------------------------------------------------
# Trade solver
# ---------------------------------------------------------------------------

def cost_to_buy(q_side: int, q_other: int, b: int, tokens: int) -> int:
    """Collateral (1e18) required to buy `tokens` of the side."""
    return cost(q_side + tokens, q_other, b) - cost(q_side, q_other, b)


def shares_for_collateral(net_in: int, q_side: int, q_other: int,
                          b: int) -> int:
    """
    Inverse of cost_to_buy. Given post-fee collateral (1e18), how many
    shares does it buy?

    Bisection over the token amount, bracket grown from b by doubling.
    Returns the midpoint of the final bracket.
    """
    _check_b(b)
    if net_in <= 0:
        raise InvalidAmount("net collateral must be positive")

    base = cost(q_side, q_other, b)

    def fits(tokens: int) -> bool:
        return cost(q_side + tokens, q_other, b) - base <= net_in

    lo, hi = _search(fits, b)
    tokens_out = (lo + hi) // 2
    if tokens_out <= 0:
        raise InsufficientOutput("collateral too small for any shares")
    return tokens_out


def refund_for_shares(tokens_in: int, q_side: int, q_other: int,
                      b: int) -> int:
    """
    Collateral (1e18) returned for selling `tokens_in` shares of the side.

    refund = C(q_side, q_other) - C(q_side - tokens_in, q_other)
    """
    if tokens_in <= 0:
        raise InvalidAmount("sell amount must be positive")
    if tokens_in > q_side:
        raise InsufficientSupply(
            f"can't sell {tokens_in}, only {q_side} outstanding")
    return cost(q_side, q_other, b) - cost(q_side - tokens_in, q_other, b)


def max_tokens_within_price(q_side: int, q_other: int, b: int,
                            price_bound: int) -> int:
    """
    Largest share quantity that can be bought on the side while its spot
    price stays at or below `price_bound`. Uses the same search as the buy
    solver, but keeps the lower end of the bracket so the bound holds.
    """
    _check_b(b)

    def fits(tokens: int) -> bool:
        return spot_price_yes(q_side + tokens, q_other, b) <= price_bound

    if not fits(0):
        return 0
    lo, _ = _search(fits, b)
    return lo


def max_loss(b: int) -> int:
    """Maximum market maker loss: b * ln(2). Equals the seed collateral."""
    return mul(b, LN2)


def b_for_seed(seed: int) -> int:
    """Liquidity parameter whose max loss equals `seed` (1e18)."""
    return div(seed, LN2)
