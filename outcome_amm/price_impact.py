"""
Price-impact cap and order splitting.

A single operation may move its side's spot price by at most `sensitivity`
(an absolute 1e18 rate: 5e16 means the Yes price may go from 0.50 to 0.55,
not to 0.525). Larger orders aren't rejected. They're executed as a
sequence of chunks, each sized under the cap recomputed from the state the
previous chunk left behind.
"""

from typing import Optional

from outcome_amm.errors import InvalidAmount, InvalidConfig
from outcome_amm.fees import BPS, split_fees
from outcome_amm.fixed_point import SCALE
from outcome_amm.lmsr import cost_to_buy, max_tokens_within_price, spot_price
from outcome_amm.models import SHARES_PER_COLLATERAL, Side


SAFETY_MARGIN_BPS = 9_800        # chunks use 98% of the instantaneous cap

DEFAULT_SENSITIVITY = 5 * 10 ** 16   # 5%
MIN_SENSITIVITY = 10 ** 15           # 0.1%
MAX_SENSITIVITY = 5 * 10 ** 16       # 5%


def validate_sensitivity(sensitivity: int) -> None:
    if not MIN_SENSITIVITY <= sensitivity <= MAX_SENSITIVITY:
        raise InvalidConfig(
            f"sensitivity {sensitivity} outside "
            f"[{MIN_SENSITIVITY}, {MAX_SENSITIVITY}]",
            sensitivity=sensitivity)


def max_safe_collateral(q_yes: int, q_no: int, b: int, side: Side,
                        sensitivity: int, treasury_bps: int, vault_bps: int,
                        lp_bps: int) -> Optional[int]:
    """
    Largest gross collateral (6 dp) one buy can spend without pushing the
    side's spot price more than `sensitivity` above where it is now.

    Returns None when the bound is at or above 1.0: the price can never
    reach it, so the trade is uncapped.
    """
    bound = spot_price(q_yes, q_no, b, side.is_yes) + sensitivity
    if bound >= SCALE:
        return None
    fee_bps = treasury_bps + vault_bps + lp_bps
    if fee_bps >= BPS:
        return 0

    q_side, q_other = (q_yes, q_no) if side.is_yes else (q_no, q_yes)
    tokens = max_tokens_within_price(q_side, q_other, b, bound)
    if tokens == 0:
        return 0

    net = cost_to_buy(q_side, q_other, b, tokens) // SHARES_PER_COLLATERAL
    gross = net * BPS // (BPS - fee_bps)
    # Buckets floor separately, so the gross-up can leave a few units too
    # much net. Step down until the split fits.
    while gross > 0 and split_fees(gross, treasury_bps, vault_bps,
                                   lp_bps).net > net:
        gross -= 1
    return gross


def chunk_size(remaining: int, cap: Optional[int]) -> int:
    """Size of the next chunk of an order with `remaining` left to fill."""
    if cap is None:
        return remaining
    safe = cap * SAFETY_MARGIN_BPS // BPS
    if safe == 0:
        safe = cap
    return min(remaining, safe)


def plan_chunks(amount: int, cap: int) -> list[int]:
    """
    Split `amount` into chunks of at most cap * 98%.

    A static plan against a fixed cap, reported when a no-split buy is
    refused. Execution and quotes recompute the cap before each chunk, so
    the real chunk sizes drift as the price moves. The chunks always sum
    to `amount` exactly.
    """
    if amount <= 0:
        raise InvalidAmount(f"amount must be positive, got {amount}")
    if cap <= 0:
        raise InvalidAmount(f"cap must be positive, got {cap}")

    chunks = []
    remaining = amount
    while remaining > 0:
        size = chunk_size(remaining, cap)
        chunks.append(size)
        remaining -= size
    return chunks
