"""
LP accounting with reward-per-share accumulators.

Two accumulators per market, both scaled by ACC_SCALE:
    lp_fee_accumulator       grows as trades pay the LP fee
    lp_residual_accumulator  grows once, when the vault residual is finalized

A provider is owed shares * (accumulator - checkpoint) / ACC_SCALE.
Accrual and claims are O(1): nothing here ever walks the provider list.

These functions mutate the Market only. Moving collateral in or out of
ledger accounts is the engine's job.
"""

from outcome_amm.errors import (
    InvalidAmount, NothingToClaim, NotResolved, ResidualNotReady,
)
from outcome_amm.models import ACC_SCALE, LpPosition, Market


def _accrued(shares: int, accumulator: int, checkpoint: int) -> int:
    return shares * (accumulator - checkpoint) // ACC_SCALE


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------

def add_liquidity(market: Market, provider: str, amount: int) -> LpPosition:
    """
    Deposit collateral into the vault and mint LP shares 1:1.

    b and the pools are left alone: the deposit deepens vault backing, not
    the price curve. Fees accrued on the old share count are settled into
    fees_owed before the share count changes.
    """
    if amount <= 0:
        raise InvalidAmount(f"liquidity amount must be positive, got {amount}")

    pos = market.lp_positions.setdefault(provider, LpPosition())
    pos.fees_owed += _accrued(pos.shares, market.lp_fee_accumulator,
                              pos.fee_checkpoint)
    pos.fee_checkpoint = market.lp_fee_accumulator
    pos.residual_checkpoint = market.lp_residual_accumulator

    pos.shares += amount
    market.total_lp_collateral += amount
    market.vault += amount
    return pos


# ---------------------------------------------------------------------------
# Fees
# ---------------------------------------------------------------------------

def accrue_fees(market: Market, amount: int) -> None:
    """Add an LP fee to the pot and spread it over all LP shares."""
    if amount <= 0:
        return
    if market.total_lp_collateral == 0:
        # no one to pay; keep it as vault backing
        market.vault += amount
        return
    market.lp_fee_pot += amount
    market.lp_fee_accumulator += amount * ACC_SCALE // market.total_lp_collateral


def pending_fees(market: Market, provider: str) -> int:
    pos = market.lp_positions.get(provider)
    if pos is None:
        return 0
    return pos.fees_owed + _accrued(pos.shares, market.lp_fee_accumulator,
                                    pos.fee_checkpoint)


def claim_fees(market: Market, provider: str) -> int:
    """Take everything the provider is owed out of the fee pot."""
    owed = pending_fees(market, provider)
    if owed == 0:
        raise NothingToClaim(f"no LP fees owed to {provider}",
                             market_id=market.id)

    pos = market.lp_positions[provider]
    pos.fees_owed = 0
    pos.fee_checkpoint = market.lp_fee_accumulator
    market.lp_fee_pot -= owed
    return owed


# ---------------------------------------------------------------------------
# Residual
# ---------------------------------------------------------------------------

def fund_residual(market: Market, amount: int) -> None:
    if market.total_lp_collateral == 0:
        raise ResidualNotReady("market has no liquidity providers",
                               market_id=market.id)
    market.lp_residual_pot += amount
    market.lp_residual_accumulator += (
        amount * ACC_SCALE // market.total_lp_collateral)


def pending_residual(market: Market, provider: str) -> int:
    pos = market.lp_positions.get(provider)
    if pos is None:
        return 0
    return _accrued(pos.shares, market.lp_residual_accumulator,
                    pos.residual_checkpoint)


def claim_residual(market: Market, provider: str) -> int:
    if not market.is_resolved:
        raise NotResolved(f"market {market.id} is not resolved",
                          market_id=market.id)
    if not market.residual_finalized:
        raise ResidualNotReady(
            f"market {market.id} residual has not been finalized",
            market_id=market.id)

    owed = pending_residual(market, provider)
    if owed == 0:
        raise NothingToClaim(f"no residual owed to {provider}",
                             market_id=market.id)

    pos = market.lp_positions[provider]
    pos.residual_checkpoint = market.lp_residual_accumulator
    market.lp_residual_pot -= owed
    return owed
