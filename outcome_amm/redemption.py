"""
Redemption of winning shares and finalization of the vault residual.

Winning shares pay 1 collateral unit per share, rounded down to the
collateral's 6 decimals. Once every winning share has been redeemed,
whatever is left in the vault belongs to the LPs.
"""

from outcome_amm.errors import (
    NotResolved, NothingToRedeem, NotWinningSide, ResidualNotReady,
)
from outcome_amm.liquidity import fund_residual
from outcome_amm.models import DUST, Market, Side, shares_to_collateral


def _require_resolved(market: Market) -> None:
    if not market.is_resolved:
        raise NotResolved(f"market {market.id} is not resolved",
                          market_id=market.id)


def redeem(market: Market, side: Side, balance: int) -> int:
    """
    Retire `balance` winning shares (the caller's full holding) and return
    the collateral payout. All checks run before anything is touched.
    """
    _require_resolved(market)
    if side != market.winning_side:
        raise NotWinningSide(
            f"market {market.id} resolved {market.winning_side.value}, "
            f"not {side.value}",
            market_id=market.id, side=side.value)
    if balance <= 0:
        raise NothingToRedeem(f"no {side.value} shares to redeem",
                              market_id=market.id)

    payout = shares_to_collateral(balance)
    market.set_q(side, market.q(side) - balance)
    market.vault -= payout
    return payout


def finalize_residual(market: Market) -> int:
    """Move the whole remaining vault into the LP residual pot."""
    _require_resolved(market)
    if market.residual_finalized:
        raise ResidualNotReady(f"market {market.id} residual already finalized",
                               market_id=market.id)
    outstanding = market.q(market.winning_side)
    if outstanding > 0:
        raise ResidualNotReady(
            f"market {market.id} still has {outstanding} winning shares out",
            market_id=market.id, outstanding=outstanding)
    if market.vault <= DUST:
        raise ResidualNotReady(f"market {market.id} vault is empty",
                               market_id=market.id, vault=market.vault)

    amount = market.vault
    fund_residual(market, amount)
    market.vault = 0
    market.residual_finalized = True
    return amount
