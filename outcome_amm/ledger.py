"""
Collateral and share-token ledger. The engine's external collaborator.

The market engine never moves value itself. It computes amounts and asks
the ledger to debit/credit collateral and mint/burn outcome shares. This
in-memory implementation is the reference ledger used by the CLI, the API
and the tests; a deployment backed by a real token ledger implements the
same methods.

Every balance change produces a LedgerEntry in an append-only journal.

Invariants:
  supply[(market, side)] == sum of every account's balance of that share
  sum(collateral) + collateral held by markets == total minted
"""

from dataclasses import dataclass, field
from typing import Optional

from outcome_amm.errors import InsufficientBalance, InvalidAmount
from outcome_amm.models import Side, _now, next_id


COLLATERAL = "COLLATERAL"


def share_asset(market_id: int, side: Side) -> str:
    """Asset key for an outcome share, e.g. "7:yes"."""
    return f"{market_id}:{side.value}"


@dataclass
class Account:
    id: str
    collateral: int = 0
    shares: dict[str, int] = field(default_factory=dict)


@dataclass
class LedgerEntry:
    """
    Append-only journal line. delta > 0 credits the account.
    asset is COLLATERAL or a share asset key.
    """
    id: int
    account_id: str
    asset: str
    delta: int
    reason: str
    market_id: Optional[int] = None
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(account_id: str, asset: str, delta: int, reason: str,
            market_id: Optional[int] = None) -> "LedgerEntry":
        return LedgerEntry(
            id=next_id("tx"),
            account_id=account_id,
            asset=asset,
            delta=delta,
            reason=reason,
            market_id=market_id,
        )


class Ledger:

    def __init__(self):
        self.accounts: dict[str, Account] = {}
        self.supply: dict[str, int] = {}
        self.entries: list[LedgerEntry] = []

    def account(self, account_id: str) -> Account:
        """Get an account, opening an empty one on first use."""
        acc = self.accounts.get(account_id)
        if acc is None:
            acc = Account(id=account_id)
            self.accounts[account_id] = acc
        return acc

    # ------------------------------------------------------------------
    # Collateral
    # ------------------------------------------------------------------

    def mint(self, account_id: str, amount: int) -> LedgerEntry:
        """Create collateral from nothing. The only way money enters."""
        return self.credit(account_id, amount, reason="mint")

    def collateral_balance(self, account_id: str) -> int:
        acc = self.accounts.get(account_id)
        return acc.collateral if acc else 0

    def debit(self, account_id: str, amount: int, reason: str,
              market_id: Optional[int] = None) -> LedgerEntry:
        """Take collateral from an account. Raises InsufficientBalance."""
        _check_amount(amount)
        acc = self.account(account_id)
        if acc.collateral < amount:
            raise InsufficientBalance(
                f"account {account_id}: need {amount}, have {acc.collateral}",
                required=amount, available=acc.collateral)
        acc.collateral -= amount
        return self._record(account_id, COLLATERAL, -amount, reason, market_id)

    def credit(self, account_id: str, amount: int, reason: str,
               market_id: Optional[int] = None) -> LedgerEntry:
        _check_amount(amount)
        self.account(account_id).collateral += amount
        return self._record(account_id, COLLATERAL, amount, reason, market_id)

    # ------------------------------------------------------------------
    # Outcome shares
    # ------------------------------------------------------------------

    def share_balance(self, market_id: int, side: Side,
                      account_id: str) -> int:
        acc = self.accounts.get(account_id)
        if acc is None:
            return 0
        return acc.shares.get(share_asset(market_id, side), 0)

    def total_supply(self, market_id: int, side: Side) -> int:
        return self.supply.get(share_asset(market_id, side), 0)

    def mint_shares(self, market_id: int, side: Side, account_id: str,
                    amount: int) -> LedgerEntry:
        _check_amount(amount)
        asset = share_asset(market_id, side)
        acc = self.account(account_id)
        acc.shares[asset] = acc.shares.get(asset, 0) + amount
        self.supply[asset] = self.supply.get(asset, 0) + amount
        return self._record(account_id, asset, amount, "mint_shares",
                            market_id)

    def burn_shares(self, market_id: int, side: Side, account_id: str,
                    amount: int) -> LedgerEntry:
        """Destroy shares. Raises InsufficientBalance if not enough held."""
        _check_amount(amount)
        asset = share_asset(market_id, side)
        held = self.share_balance(market_id, side, account_id)
        if held < amount:
            raise InsufficientBalance(
                f"account {account_id}: can't burn {amount} {asset}, "
                f"only holds {held}",
                required=amount, available=held)
        acc = self.account(account_id)
        acc.shares[asset] = held - amount
        if acc.shares[asset] == 0:
            del acc.shares[asset]
        self.supply[asset] -= amount
        return self._record(account_id, asset, -amount, "burn_shares",
                            market_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def total_collateral(self) -> int:
        """Collateral held in accounts (excludes market vaults and pots)."""
        return sum(acc.collateral for acc in self.accounts.values())

    def total_minted(self) -> int:
        """Sum of all mint entries. The total money in the system."""
        return sum(e.delta for e in self.entries if e.reason == "mint")

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _record(self, account_id: str, asset: str, delta: int, reason: str,
                market_id: Optional[int]) -> LedgerEntry:
        entry = LedgerEntry.new(account_id, asset, delta, reason, market_id)
        self.entries.append(entry)
        return entry


def _check_amount(amount: int) -> None:
    if amount <= 0:
        raise InvalidAmount(f"amount must be positive, got {amount}")
