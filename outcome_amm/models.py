"""
Data models for the outcome market engine.

Two unit systems, both plain ints:
- Collateral: 6 decimals (1 unit == 1_000_000). Vault, fees, LP pots.
- Shares and LMSR state: 18 decimals (1 share == 10**18). q, b, prices.

One collateral unit buys (at most) one winning share, so converting between
them is a fixed factor of 10**12. Shares -> collateral always rounds down,
in the vault's favour.

Display helpers render ints as Decimal strings for the API and CLI; the
engine itself never touches Decimal or float.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from outcome_amm.fees import FeeSplit


COLLATERAL_DECIMALS = 6
SHARE_DECIMALS = 18
SHARES_PER_COLLATERAL = 10 ** (SHARE_DECIMALS - COLLATERAL_DECIMALS)

ACC_SCALE = 10 ** 18          # LP accumulator precision
DUST = 1                      # vault at or below this can't be finalized
MIN_COLLATERAL_OUT = 1_000    # smallest sell payout: 0.001 collateral


def collateral_to_shares(amount: int) -> int:
    return amount * SHARES_PER_COLLATERAL


def shares_to_collateral(amount: int) -> int:
    """Round down: the vault keeps the sub-unit remainder."""
    return amount // SHARES_PER_COLLATERAL


def to_decimal(value: int, decimals: int) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def from_decimal(amount: Decimal, decimals: int) -> int:
    """Parse a human amount into base units. Truncates extra precision."""
    return int(amount.scaleb(decimals))


# ---------------------------------------------------------------------------
# Sequential IDs
# ---------------------------------------------------------------------------

_counters: dict[str, int] = defaultdict(int)


def next_id(kind: str) -> int:
    """Sequential ID. Kinds: market, trade, tx."""
    _counters[kind] += 1
    return _counters[kind]


def reset_counters() -> None:
    """Reset all counters. For testing."""
    _counters.clear()


def set_counter(kind: str, value: int) -> None:
    """Set a counter. For loading persisted state."""
    _counters[kind] = value


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Side(str, Enum):
    YES = "yes"
    NO = "no"

    @property
    def is_yes(self) -> bool:
        return self is Side.YES

    @staticmethod
    def of(is_yes: bool) -> "Side":
        return Side.YES if is_yes else Side.NO


class MarketStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    RESOLVED = "resolved"


class OracleType(str, Enum):
    NONE = "none"
    EXTERNAL_FEED = "external_feed"


class Comparison(str, Enum):
    ABOVE = "above"
    BELOW = "below"
    EQUALS = "equals"


# ---------------------------------------------------------------------------
# Market
# ---------------------------------------------------------------------------

@dataclass
class ResolutionConfig:
    """
    How and when a market resolves.

    target_value and tolerance use the oracle's 8-decimal units.
    tolerance only applies to EQUALS; 0 means exact match.
    yes_wins is meaningless until is_resolved flips to True, which
    happens exactly once.
    """
    expiry_timestamp: int
    oracle_type: OracleType = OracleType.NONE
    oracle_address: str = ""
    feed_id: str = ""
    target_value: int = 0
    comparison: Comparison = Comparison.ABOVE
    tolerance: int = 0
    yes_wins: bool = False
    is_resolved: bool = False


@dataclass
class LpPosition:
    """
    One provider's stake in one market.

    Checkpoints are the accumulator values last settled into this position.
    fees_owed holds fees settled but not yet claimed (e.g. across a top-up).
    """
    shares: int = 0
    fee_checkpoint: int = 0
    residual_checkpoint: int = 0
    fees_owed: int = 0


@dataclass
class Market:
    """
    A binary market. Owns LMSR state, the collateral vault and LP accounting.

    q_yes / q_no: outstanding shares (1e18). They equal the ledger's total
    share supply per side at all times.
    b: liquidity parameter (1e18), fixed at creation.
    vault: collateral backing the shares (6 dp).
    lp_fee_pot / lp_residual_pot: collateral set aside for LP claims.
    """
    id: int
    question: str
    creator: str
    b: int
    resolution: ResolutionConfig
    seed_collateral: int = 0
    q_yes: int = 0
    q_no: int = 0
    vault: int = 0
    fee_treasury_bps: int = 0
    fee_vault_bps: int = 0
    fee_lp_bps: int = 0
    status: MarketStatus = MarketStatus.ACTIVE
    total_lp_collateral: int = 0
    lp_fee_accumulator: int = 0
    lp_residual_accumulator: int = 0
    lp_fee_pot: int = 0
    lp_residual_pot: int = 0
    residual_finalized: bool = False
    lp_positions: dict[str, LpPosition] = field(default_factory=dict)
    created_at: str = field(default_factory=_now)
    resolved_at: Optional[str] = None

    @staticmethod
    def new(question: str, creator: str, b: int,
            resolution: ResolutionConfig, seed_collateral: int,
            fee_treasury_bps: int, fee_vault_bps: int,
            fee_lp_bps: int) -> "Market":
        return Market(
            id=next_id("market"),
            question=question,
            creator=creator,
            b=b,
            resolution=resolution,
            seed_collateral=seed_collateral,
            fee_treasury_bps=fee_treasury_bps,
            fee_vault_bps=fee_vault_bps,
            fee_lp_bps=fee_lp_bps,
        )

    @property
    def is_resolved(self) -> bool:
        return self.resolution.is_resolved

    @property
    def winning_side(self) -> Optional[Side]:
        if not self.is_resolved:
            return None
        return Side.of(self.resolution.yes_wins)

    def is_expired(self, now: int) -> bool:
        return now >= self.resolution.expiry_timestamp

    def is_tradeable(self, now: int) -> bool:
        return (self.status == MarketStatus.ACTIVE
                and not self.is_resolved
                and not self.is_expired(now))

    def q(self, side: Side) -> int:
        return self.q_yes if side.is_yes else self.q_no

    def pools(self, side: Side) -> tuple[int, int]:
        """(q_side, q_other) for the given side."""
        if side.is_yes:
            return self.q_yes, self.q_no
        return self.q_no, self.q_yes

    def set_q(self, side: Side, value: int) -> None:
        if side.is_yes:
            self.q_yes = value
        else:
            self.q_no = value

    def lp_position(self, provider: str) -> LpPosition:
        return self.lp_positions.get(provider, LpPosition())


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------

@dataclass
class Trade:
    """
    One executed buy or sell against the AMM.

    collateral: gross collateral in (buy) or out (sell), 6 dp.
    tokens: shares out (buy) or in (sell), 18 dp.
    spot_price: the side's spot price after the trade, 1e18.
    """
    id: int
    market_id: int
    account: str
    side: Side
    kind: str                       # "buy" or "sell"
    collateral: int
    tokens: int
    spot_price: int
    fees: Optional[FeeSplit] = None
    created_at: str = field(default_factory=_now)


@dataclass
class Order:
    """A buy request and the chunk trades that filled it."""
    market_id: int
    account: str
    side: Side
    requested: int
    trades: list[Trade] = field(default_factory=list)

    @property
    def collateral_in(self) -> int:
        return sum(t.collateral for t in self.trades)

    @property
    def tokens_out(self) -> int:
        return sum(t.tokens for t in self.trades)

    @property
    def chunks(self) -> int:
        return len(self.trades)

    @property
    def spot_price(self) -> Optional[int]:
        return self.trades[-1].spot_price if self.trades else None
