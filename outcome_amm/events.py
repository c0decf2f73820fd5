"""
Events emitted by the engine for indexers and UIs.

Each event is a frozen dataclass. The engine hands them to an EventSink;
InMemoryEventLog keeps them in a list and is what the CLI, API and tests use.
"""

from dataclasses import asdict, dataclass
from typing import Optional


@dataclass(frozen=True)
class MarketCreated:
    id: int
    seed_collateral: int
    expiry_timestamp: int


@dataclass(frozen=True)
class Buy:
    market_id: int
    side: str
    collateral_in: int
    tokens_out: int
    new_spot_price: int
    user: str


@dataclass(frozen=True)
class Sell:
    market_id: int
    side: str
    tokens_in: int
    collateral_out: int
    new_spot_price: int
    user: str


@dataclass(frozen=True)
class LiquidityAdded:
    market_id: int
    provider: str
    amount: int


@dataclass(frozen=True)
class MarketResolved:
    market_id: int
    yes_wins: bool


@dataclass(frozen=True)
class Redeemed:
    market_id: int
    user: str
    side: str
    collateral_out: int


@dataclass(frozen=True)
class LpFeesClaimed:
    market_id: int
    provider: str
    amount: int


@dataclass(frozen=True)
class LpResidualClaimed:
    market_id: int
    provider: str
    amount: int


@dataclass(frozen=True)
class ResidualFinalized:
    market_id: int
    amount: int


@dataclass(frozen=True)
class MarketStatusChanged:
    market_id: int
    status: str


def event_to_dict(event) -> dict:
    return {"type": type(event).__name__, **asdict(event)}


class EventSink:
    def emit(self, event) -> None:
        raise NotImplementedError


class InMemoryEventLog(EventSink):

    def __init__(self):
        self.events: list = []

    def emit(self, event) -> None:
        self.events.append(event)

    def of_type(self, kind: type, market_id: Optional[int] = None) -> list:
        out = [e for e in self.events if isinstance(e, kind)]
        if market_id is not None:
            out = [e for e in out
                   if getattr(e, "market_id", getattr(e, "id", None)) == market_id]
        return out

    def clear(self) -> None:
        self.events.clear()
