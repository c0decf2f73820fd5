"""
Engine snapshots on disk.

One JSON document holds everything needed to rebuild a MarketEngine:
  - ledger: accounts with collateral and share balances, per-side supply,
    the entry journal
  - markets: pools, b, vault, fee and residual pots, accumulators, LP positions
  - settings: engine-wide sensitivity
  - id counters, so market/trade ids continue where they left off

Callers save after each mutation and load once at startup.

The file is replaced with os.replace from a .tmp sibling, so readers see
either the old snapshot or the new one, never a torn write.

All amounts are plain ints, which JSON round-trips exactly in Python.
"""

import dataclasses
import json
import os
from enum import Enum
from typing import Callable, Optional

from outcome_amm.events import EventSink
from outcome_amm.ledger import Account, Ledger, LedgerEntry
from outcome_amm.market_engine import EngineConfig, MarketEngine, _unix_now
from outcome_amm.models import (
    Comparison, LpPosition, Market, MarketStatus, OracleType,
    ResolutionConfig, _counters, reset_counters, set_counter,
)
from outcome_amm.oracle import Oracle


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses and enums to JSON-safe types."""
    if isinstance(obj, Enum):
        return obj.value
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, list):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _load_account(d: dict) -> Account:
    return Account(
        id=d["id"],
        collateral=d["collateral"],
        shares=dict(d["shares"]),
    )


def _load_entry(d: dict) -> LedgerEntry:
    return LedgerEntry(
        id=d["id"],
        account_id=d["account_id"],
        asset=d["asset"],
        delta=d["delta"],
        reason=d["reason"],
        market_id=d.get("market_id"),
        created_at=d["created_at"],
    )


def _load_resolution(d: dict) -> ResolutionConfig:
    return ResolutionConfig(
        expiry_timestamp=d["expiry_timestamp"],
        oracle_type=OracleType(d["oracle_type"]),
        oracle_address=d["oracle_address"],
        feed_id=d["feed_id"],
        target_value=d["target_value"],
        comparison=Comparison(d["comparison"]),
        tolerance=d.get("tolerance", 0),
        yes_wins=d["yes_wins"],
        is_resolved=d["is_resolved"],
    )


def _load_lp_position(d: dict) -> LpPosition:
    return LpPosition(
        shares=d["shares"],
        fee_checkpoint=d["fee_checkpoint"],
        residual_checkpoint=d["residual_checkpoint"],
        fees_owed=d.get("fees_owed", 0),
    )


def _load_market(d: dict) -> Market:
    return Market(
        id=d["id"],
        question=d["question"],
        creator=d["creator"],
        b=d["b"],
        resolution=_load_resolution(d["resolution"]),
        seed_collateral=d["seed_collateral"],
        q_yes=d["q_yes"],
        q_no=d["q_no"],
        vault=d["vault"],
        fee_treasury_bps=d["fee_treasury_bps"],
        fee_vault_bps=d["fee_vault_bps"],
        fee_lp_bps=d["fee_lp_bps"],
        status=MarketStatus(d["status"]),
        total_lp_collateral=d["total_lp_collateral"],
        lp_fee_accumulator=d["lp_fee_accumulator"],
        lp_residual_accumulator=d["lp_residual_accumulator"],
        lp_fee_pot=d["lp_fee_pot"],
        lp_residual_pot=d["lp_residual_pot"],
        residual_finalized=d["residual_finalized"],
        lp_positions={
            provider: _load_lp_position(pos)
            for provider, pos in d["lp_positions"].items()
        },
        created_at=d["created_at"],
        resolved_at=d.get("resolved_at"),
    )


# ---------------------------------------------------------------------------
# Schema versioning
# ---------------------------------------------------------------------------

CURRENT_VERSION = 1

# version -> function returning the state at version + 1
_MIGRATIONS: dict[int, Callable[[dict], dict]] = {}


def _apply_migrations(state: dict) -> dict:
    """Step an older snapshot forward one version at a time."""
    version = state.get("version", 1)
    if version > CURRENT_VERSION:
        raise ValueError(
            f"snapshot version {version} is newer than {CURRENT_VERSION}")
    while version < CURRENT_VERSION:
        migrate = _MIGRATIONS.get(version)
        if migrate is None:
            raise ValueError(
                f"no migration from version {version} to {version + 1}")
        state = migrate(state)
        version = state["version"]
    return state


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(engine: MarketEngine, path: str) -> None:
    """
    Write the engine (ledger, markets, settings) to `path`.
    """
    ledger = engine.ledger
    state = {
        "version": CURRENT_VERSION,
        "counters": dict(_counters),
        "accounts": [_serialize(acc) for acc in ledger.accounts.values()],
        "supply": dict(ledger.supply),
        "entries": [_serialize(e) for e in ledger.entries],
        "markets": [_serialize(m) for m in engine.markets.values()],
        "settings": {"sensitivity": engine.config.sensitivity},
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)


def load_snapshot(path: str, oracle: Optional[Oracle] = None,
                  events: Optional[EventSink] = None,
                  config: Optional[EngineConfig] = None,
                  clock: Callable[[], int] = _unix_now) -> MarketEngine:
    """
    Rebuild an engine from `path`, migrating older snapshots first.
    Collaborators that aren't state (oracle, event sink, clock) are passed in.
    """
    with open(path) as f:
        state = json.load(f)

    state = _apply_migrations(state)

    # Restore ID counters
    reset_counters()
    for kind, value in state["counters"].items():
        set_counter(kind, value)

    ledger = Ledger()
    for adata in state["accounts"]:
        acc = _load_account(adata)
        ledger.accounts[acc.id] = acc
    ledger.supply = dict(state["supply"])
    ledger.entries = [_load_entry(e) for e in state["entries"]]

    config = config or EngineConfig()
    sensitivity = state["settings"].get("sensitivity")
    if sensitivity is not None:
        config.sensitivity = sensitivity

    engine = MarketEngine(ledger, oracle=oracle, events=events, config=config,
                          clock=clock)
    for mdata in state["markets"]:
        market = _load_market(mdata)
        engine.markets[market.id] = market

    return engine
