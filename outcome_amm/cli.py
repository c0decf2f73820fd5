#!/usr/bin/env python3
"""
Outcome AMM operator CLI. Every invocation: lock → load → execute → save → unlock.

Usage:
    python3 -m outcome_amm.cli mint ACCOUNT AMOUNT
    python3 -m outcome_amm.cli create-market CREATOR QUESTION SEED EXPIRY
        [--feed FEED_ID --target VALUE --comparison above|below|equals]
    python3 -m outcome_amm.cli buy MARKET_ID ACCOUNT yes|no AMOUNT [--no-split]
    python3 -m outcome_amm.cli sell MARKET_ID ACCOUNT yes|no SHARES
    python3 -m outcome_amm.cli add-liquidity MARKET_ID PROVIDER AMOUNT
    python3 -m outcome_amm.cli claim-fees MARKET_ID PROVIDER
    python3 -m outcome_amm.cli claim-residual MARKET_ID PROVIDER
    python3 -m outcome_amm.cli resolve MARKET_ID yes|no
    python3 -m outcome_amm.cli upkeep MARKET_ID
    python3 -m outcome_amm.cli redeem MARKET_ID ACCOUNT yes|no
    python3 -m outcome_amm.cli finalize MARKET_ID
    python3 -m outcome_amm.cli pause|unpause MARKET_ID
    python3 -m outcome_amm.cli set-sensitivity RATE
    python3 -m outcome_amm.cli quote MARKET_ID yes|no AMOUNT
    python3 -m outcome_amm.cli account ACCOUNT
    python3 -m outcome_amm.cli market MARKET_ID
    python3 -m outcome_amm.cli markets

Amounts are human decimals: collateral has 6 places, shares 18, rates are
fractions (0.05 == 5%).

Output: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "...", "code": "..."}
Mutating commands also list the events they emitted under "events".
State: OUTCOME_AMM_STATE env var, default ./outcome_amm_state.json
"""

import argparse
import asyncio
import fcntl
import json
import logging
import os
import sys
from contextlib import contextmanager
from decimal import Decimal

from outcome_amm.errors import EngineError, PartialFill
from outcome_amm.events import event_to_dict
from outcome_amm.ledger import Ledger
from outcome_amm.market_engine import EngineConfig, MarketEngine
from outcome_amm.models import (
    COLLATERAL_DECIMALS, SHARE_DECIMALS, Comparison, Market, OracleType,
    ResolutionConfig, Side, from_decimal, reset_counters, to_decimal,
)
from outcome_amm.oracle import HttpOracle
from outcome_amm.persistence import load_snapshot, save_snapshot


STATE_PATH = os.environ.get("OUTCOME_AMM_STATE", "./outcome_amm_state.json")
ORACLE_URL = os.environ.get("OUTCOME_AMM_ORACLE_URL", "")
LOG_LEVEL = os.environ.get("OUTCOME_AMM_LOG_LEVEL", "WARNING")

logger = logging.getLogger(__name__)


@contextmanager
def file_lock(path):
    """Hold an exclusive flock on `path`.lock for the whole load-run-save cycle."""
    lock_path = path + ".lock"
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(f, fcntl.LOCK_UN)
        f.close()


def load_or_create(path) -> MarketEngine:
    oracle = HttpOracle(ORACLE_URL) if ORACLE_URL else None
    config = EngineConfig.from_env()
    if os.path.exists(path):
        return load_snapshot(path, oracle=oracle, config=config)
    reset_counters()
    return MarketEngine(Ledger(), oracle=oracle, config=config)


def reply(data):
    print(json.dumps(data))


def _collateral(value: str) -> int:
    return from_decimal(Decimal(value), COLLATERAL_DECIMALS)


def _shares(value: str) -> int:
    return from_decimal(Decimal(value), SHARE_DECIMALS)


def _c(value: int) -> str:
    return format(to_decimal(value, COLLATERAL_DECIMALS), "f")


def _s(value: int) -> str:
    return format(to_decimal(value, SHARE_DECIMALS), "f")


def describe_market(engine: MarketEngine, market: Market) -> dict:
    res = market.resolution
    return {
        "market_id": market.id,
        "question": market.question,
        "status": market.status.value,
        "expiry_timestamp": res.expiry_timestamp,
        "oracle_type": res.oracle_type.value,
        "price_yes": _s(engine.spot_price(market.id, Side.YES)),
        "price_no": _s(engine.spot_price(market.id, Side.NO)),
        "price_yes_e6": engine.spot_price_e6(market.id, Side.YES),
        "q_yes": _s(market.q_yes),
        "q_no": _s(market.q_no),
        "b": _s(market.b),
        "vault": _c(market.vault),
        "required_collateral": _c(engine.required_collateral(market.id)),
        "total_lp": _c(market.total_lp_collateral),
        "yes_wins": res.yes_wins if res.is_resolved else None,
    }


def cmd_mint(engine, args):
    engine.ledger.mint(args.account, _collateral(args.amount))
    return {"ok": True, "account": args.account,
            "collateral": _c(engine.ledger.collateral_balance(args.account))}


def cmd_create_market(engine, args):
    oracle_type = OracleType.EXTERNAL_FEED if args.feed else OracleType.NONE
    config = ResolutionConfig(
        expiry_timestamp=args.expiry,
        oracle_type=oracle_type,
        oracle_address=ORACLE_URL if args.feed else "",
        feed_id=args.feed or "",
        target_value=from_decimal(Decimal(args.target), 8),
        comparison=Comparison(args.comparison),
    )
    market = engine.create_market(args.creator, args.question,
                                  _collateral(args.seed), config)
    return {"ok": True, **describe_market(engine, market)}


def cmd_buy(engine, args):
    try:
        order = engine.buy(args.market_id, args.account, Side(args.side),
                           _collateral(args.amount),
                           allow_split=not args.no_split)
    except PartialFill as e:
        # committed chunks still get saved
        return {"ok": False, "error": e.message, "code": e.code,
                "chunks": len(e.trades),
                "collateral_in": _c(sum(t.collateral for t in e.trades)),
                "unfilled": _c(e.remaining)}
    return {"ok": True, "market_id": args.market_id, "chunks": order.chunks,
            "collateral_in": _c(order.collateral_in),
            "tokens_out": _s(order.tokens_out),
            "price": _s(order.spot_price)}


def cmd_sell(engine, args):
    trade = engine.sell(args.market_id, args.account, Side(args.side),
                        _shares(args.shares))
    return {"ok": True, "market_id": args.market_id, "trade_id": trade.id,
            "collateral_out": _c(trade.collateral),
            "price": _s(trade.spot_price)}


def cmd_add_liquidity(engine, args):
    pos = engine.add_liquidity(args.market_id, args.provider,
                               _collateral(args.amount))
    return {"ok": True, "market_id": args.market_id,
            "lp_shares": _c(pos.shares)}


def cmd_claim_fees(engine, args):
    amount = engine.claim_lp_fees(args.market_id, args.provider)
    return {"ok": True, "market_id": args.market_id, "amount": _c(amount)}


def cmd_claim_residual(engine, args):
    amount = engine.claim_lp_residual(args.market_id, args.provider)
    return {"ok": True, "market_id": args.market_id, "amount": _c(amount)}


def cmd_resolve(engine, args):
    engine.resolve(args.market_id, Side(args.side).is_yes)
    return {"ok": True, "market_id": args.market_id, "winner": args.side}


def cmd_upkeep(engine, args):
    yes_wins = asyncio.run(engine.perform_upkeep(args.market_id))
    return {"ok": True, "market_id": args.market_id,
            "winner": Side.of(yes_wins).value}


def cmd_redeem(engine, args):
    payout = engine.redeem(args.market_id, args.account, Side(args.side))
    return {"ok": True, "market_id": args.market_id, "payout": _c(payout)}


def cmd_finalize(engine, args):
    amount = engine.finalize_residual(args.market_id)
    return {"ok": True, "market_id": args.market_id, "residual": _c(amount)}


def cmd_pause(engine, args):
    market = engine.pause(args.market_id)
    return {"ok": True, "market_id": market.id, "status": market.status.value}


def cmd_unpause(engine, args):
    market = engine.unpause(args.market_id)
    return {"ok": True, "market_id": market.id, "status": market.status.value}


def cmd_set_sensitivity(engine, args):
    engine.set_sensitivity(from_decimal(Decimal(args.rate), SHARE_DECIMALS))
    return {"ok": True, "sensitivity": _s(engine.config.sensitivity)}


def cmd_quote(engine, args):
    quote = engine.quote_buy(args.market_id, Side(args.side),
                             _collateral(args.amount))
    return {"ok": True, "market_id": args.market_id,
            "tokens_out": _s(quote.tokens_out),
            "new_price": _s(quote.new_spot_price),
            "fees": _c(quote.fees.total_fees),
            "cap": _c(quote.cap) if quote.cap is not None else None,
            "chunks": [_c(c) for c in quote.chunks]}


def cmd_account(engine, args):
    acc = engine.ledger.accounts.get(args.account)
    if acc is None:
        return {"ok": False, "error": f"account {args.account} not found"}
    return {"ok": True, "account": acc.id, "collateral": _c(acc.collateral),
            "shares": {asset: _s(v) for asset, v in acc.shares.items()}}


def cmd_market(engine, args):
    market = engine.get_market(args.market_id)
    return {"ok": True, **describe_market(engine, market),
            "sensitivity": _s(engine.config.sensitivity)}


def cmd_markets(engine, args):
    return {"ok": True, "markets": [describe_market(engine, m)
                                    for m in engine.markets.values()]}


# Saved after running
MUTATING = {"mint", "create-market", "buy", "sell", "add-liquidity",
            "claim-fees", "claim-residual", "resolve", "upkeep", "redeem",
            "finalize", "pause", "unpause", "set-sensitivity"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Outcome AMM engine CLI")
    parser.add_argument("--state", default=STATE_PATH,
                        help="Path to state file")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("mint")
    p.add_argument("account")
    p.add_argument("amount")

    p = sub.add_parser("create-market")
    p.add_argument("creator")
    p.add_argument("question")
    p.add_argument("seed")
    p.add_argument("expiry", type=int, help="Unix timestamp")
    p.add_argument("--feed", default=None, help="Oracle feed id")
    p.add_argument("--target", default="0", help="Oracle target value")
    p.add_argument("--comparison", default="above",
                   choices=[c.value for c in Comparison])

    sides = [s.value for s in Side]

    p = sub.add_parser("buy")
    p.add_argument("market_id", type=int)
    p.add_argument("account")
    p.add_argument("side", choices=sides)
    p.add_argument("amount")
    p.add_argument("--no-split", action="store_true",
                   help="Fail instead of splitting over-cap orders")

    p = sub.add_parser("sell")
    p.add_argument("market_id", type=int)
    p.add_argument("account")
    p.add_argument("side", choices=sides)
    p.add_argument("shares")

    p = sub.add_parser("add-liquidity")
    p.add_argument("market_id", type=int)
    p.add_argument("provider")
    p.add_argument("amount")

    for name in ("claim-fees", "claim-residual"):
        p = sub.add_parser(name)
        p.add_argument("market_id", type=int)
        p.add_argument("provider")

    p = sub.add_parser("resolve")
    p.add_argument("market_id", type=int)
    p.add_argument("side", choices=sides)

    p = sub.add_parser("redeem")
    p.add_argument("market_id", type=int)
    p.add_argument("account")
    p.add_argument("side", choices=sides)

    for name in ("upkeep", "finalize", "pause", "unpause", "market"):
        p = sub.add_parser(name)
        p.add_argument("market_id", type=int)

    p = sub.add_parser("set-sensitivity")
    p.add_argument("rate")

    p = sub.add_parser("quote")
    p.add_argument("market_id", type=int)
    p.add_argument("side", choices=sides)
    p.add_argument("amount")

    p = sub.add_parser("account")
    p.add_argument("account")

    sub.add_parser("markets")
    return parser


COMMANDS = {
    "mint": cmd_mint,
    "create-market": cmd_create_market,
    "buy": cmd_buy,
    "sell": cmd_sell,
    "add-liquidity": cmd_add_liquidity,
    "claim-fees": cmd_claim_fees,
    "claim-residual": cmd_claim_residual,
    "resolve": cmd_resolve,
    "upkeep": cmd_upkeep,
    "redeem": cmd_redeem,
    "finalize": cmd_finalize,
    "pause": cmd_pause,
    "unpause": cmd_unpause,
    "set-sensitivity": cmd_set_sensitivity,
    "quote": cmd_quote,
    "account": cmd_account,
    "market": cmd_market,
    "markets": cmd_markets,
}


def main(argv=None):
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    state_path = args.state

    try:
        with file_lock(state_path):
            engine = load_or_create(state_path)
            result = COMMANDS[args.command](engine, args)

            if args.command in MUTATING:
                save_snapshot(engine, state_path)
                result["events"] = [event_to_dict(e)
                                    for e in engine.events.events]

            reply(result)
    except EngineError as e:
        reply({"ok": False, "error": e.message, "code": e.code})
        sys.exit(1)
    except Exception as e:
        logger.exception("command %s failed", args.command)
        reply({"ok": False, "error": str(e)})
        sys.exit(1)

    # ok: false replies (partial fills) exit 1 after saving
    if not result.get("ok", True):
        sys.exit(1)


if __name__ == "__main__":
    main()
