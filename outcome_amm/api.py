"""
FastAPI application. HTTP surface for the outcome AMM engine.

Public endpoints (no auth): health, markets, market detail, quotes, LP views.
Actor endpoints (X-Actor-Id, set by the authenticating gateway): account,
buy, sell, add liquidity, claims, redeem, upkeep, finalize.
Admin endpoints (admin key): mint, create market, resolve, pause/unpause,
sensitivity.

Each market is single-writer: mutations hold that market's asyncio.Lock.
Market creation, minting and snapshot writes hold the registry lock.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation

from fastapi import FastAPI

from outcome_amm.api_errors import APIError, api_error_handler, translate_engine_error
from outcome_amm.api_models import (
    AccountResponse, AddLiquidityRequest, AmountResponse, BuyRequest,
    CreateMarketRequest, HealthResponse, LpResponse, MarketDetail,
    MarketSummary, MintRequest, OrderResult, QuoteResponse, ResolveRequest,
    ResolveResponse, SellRequest, SensitivityRequest, TradeResult,
)
from outcome_amm.errors import EngineError, PartialFill
from outcome_amm.ledger import Account, Ledger
from outcome_amm.market_engine import EngineConfig, MarketEngine
from outcome_amm.middleware import Actor, AdminDep, RequestLogMiddleware
from outcome_amm.models import (
    COLLATERAL_DECIMALS, SHARE_DECIMALS, Comparison, Market, OracleType,
    ResolutionConfig, Side, Trade, from_decimal, reset_counters, to_decimal,
)
from outcome_amm.oracle import HttpOracle
from outcome_amm.persistence import load_snapshot, save_snapshot


STATE_PATH = os.environ.get("OUTCOME_AMM_STATE", "./outcome_amm_state.json")
ORACLE_URL = os.environ.get("OUTCOME_AMM_ORACLE_URL", "")

logger = logging.getLogger(__name__)


class MarketLocks:
    """One asyncio.Lock per market id, created on first use."""

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}

    def __call__(self, market_id: int) -> asyncio.Lock:
        lock = self._locks.get(market_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[market_id] = lock
        return lock


@asynccontextmanager
async def lifespan(app: FastAPI):
    oracle = HttpOracle(ORACLE_URL) if ORACLE_URL else None
    config = EngineConfig.from_env()
    if os.path.exists(STATE_PATH):
        engine = load_snapshot(STATE_PATH, oracle=oracle, config=config)
        logger.info("loaded %d markets from %s", len(engine.markets), STATE_PATH)
    else:
        reset_counters()
        engine = MarketEngine(Ledger(), oracle=oracle, config=config)
        logger.info("no state at %s, starting empty", STATE_PATH)

    app.state.engine = engine
    app.state.lock = asyncio.Lock()
    app.state.market_locks = MarketLocks()
    yield


app = FastAPI(title="Outcome AMM", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)
app.add_middleware(RequestLogMiddleware)


async def _save():
    """Snapshot the engine under the registry lock."""
    async with app.state.lock:
        save_snapshot(app.state.engine, STATE_PATH)


# ---------------------------------------------------------------------------
# Parsing and rendering
# ---------------------------------------------------------------------------

def _amount(value: str, decimals: int, field: str) -> int:
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise APIError(400, "invalid_amount", f"Invalid {field}: {value}")
    if not parsed.is_finite():
        raise APIError(400, "invalid_amount", f"Invalid {field}: {value}")
    return from_decimal(parsed, decimals)


def _collateral(value: str, field: str = "amount") -> int:
    return _amount(value, COLLATERAL_DECIMALS, field)


def _shares(value: str, field: str = "shares") -> int:
    return _amount(value, SHARE_DECIMALS, field)


def _side(value: str) -> Side:
    try:
        return Side(value.lower())
    except ValueError:
        raise APIError(400, "invalid_side", f"Unknown side: {value}")


def _c(value: int) -> str:
    return format(to_decimal(value, COLLATERAL_DECIMALS), "f")


def _s(value: int) -> str:
    return format(to_decimal(value, SHARE_DECIMALS), "f")


def _market(market_id: int) -> Market:
    try:
        return app.state.engine.get_market(market_id)
    except EngineError as e:
        raise translate_engine_error(e)


def _summary_fields(engine: MarketEngine, m: Market) -> dict:
    return dict(
        market_id=m.id,
        question=m.question,
        status=m.status.value,
        expiry_timestamp=m.resolution.expiry_timestamp,
        price_yes=_s(engine.spot_price(m.id, Side.YES)),
        price_no=_s(engine.spot_price(m.id, Side.NO)),
        price_yes_e6=engine.spot_price_e6(m.id, Side.YES),
        vault=_c(m.vault),
        yes_wins=m.resolution.yes_wins if m.is_resolved else None,
        created_at=m.created_at,
    )


def _trade_result(t: Trade) -> TradeResult:
    return TradeResult(
        trade_id=t.id,
        side=t.side.value,
        kind=t.kind,
        collateral=_c(t.collateral),
        tokens=_s(t.tokens),
        price=_s(t.spot_price),
    )


def _optional_c(value: int | None) -> str | None:
    return None if value is None else _c(value)


# ---------------------------------------------------------------------------
# Public
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    engine = app.state.engine
    return HealthResponse(
        status="ok",
        markets=len(engine.markets),
        accounts=len(engine.ledger.accounts),
        sensitivity=_s(engine.config.sensitivity),
    )


@app.get("/v1/markets")
async def list_markets(status: str | None = None) -> list[MarketSummary]:
    """List all markets with current prices. Optional exact status filter."""
    engine = app.state.engine
    return [
        MarketSummary(**_summary_fields(engine, m))
        for m in engine.markets.values()
        if status is None or m.status.value == status
    ]


@app.get("/v1/markets/{market_id}")
async def get_market(market_id: int) -> MarketDetail:
    engine = app.state.engine
    m = _market(market_id)
    res = m.resolution
    return MarketDetail(
        **_summary_fields(engine, m),
        creator=m.creator,
        b=_s(m.b),
        q_yes=_s(m.q_yes),
        q_no=_s(m.q_no),
        oracle_type=res.oracle_type.value,
        feed_id=res.feed_id,
        target_value=res.target_value,
        comparison=res.comparison.value,
        fee_treasury_bps=m.fee_treasury_bps,
        fee_vault_bps=m.fee_vault_bps,
        fee_lp_bps=m.fee_lp_bps,
        total_lp=_c(m.total_lp_collateral),
        lp_fee_pot=_c(m.lp_fee_pot),
        lp_residual_pot=_c(m.lp_residual_pot),
        residual_finalized=m.residual_finalized,
        required_collateral=_c(engine.required_collateral(m.id)),
        max_safe_yes=_optional_c(engine.max_safe_collateral(m.id, Side.YES)),
        max_safe_no=_optional_c(engine.max_safe_collateral(m.id, Side.NO)),
        resolved_at=m.resolved_at,
    )


@app.get("/v1/markets/{market_id}/quote")
async def quote(market_id: int, side: str, amount: str) -> QuoteResponse:
    """Simulate a buy of `amount` collateral, chunking included."""
    _market(market_id)
    try:
        q = app.state.engine.quote_buy(market_id, _side(side),
                                       _collateral(amount))
    except EngineError as e:
        raise translate_engine_error(e)
    return QuoteResponse(
        side=q.side.value,
        collateral_in=_c(q.collateral_in),
        tokens_out=_s(q.tokens_out),
        new_price=_s(q.new_spot_price),
        fees=_c(q.fees.total_fees),
        net=_c(q.fees.net),
        cap=_optional_c(q.cap),
        chunks=[_c(c) for c in q.chunks],
    )


@app.get("/v1/markets/{market_id}/lp/{provider}")
async def get_lp(market_id: int, provider: str) -> LpResponse:
    engine = app.state.engine
    m = _market(market_id)
    return LpResponse(
        market_id=market_id,
        provider=provider,
        shares=_c(m.lp_position(provider).shares),
        pending_fees=_c(engine.pending_lp_fees(market_id, provider)),
        pending_residual=_c(engine.pending_lp_residual(market_id, provider)),
    )


# ---------------------------------------------------------------------------
# Actor endpoints
# ---------------------------------------------------------------------------

@app.get("/v1/me")
async def get_me(actor: Actor) -> AccountResponse:
    acc = app.state.engine.ledger.accounts.get(actor) or Account(id=actor)
    return AccountResponse(
        account=acc.id,
        collateral=_c(acc.collateral),
        shares={asset: _s(v) for asset, v in acc.shares.items()},
    )


@app.post("/v1/markets/{market_id}/buy")
async def buy(market_id: int, req: BuyRequest, actor: Actor) -> OrderResult:
    side = _side(req.side)
    amount = _collateral(req.amount)
    min_tokens_out = _shares(req.min_tokens_out, "min_tokens_out")

    async with app.state.market_locks(market_id):
        try:
            order = app.state.engine.buy(
                market_id, actor, side, amount,
                min_tokens_out=min_tokens_out, allow_split=req.allow_split)
        except PartialFill as e:
            # committed chunks stay committed
            await _save()
            err = translate_engine_error(e)
            err.details["filled"] = _c(sum(t.collateral for t in e.trades))
            err.details["chunks"] = len(e.trades)
            raise err
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()

    return OrderResult(
        market_id=market_id,
        side=side.value,
        collateral_in=_c(order.collateral_in),
        tokens_out=_s(order.tokens_out),
        chunks=order.chunks,
        price=_s(order.spot_price),
        trades=[_trade_result(t) for t in order.trades],
    )


@app.post("/v1/markets/{market_id}/sell")
async def sell(market_id: int, req: SellRequest, actor: Actor) -> TradeResult:
    side = _side(req.side)
    shares = _shares(req.shares)
    min_out = _collateral(req.min_collateral_out, "min_collateral_out")

    async with app.state.market_locks(market_id):
        try:
            trade = app.state.engine.sell(market_id, actor, side, shares,
                                          min_collateral_out=min_out)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()

    return _trade_result(trade)


@app.post("/v1/markets/{market_id}/liquidity")
async def add_liquidity(market_id: int, req: AddLiquidityRequest,
                        actor: Actor) -> LpResponse:
    amount = _collateral(req.amount)
    engine = app.state.engine

    async with app.state.market_locks(market_id):
        try:
            pos = engine.add_liquidity(market_id, actor, amount)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()

    return LpResponse(
        market_id=market_id,
        provider=actor,
        shares=_c(pos.shares),
        pending_fees=_c(engine.pending_lp_fees(market_id, actor)),
        pending_residual=_c(engine.pending_lp_residual(market_id, actor)),
    )


@app.post("/v1/markets/{market_id}/claim-fees")
async def claim_fees(market_id: int, actor: Actor) -> AmountResponse:
    async with app.state.market_locks(market_id):
        try:
            amount = app.state.engine.claim_lp_fees(market_id, actor)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()
    return AmountResponse(market_id=market_id, amount=_c(amount))


@app.post("/v1/markets/{market_id}/claim-residual")
async def claim_residual(market_id: int, actor: Actor) -> AmountResponse:
    async with app.state.market_locks(market_id):
        try:
            amount = app.state.engine.claim_lp_residual(market_id, actor)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()
    return AmountResponse(market_id=market_id, amount=_c(amount))


@app.post("/v1/markets/{market_id}/redeem")
async def redeem(market_id: int, req: ResolveRequest,
                 actor: Actor) -> AmountResponse:
    side = _side(req.side)
    async with app.state.market_locks(market_id):
        try:
            payout = app.state.engine.redeem(market_id, actor, side)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()
    return AmountResponse(market_id=market_id, amount=_c(payout))


@app.post("/v1/markets/{market_id}/upkeep")
async def upkeep(market_id: int, actor: Actor) -> ResolveResponse:
    """Resolve an expired oracle market. Anyone may trigger it."""
    async with app.state.market_locks(market_id):
        try:
            yes_wins = await app.state.engine.perform_upkeep(market_id)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()
    logger.info("upkeep on market %d triggered by %s", market_id, actor)
    return ResolveResponse(market_id=market_id, yes_wins=yes_wins)


@app.post("/v1/markets/{market_id}/finalize")
async def finalize(market_id: int, actor: Actor) -> AmountResponse:
    async with app.state.market_locks(market_id):
        try:
            amount = app.state.engine.finalize_residual(market_id)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()
    return AmountResponse(market_id=market_id, amount=_c(amount))


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@app.post("/v1/admin/mint")
async def admin_mint(req: MintRequest, _: AdminDep) -> AccountResponse:
    """Mint collateral to an account."""
    amount = _collateral(req.amount)
    ledger = app.state.engine.ledger
    try:
        ledger.mint(req.account, amount)
    except EngineError as e:
        raise translate_engine_error(e)
    await _save()

    acc = ledger.account(req.account)
    return AccountResponse(
        account=acc.id,
        collateral=_c(acc.collateral),
        shares={asset: _s(v) for asset, v in acc.shares.items()},
    )


@app.post("/v1/admin/markets")
async def admin_create_market(req: CreateMarketRequest,
                              _: AdminDep) -> MarketDetail:
    """Create a market seeded by `creator`, who becomes the first LP."""
    seed = _collateral(req.seed_collateral, "seed_collateral")
    try:
        config = ResolutionConfig(
            expiry_timestamp=req.expiry_timestamp,
            oracle_type=OracleType(req.oracle_type),
            oracle_address=req.oracle_address,
            feed_id=req.feed_id,
            target_value=req.target_value,
            comparison=Comparison(req.comparison),
            tolerance=req.tolerance,
        )
    except ValueError as e:
        raise APIError(400, "invalid_config", str(e))

    async with app.state.lock:
        try:
            market = app.state.engine.create_market(
                req.creator, req.question, seed, config,
                fee_treasury_bps=req.fee_treasury_bps,
                fee_vault_bps=req.fee_vault_bps,
                fee_lp_bps=req.fee_lp_bps,
            )
        except EngineError as e:
            raise translate_engine_error(e)
    await _save()

    return await get_market(market.id)


@app.post("/v1/admin/markets/{market_id}/resolve")
async def admin_resolve(market_id: int, req: ResolveRequest,
                        _: AdminDep) -> ResolveResponse:
    """Manually resolve a market without an oracle."""
    side = _side(req.side)
    async with app.state.market_locks(market_id):
        try:
            app.state.engine.resolve(market_id, side.is_yes)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()
    return ResolveResponse(market_id=market_id, yes_wins=side.is_yes)


@app.post("/v1/admin/markets/{market_id}/pause")
async def admin_pause(market_id: int, _: AdminDep) -> MarketSummary:
    async with app.state.market_locks(market_id):
        try:
            m = app.state.engine.pause(market_id)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()
    return MarketSummary(**_summary_fields(app.state.engine, m))


@app.post("/v1/admin/markets/{market_id}/unpause")
async def admin_unpause(market_id: int, _: AdminDep) -> MarketSummary:
    async with app.state.market_locks(market_id):
        try:
            m = app.state.engine.unpause(market_id)
        except EngineError as e:
            raise translate_engine_error(e)
        await _save()
    return MarketSummary(**_summary_fields(app.state.engine, m))


@app.post("/v1/admin/sensitivity")
async def admin_sensitivity(req: SensitivityRequest,
                            _: AdminDep) -> HealthResponse:
    """Set the engine-wide price-impact sensitivity (a fraction, e.g. "0.02")."""
    value = _amount(req.sensitivity, SHARE_DECIMALS, "sensitivity")
    try:
        app.state.engine.set_sensitivity(value)
    except EngineError as e:
        raise translate_engine_error(e)
    await _save()
    return await health()
