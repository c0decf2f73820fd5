"""
Engine test suite. These tests define the contract the engine must satisfy:
conservation of collateral, solvency, the price-impact cap, LP accounting,
fail-closed resolution and side-effect-free failures.
"""

import asyncio
import copy
import json
import random

import httpx
import pytest

from outcome_amm.errors import (
    AlreadyResolved, InsufficientBalance, InsufficientOutput,
    InsufficientSupply, InvalidAmount, InvalidConfig, MarketNotActive,
    MarketNotFound, NotResolved, NothingToClaim, NothingToRedeem,
    NotWinningSide, OracleStale, OracleUnavailable, PartialFill,
    PriceImpactExceeded, ResidualNotReady, ResolutionNotAllowed,
    SlippageExceeded, UpkeepNotNeeded,
)
from outcome_amm.events import (
    Buy, InMemoryEventLog, LiquidityAdded, LpFeesClaimed, LpResidualClaimed,
    MarketCreated, MarketResolved, MarketStatusChanged, Redeemed,
    ResidualFinalized, Sell, event_to_dict,
)
from outcome_amm.fixed_point import HALF, SCALE
from outcome_amm.ledger import Ledger
from outcome_amm.lmsr import max_loss
from outcome_amm.market_engine import EngineConfig, MarketEngine
from outcome_amm.models import (
    Comparison, MarketStatus, OracleType, ResolutionConfig, Side,
    reset_counters,
)
from outcome_amm.oracle import HttpOracle, Oracle, OracleReading, StaticOracle
from outcome_amm.persistence import load_snapshot, save_snapshot
from outcome_amm.resolution import evaluate


E6 = 10 ** 6
SEED = 1_000 * E6
BALANCE = 10_000 * E6
NOW = 1_700_000_000
EXPIRY = NOW + 86_400
FEED = "BTC/USD"
TARGET = 50_000 * 10 ** 8
TRADERS = ("alice", "bob", "carol")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Clock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


def fresh_system(oracle_type=OracleType.NONE, config=None):
    """
    Engine with a funded creator and traders and one open market.
    Returns (engine, market, clock, oracle).
    """
    reset_counters()
    clock = Clock()
    oracle = StaticOracle()
    engine = MarketEngine(Ledger(), oracle=oracle, events=InMemoryEventLog(),
                          config=config, clock=clock)
    engine.ledger.mint("creator", SEED)
    for name in TRADERS:
        engine.ledger.mint(name, BALANCE)

    resolution = ResolutionConfig(expiry_timestamp=EXPIRY)
    if oracle_type == OracleType.EXTERNAL_FEED:
        resolution = ResolutionConfig(
            expiry_timestamp=EXPIRY,
            oracle_type=OracleType.EXTERNAL_FEED,
            oracle_address="https://oracle.test",
            feed_id=FEED,
            target_value=TARGET,
            comparison=Comparison.ABOVE,
        )
    market = engine.create_market("creator", "Will it rain tomorrow?", SEED,
                                  resolution)
    return engine, market, clock, oracle


def assert_conserved(engine):
    ledger = engine.ledger
    assert ledger.total_collateral() + engine.collateral_held() == ledger.total_minted()


def assert_supply_matches(engine, market):
    assert market.q_yes == engine.ledger.total_supply(market.id, Side.YES)
    assert market.q_no == engine.ledger.total_supply(market.id, Side.NO)


def assert_solvent(engine, market):
    assert market.vault >= engine.required_collateral(market.id)


def state_of(engine, market):
    return (market.q_yes, market.q_no, market.vault,
            copy.deepcopy(engine.ledger.accounts))


# ---------------------------------------------------------------------------
# Market creation
# ---------------------------------------------------------------------------

class TestCreateMarket:

    def test_seed_sets_liquidity(self):
        engine, market, _, _ = fresh_system()
        assert 0 <= SEED * 10 ** 12 - max_loss(market.b) <= 2
        assert market.q_yes == market.q_no == 0
        assert engine.spot_price(market.id, Side.YES) == HALF
        assert market.vault == SEED
        assert engine.ledger.collateral_balance("creator") == 0

    def test_creator_is_first_lp(self):
        _, market, _, _ = fresh_system()
        assert market.total_lp_collateral == SEED
        assert market.lp_position("creator").shares == SEED

    def test_emits_created(self):
        engine, market, _, _ = fresh_system()
        [event] = engine.events.of_type(MarketCreated)
        assert event == MarketCreated(id=market.id, seed_collateral=SEED,
                                      expiry_timestamp=EXPIRY)
        assert event_to_dict(event)["type"] == "MarketCreated"

    def test_default_fees(self):
        _, market, _, _ = fresh_system()
        assert (market.fee_treasury_bps, market.fee_vault_bps,
                market.fee_lp_bps) == (100, 50, 50)

    def test_rejects_bad_config(self):
        engine, _, _, _ = fresh_system()
        engine.ledger.mint("dave", SEED)
        good = ResolutionConfig(expiry_timestamp=EXPIRY)
        with pytest.raises(InvalidAmount):
            engine.create_market("dave", "q", 0, good)
        with pytest.raises(InvalidConfig):
            engine.create_market("dave", "q", SEED,
                                 ResolutionConfig(expiry_timestamp=NOW))
        with pytest.raises(InvalidConfig):
            engine.create_market("dave", "q", SEED, ResolutionConfig(
                expiry_timestamp=EXPIRY,
                oracle_type=OracleType.EXTERNAL_FEED))
        with pytest.raises(InvalidConfig):
            engine.create_market("dave", "q", SEED, good,
                                 fee_treasury_bps=9_000, fee_vault_bps=2_000)
        assert len(engine.markets) == 1
        assert engine.ledger.collateral_balance("dave") == SEED

    def test_creator_needs_seed(self):
        engine, _, _, _ = fresh_system()
        with pytest.raises(InsufficientBalance):
            engine.create_market("nobody", "q", SEED,
                                 ResolutionConfig(expiry_timestamp=EXPIRY))
        assert len(engine.markets) == 1

    def test_unknown_market(self):
        engine, _, _, _ = fresh_system()
        with pytest.raises(MarketNotFound):
            engine.buy(99, "alice", Side.YES, E6)


# ---------------------------------------------------------------------------
# Buying
# ---------------------------------------------------------------------------

class TestBuy:

    def test_single_buy_with_fees(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.YES, 100 * E6)

        assert order.chunks == 1
        [trade] = order.trades
        assert trade.fees.net == 98 * E6
        assert trade.fees.treasury == E6
        assert trade.fees.vault == E6 // 2
        assert trade.fees.lp == E6 // 2

        price = engine.spot_price(market.id, Side.YES)
        assert HALF < price <= HALF + engine.config.sensitivity
        assert engine.spot_price_e6(market.id, Side.YES) == price // 10 ** 12
        assert engine.spot_price_e6(market.id, Side.NO) < 500_000
        assert trade.spot_price == price

        assert market.q_yes == trade.tokens
        assert engine.ledger.share_balance(market.id, Side.YES, "alice") == trade.tokens
        assert engine.ledger.collateral_balance("alice") == BALANCE - 100 * E6
        assert engine.ledger.collateral_balance("treasury") == E6
        assert market.vault == SEED + 98 * E6 + E6 // 2
        assert market.lp_fee_pot == E6 // 2
        assert_conserved(engine)
        assert_solvent(engine, market)

    def test_emits_buy_event(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.NO, 10 * E6)
        [event] = engine.events.of_type(Buy)
        assert event.user == "alice"
        assert event.side == "no"
        assert event.collateral_in == 10 * E6
        assert event.tokens_out == order.tokens_out
        assert event.new_spot_price == engine.spot_price(market.id, Side.NO)

    def test_no_buy_lowers_yes_price(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "bob", Side.NO, 50 * E6)
        assert engine.spot_price(market.id, Side.YES) < HALF

    def test_rejects_nonpositive(self):
        engine, market, _, _ = fresh_system()
        with pytest.raises(InvalidAmount):
            engine.buy(market.id, "alice", Side.YES, 0)

    def test_insufficient_balance_leaves_no_trace(self):
        engine, market, _, _ = fresh_system()
        before = state_of(engine, market)
        with pytest.raises(InsufficientBalance):
            engine.buy(market.id, "alice", Side.YES, BALANCE + 1)
        assert state_of(engine, market) == before

    def test_slippage_guard(self):
        engine, market, _, _ = fresh_system()
        snapshot = copy.deepcopy(market)
        with pytest.raises(SlippageExceeded):
            engine.buy(market.id, "alice", Side.YES, 100 * E6,
                       min_tokens_out=1_000 * SCALE)
        assert market == snapshot
        assert engine.ledger.collateral_balance("alice") == BALANCE
        assert engine.events.of_type(Buy) == []


class TestChunkedBuy:

    def test_large_order_is_split(self):
        engine, market, _, _ = fresh_system()
        cap = engine.max_safe_collateral(market.id, Side.YES)
        assert cap < 2_000 * E6

        order = engine.buy(market.id, "alice", Side.YES, 2_000 * E6)
        assert order.chunks > 1
        assert order.collateral_in == 2_000 * E6
        assert sum(t.collateral for t in order.trades) == 2_000 * E6
        assert engine.ledger.collateral_balance("alice") == BALANCE - 2_000 * E6
        assert market.q_yes == order.tokens_out
        assert_conserved(engine)
        assert_solvent(engine, market)

    def test_each_chunk_respects_price_bound(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.YES, 2_000 * E6)
        prev = HALF
        for trade in order.trades:
            assert trade.spot_price - prev <= engine.config.sensitivity
            prev = trade.spot_price
        assert len(engine.events.of_type(Buy)) == order.chunks

    def test_no_split_rejects_over_cap(self):
        engine, market, _, _ = fresh_system()
        before = state_of(engine, market)
        with pytest.raises(PriceImpactExceeded) as exc:
            engine.buy(market.id, "alice", Side.YES, 2_000 * E6,
                       allow_split=False)
        cap = engine.max_safe_collateral(market.id, Side.YES)
        assert exc.value.details["cap"] == cap
        assert exc.value.details["chunks"] == -(-2_000 * E6 // (cap * 98 // 100))
        assert state_of(engine, market) == before

    @pytest.mark.parametrize("fees", [(100, 50, 50), (33, 17, 9), (1, 1, 1)])
    @pytest.mark.parametrize("sensitivity", [10 ** 15, 10 ** 16, 5 * 10 ** 16])
    def test_buy_of_exactly_the_cap(self, fees, sensitivity):
        treasury, vault, lp = fees
        config = EngineConfig(fee_treasury_bps=treasury, fee_vault_bps=vault,
                              fee_lp_bps=lp, sensitivity=sensitivity)
        engine, market, _, _ = fresh_system(config=config)
        rng = random.Random(sensitivity + treasury)
        for _ in range(6):
            side = rng.choice([Side.YES, Side.NO])
            engine.buy(market.id, "bob", side, rng.randrange(1, 50) * E6)

            cap = engine.max_safe_collateral(market.id, Side.YES)
            before = engine.spot_price(market.id, Side.YES)
            order = engine.buy(market.id, "alice", Side.YES, cap)
            assert order.chunks == 1
            after = engine.spot_price(market.id, Side.YES)
            assert after - before <= sensitivity

    def test_failed_chunk_keeps_earlier_chunks(self):
        engine, market, _, _ = fresh_system()
        original = engine._buy_chunk
        calls = []

        def flaky(*args, **kwargs):
            calls.append(args)
            if len(calls) == 3:
                raise InsufficientOutput("chunk rejected")
            return original(*args, **kwargs)

        engine._buy_chunk = flaky
        with pytest.raises(PartialFill) as exc:
            engine.buy(market.id, "alice", Side.YES, 2_000 * E6)

        err = exc.value
        assert len(err.trades) == 2
        filled = sum(t.collateral for t in err.trades)
        assert err.remaining == 2_000 * E6 - filled
        assert market.q_yes == sum(t.tokens for t in err.trades)
        assert engine.ledger.collateral_balance("alice") == BALANCE - filled
        assert_conserved(engine)
        assert_supply_matches(engine, market)

    def test_quote_matches_execution(self):
        engine, market, _, _ = fresh_system()
        quote = engine.quote_buy(market.id, Side.YES, 2_000 * E6)
        order = engine.buy(market.id, "alice", Side.YES, 2_000 * E6)
        assert quote.chunks == [t.collateral for t in order.trades]
        assert quote.tokens_out == order.tokens_out
        assert quote.new_spot_price == order.spot_price
        assert quote.fees.treasury == sum(t.fees.treasury for t in order.trades)

    def test_quote_commits_nothing(self):
        engine, market, _, _ = fresh_system()
        before = state_of(engine, market)
        engine.quote_buy(market.id, Side.NO, 500 * E6)
        assert state_of(engine, market) == before


# ---------------------------------------------------------------------------
# Selling
# ---------------------------------------------------------------------------

class TestSell:

    def test_sell_more_than_held(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.YES, 50 * E6)
        before = state_of(engine, market)
        with pytest.raises(InsufficientSupply):
            engine.sell(market.id, "alice", Side.YES, order.tokens_out + 1)
        with pytest.raises(InsufficientSupply):
            engine.sell(market.id, "bob", Side.YES, SCALE)
        assert state_of(engine, market) == before

    def test_round_trip_loses_fees(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.YES, 100 * E6)
        trade = engine.sell(market.id, "alice", Side.YES, order.tokens_out)

        assert trade.collateral < 100 * E6
        assert 97_999_000 <= trade.collateral <= 98 * E6
        assert market.q_yes == 0
        assert engine.spot_price(market.id, Side.YES) == HALF
        assert_conserved(engine)
        assert_solvent(engine, market)

    def test_sells_are_fee_free(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.YES, 100 * E6)
        treasury = engine.ledger.collateral_balance("treasury")
        pot = market.lp_fee_pot
        engine.sell(market.id, "alice", Side.YES, order.tokens_out // 2)
        assert engine.ledger.collateral_balance("treasury") == treasury
        assert market.lp_fee_pot == pot

    def test_quote_matches_sell(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.NO, 80 * E6)
        quote = engine.quote_sell(market.id, Side.NO, order.tokens_out // 3)
        trade = engine.sell(market.id, "alice", Side.NO, order.tokens_out // 3)
        assert quote.collateral_out == trade.collateral
        assert quote.new_spot_price == trade.spot_price

    def test_dust_sell_rejected(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        with pytest.raises(InsufficientOutput):
            engine.sell(market.id, "alice", Side.YES, 10 ** 12)

    def test_min_collateral_out(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.YES, 100 * E6)
        before = state_of(engine, market)
        with pytest.raises(SlippageExceeded):
            engine.sell(market.id, "alice", Side.YES, order.tokens_out,
                        min_collateral_out=100 * E6)
        assert state_of(engine, market) == before

    def test_emits_sell_event(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.YES, 100 * E6)
        trade = engine.sell(market.id, "alice", Side.YES, order.tokens_out)
        [event] = engine.events.of_type(Sell)
        assert event == Sell(market_id=market.id, side="yes",
                             tokens_in=order.tokens_out,
                             collateral_out=trade.collateral,
                             new_spot_price=trade.spot_price, user="alice")


# ---------------------------------------------------------------------------
# Solvency and conservation under random trading
# ---------------------------------------------------------------------------

class TestInvariants:

    def test_random_trading(self):
        engine, market, _, _ = fresh_system()
        rng = random.Random(42)
        for _ in range(40):
            trader = rng.choice(TRADERS)
            side = rng.choice([Side.YES, Side.NO])
            try:
                if rng.random() < 0.6:
                    engine.buy(market.id, trader, side,
                               rng.randrange(1, 400) * E6)
                else:
                    held = engine.ledger.share_balance(market.id, side, trader)
                    amount = held * rng.randrange(1, 101) // 100
                    if amount == 0:
                        continue
                    engine.sell(market.id, trader, side, amount)
            except (InsufficientOutput, InsufficientBalance, PartialFill):
                pass

            assert market.q_yes >= 0 and market.q_no >= 0
            assert 0 < engine.spot_price(market.id, Side.YES) < SCALE
            assert_solvent(engine, market)
            assert_conserved(engine)
            assert_supply_matches(engine, market)

    def test_liquidity_keeps_solvency(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 300 * E6)
        engine.add_liquidity(market.id, "bob", 500 * E6)
        engine.buy(market.id, "carol", Side.NO, 300 * E6)
        assert_solvent(engine, market)
        assert_conserved(engine)

    def test_failed_operation_restores_market(self):
        engine, market, _, _ = fresh_system()
        with pytest.raises(RuntimeError):
            with engine._atomic(market):
                market.q_yes = 5 * SCALE
                market.lp_positions["x"] = market.lp_position("x")
                raise RuntimeError("boom")
        assert market.q_yes == 0
        assert "x" not in market.lp_positions


# ---------------------------------------------------------------------------
# Liquidity providers
# ---------------------------------------------------------------------------

class TestLiquidity:

    def test_add_liquidity(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        b, price, vault = market.b, engine.spot_price(market.id, Side.YES), market.vault

        pos = engine.add_liquidity(market.id, "bob", 500 * E6)
        assert pos.shares == 500 * E6
        assert market.total_lp_collateral == SEED + 500 * E6
        assert market.vault == vault + 500 * E6
        assert market.b == b
        assert engine.spot_price(market.id, Side.YES) == price
        assert engine.events.of_type(LiquidityAdded)[-1] == LiquidityAdded(
            market_id=market.id, provider="bob", amount=500 * E6)
        assert_conserved(engine)

    def test_fees_accrue_pro_rata(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        assert engine.pending_lp_fees(market.id, "creator") == 500_000

        engine.add_liquidity(market.id, "bob", SEED)
        assert engine.pending_lp_fees(market.id, "bob") == 0

        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        assert engine.pending_lp_fees(market.id, "creator") == 750_000
        assert engine.pending_lp_fees(market.id, "bob") == 250_000

    def test_top_up_keeps_accrued_fees(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        engine.ledger.mint("creator", SEED)
        engine.add_liquidity(market.id, "creator", SEED)
        assert market.lp_position("creator").shares == 2 * SEED
        assert engine.pending_lp_fees(market.id, "creator") == 500_000

    def test_claim_fees(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        amount = engine.claim_lp_fees(market.id, "creator")
        assert amount == 500_000
        assert engine.ledger.collateral_balance("creator") == 500_000
        assert market.lp_fee_pot == 0
        assert engine.events.of_type(LpFeesClaimed)[-1].amount == 500_000
        with pytest.raises(NothingToClaim):
            engine.claim_lp_fees(market.id, "creator")
        with pytest.raises(NothingToClaim):
            engine.claim_lp_fees(market.id, "stranger")
        assert_conserved(engine)

    def test_fees_claimable_after_resolution(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        engine.resolve(market.id, yes_wins=True)
        assert engine.claim_lp_fees(market.id, "creator") == 500_000

    def test_add_liquidity_requires_open_market(self):
        engine, market, clock, _ = fresh_system()
        with pytest.raises(InvalidAmount):
            engine.add_liquidity(market.id, "bob", 0)
        clock.now = EXPIRY
        with pytest.raises(MarketNotActive):
            engine.add_liquidity(market.id, "bob", E6)

    def test_residual_claim_gates(self):
        engine, market, _, _ = fresh_system()
        with pytest.raises(NotResolved):
            engine.claim_lp_residual(market.id, "creator")
        engine.resolve(market.id, yes_wins=False)
        with pytest.raises(ResidualNotReady):
            engine.claim_lp_residual(market.id, "creator")


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class SlowOracle(Oracle):
    async def get_latest(self, feed_id: str) -> OracleReading:
        await asyncio.sleep(5)
        return OracleReading(0, 0)


class BrokenOracle(Oracle):
    async def get_latest(self, feed_id: str) -> OracleReading:
        raise RuntimeError("connection reset")


class YieldingOracle(Oracle):
    def __init__(self, reading: OracleReading):
        self.reading = reading

    async def get_latest(self, feed_id: str) -> OracleReading:
        await asyncio.sleep(0)
        return self.reading


class TestManualResolution:

    def test_resolve(self):
        engine, market, _, _ = fresh_system()
        engine.resolve(market.id, yes_wins=True)
        assert market.is_resolved
        assert market.status == MarketStatus.RESOLVED
        assert market.winning_side == Side.YES
        assert market.resolved_at is not None
        assert engine.events.of_type(MarketResolved) == [
            MarketResolved(market_id=market.id, yes_wins=True)]

    def test_resolved_market_rejects_trading(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 10 * E6)
        engine.resolve(market.id, yes_wins=False)
        with pytest.raises(MarketNotActive):
            engine.buy(market.id, "alice", Side.YES, E6)
        with pytest.raises(MarketNotActive):
            engine.sell(market.id, "alice", Side.YES, SCALE)

    def test_resolution_is_final(self):
        engine, market, _, _ = fresh_system()
        engine.resolve(market.id, yes_wins=True)
        with pytest.raises(AlreadyResolved):
            engine.resolve(market.id, yes_wins=False)
        assert market.resolution.yes_wins is True

    def test_oracle_market_cannot_resolve_manually(self):
        engine, market, _, _ = fresh_system(OracleType.EXTERNAL_FEED)
        with pytest.raises(ResolutionNotAllowed):
            engine.resolve(market.id, yes_wins=True)
        assert not market.is_resolved

    def test_expired_market_rejects_trading(self):
        engine, market, clock, _ = fresh_system()
        clock.now = EXPIRY
        with pytest.raises(MarketNotActive):
            engine.buy(market.id, "alice", Side.YES, E6)


class TestPause:

    def test_pause_blocks_trading(self):
        engine, market, _, _ = fresh_system()
        engine.pause(market.id)
        assert market.status == MarketStatus.PAUSED
        with pytest.raises(MarketNotActive):
            engine.buy(market.id, "alice", Side.YES, E6)
        with pytest.raises(MarketNotActive):
            engine.add_liquidity(market.id, "bob", E6)
        with pytest.raises(MarketNotActive):
            engine.pause(market.id)

        engine.unpause(market.id)
        engine.buy(market.id, "alice", Side.YES, E6)
        assert [e.status for e in engine.events.of_type(MarketStatusChanged)] == [
            "paused", "active"]

    def test_paused_market_can_resolve(self):
        engine, market, _, _ = fresh_system()
        engine.pause(market.id)
        engine.resolve(market.id, yes_wins=True)
        assert market.status == MarketStatus.RESOLVED
        with pytest.raises(MarketNotActive):
            engine.unpause(market.id)


class TestOracleResolution:

    async def test_upkeep_resolves_from_feed(self):
        engine, market, clock, oracle = fresh_system(OracleType.EXTERNAL_FEED)
        assert not engine.check_upkeep(market.id)
        clock.now = EXPIRY + 60
        assert engine.check_upkeep(market.id)

        oracle.set(FEED, TARGET + 1, updated_at=clock.now - 30)
        assert await engine.perform_upkeep(market.id) is True
        assert market.is_resolved
        assert not engine.check_upkeep(market.id)

    async def test_below_target_means_no(self):
        engine, market, clock, oracle = fresh_system(OracleType.EXTERNAL_FEED)
        clock.now = EXPIRY
        oracle.set(FEED, TARGET, updated_at=clock.now)
        assert await engine.perform_upkeep(market.id) is False
        assert market.winning_side == Side.NO

    async def test_not_due(self):
        engine, market, _, oracle = fresh_system(OracleType.EXTERNAL_FEED)
        oracle.set(FEED, TARGET + 1, updated_at=NOW)
        with pytest.raises(UpkeepNotNeeded):
            await engine.perform_upkeep(market.id)
        assert not market.is_resolved

    async def test_stale_reading_fails_closed(self):
        engine, market, clock, oracle = fresh_system(OracleType.EXTERNAL_FEED)
        clock.now = EXPIRY + 10
        oracle.set(FEED, TARGET + 1,
                   updated_at=clock.now - engine.config.max_staleness - 1)
        with pytest.raises(OracleStale) as exc:
            await engine.perform_upkeep(market.id)
        assert isinstance(exc.value, OracleUnavailable)
        assert market.resolution.is_resolved is False
        assert engine.check_upkeep(market.id)

    async def test_future_reading_is_stale(self):
        engine, market, clock, oracle = fresh_system(OracleType.EXTERNAL_FEED)
        clock.now = EXPIRY
        oracle.set(FEED, TARGET + 1, updated_at=clock.now + 600)
        with pytest.raises(OracleStale):
            await engine.perform_upkeep(market.id)
        assert not market.is_resolved

    async def test_failed_reading(self):
        engine, market, clock, oracle = fresh_system(OracleType.EXTERNAL_FEED)
        clock.now = EXPIRY
        oracle.set(FEED, TARGET + 1, updated_at=clock.now, ok=False)
        with pytest.raises(OracleUnavailable) as exc:
            await engine.perform_upkeep(market.id)
        assert not isinstance(exc.value, OracleStale)
        assert not market.is_resolved

    async def test_unknown_feed(self):
        engine, market, clock, _ = fresh_system(OracleType.EXTERNAL_FEED)
        clock.now = EXPIRY
        with pytest.raises(OracleUnavailable):
            await engine.perform_upkeep(market.id)

    async def test_timeout(self):
        config = EngineConfig(oracle_timeout=0.05)
        engine, market, clock, _ = fresh_system(OracleType.EXTERNAL_FEED,
                                                config=config)
        engine.oracle = SlowOracle()
        clock.now = EXPIRY
        with pytest.raises(OracleUnavailable):
            await engine.perform_upkeep(market.id)
        assert not market.is_resolved

    async def test_oracle_exception(self):
        engine, market, clock, _ = fresh_system(OracleType.EXTERNAL_FEED)
        engine.oracle = BrokenOracle()
        clock.now = EXPIRY
        with pytest.raises(OracleUnavailable):
            await engine.perform_upkeep(market.id)

    async def test_manual_market_needs_manual_resolution(self):
        engine, market, clock, _ = fresh_system()
        clock.now = EXPIRY
        with pytest.raises(ResolutionNotAllowed):
            await engine.perform_upkeep(market.id)

    async def test_concurrent_upkeep_resolves_once(self):
        engine, market, clock, _ = fresh_system(OracleType.EXTERNAL_FEED)
        clock.now = EXPIRY
        engine.oracle = YieldingOracle(OracleReading(TARGET + 1, clock.now))
        results = await asyncio.gather(
            engine.perform_upkeep(market.id),
            engine.perform_upkeep(market.id),
            return_exceptions=True,
        )
        assert results.count(True) == 1
        [other] = [r for r in results if r is not True]
        assert isinstance(other, (AlreadyResolved, UpkeepNotNeeded))
        assert len(engine.events.of_type(MarketResolved)) == 1


class TestComparison:

    def _config(self, comparison, tolerance=0):
        return ResolutionConfig(expiry_timestamp=EXPIRY, target_value=100,
                                comparison=comparison, tolerance=tolerance)

    def test_above(self):
        assert evaluate(self._config(Comparison.ABOVE), 101)
        assert not evaluate(self._config(Comparison.ABOVE), 100)

    def test_below(self):
        assert evaluate(self._config(Comparison.BELOW), 99)
        assert not evaluate(self._config(Comparison.BELOW), 100)

    def test_equals_is_exact_by_default(self):
        assert evaluate(self._config(Comparison.EQUALS), 100)
        assert not evaluate(self._config(Comparison.EQUALS), 101)

    def test_equals_with_tolerance(self):
        config = self._config(Comparison.EQUALS, tolerance=5)
        assert evaluate(config, 95)
        assert evaluate(config, 105)
        assert not evaluate(config, 106)


class TestHttpOracle:

    def _oracle(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpOracle("https://oracle.test/", client=client)

    async def test_reads_latest(self):
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return httpx.Response(200, json={"value": "123", "updated_at": NOW,
                                             "ok": True})

        reading = await self._oracle(handler).get_latest("BTC-USD")
        assert reading == OracleReading(123, NOW, True)
        assert seen == ["https://oracle.test/feeds/BTC-USD/latest"]

    async def test_http_error_becomes_unavailable(self):
        oracle = self._oracle(lambda request: httpx.Response(502))
        with pytest.raises(httpx.HTTPStatusError):
            await oracle.get_latest("BTC-USD")

        engine, market, clock, _ = fresh_system(OracleType.EXTERNAL_FEED)
        engine.oracle = oracle
        clock.now = EXPIRY
        with pytest.raises(OracleUnavailable):
            await engine.perform_upkeep(market.id)
        assert not market.is_resolved


# ---------------------------------------------------------------------------
# Redemption and residual
# ---------------------------------------------------------------------------

class TestRedemption:

    def test_redeem_before_resolution(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 10 * E6)
        with pytest.raises(NotResolved):
            engine.redeem(market.id, "alice", Side.YES)

    def test_losing_side_rejected(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        engine.buy(market.id, "carol", Side.NO, 60 * E6)
        engine.resolve(market.id, yes_wins=True)

        before = state_of(engine, market)
        held = engine.ledger.share_balance(market.id, Side.NO, "carol")
        with pytest.raises(NotWinningSide):
            engine.redeem(market.id, "carol", Side.NO)
        assert state_of(engine, market) == before
        assert engine.ledger.share_balance(market.id, Side.NO, "carol") == held

    def test_nothing_to_redeem(self):
        engine, market, _, _ = fresh_system()
        engine.resolve(market.id, yes_wins=True)
        with pytest.raises(NothingToRedeem):
            engine.redeem(market.id, "carol", Side.YES)

    def test_winner_paid_in_full(self):
        engine, market, _, _ = fresh_system()
        order = engine.buy(market.id, "alice", Side.YES, 100 * E6)
        engine.resolve(market.id, yes_wins=True)
        vault = market.vault

        payout = engine.redeem(market.id, "alice", Side.YES)
        assert payout == order.tokens_out // 10 ** 12
        assert market.vault == vault - payout
        assert market.q_yes == 0
        assert engine.ledger.share_balance(market.id, Side.YES, "alice") == 0
        assert engine.ledger.collateral_balance("alice") == BALANCE - 100 * E6 + payout
        assert engine.events.of_type(Redeemed) == [Redeemed(
            market_id=market.id, user="alice", side="yes",
            collateral_out=payout)]
        assert_conserved(engine)

    def test_finalize_waits_for_winners(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        with pytest.raises(NotResolved):
            engine.finalize_residual(market.id)
        engine.resolve(market.id, yes_wins=True)
        with pytest.raises(ResidualNotReady):
            engine.finalize_residual(market.id)

    def test_finalize_and_claim_residual(self):
        engine, market, _, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        engine.resolve(market.id, yes_wins=True)
        engine.redeem(market.id, "alice", Side.YES)
        vault = market.vault

        amount = engine.finalize_residual(market.id)
        assert amount == vault
        assert market.vault == 0
        assert market.residual_finalized
        assert market.lp_residual_pot == amount
        assert engine.events.of_type(ResidualFinalized)[-1].amount == amount
        with pytest.raises(ResidualNotReady):
            engine.finalize_residual(market.id)

        assert engine.pending_lp_residual(market.id, "creator") == amount
        assert engine.claim_lp_residual(market.id, "creator") == amount
        assert engine.events.of_type(LpResidualClaimed)[-1].amount == amount
        with pytest.raises(NothingToClaim):
            engine.claim_lp_residual(market.id, "creator")
        assert_conserved(engine)

    def test_full_lifecycle_two_providers(self):
        engine, market, _, _ = fresh_system()
        engine.add_liquidity(market.id, "bob", SEED)
        yes = engine.buy(market.id, "alice", Side.YES, 400 * E6)
        engine.buy(market.id, "carol", Side.NO, 150 * E6)
        engine.sell(market.id, "alice", Side.YES, yes.tokens_out // 4)
        engine.resolve(market.id, yes_wins=False)

        engine.redeem(market.id, "carol", Side.NO)
        assert market.q_no == 0
        residual = engine.finalize_residual(market.id)

        for provider in ("creator", "bob"):
            engine.claim_lp_fees(market.id, provider)
            engine.claim_lp_residual(market.id, provider)
        assert engine.ledger.collateral_balance("creator") == \
            engine.ledger.collateral_balance("bob") - BALANCE + SEED
        assert 0 <= market.lp_residual_pot <= 2
        assert 0 <= market.lp_fee_pot <= 2
        assert residual > 0
        assert_conserved(engine)

    def test_tiny_vault_is_dust(self):
        engine, market, _, _ = fresh_system()
        engine.resolve(market.id, yes_wins=True)
        market.vault = 1
        with pytest.raises(ResidualNotReady):
            engine.finalize_residual(market.id)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestConfig:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OUTCOME_AMM_TREASURY", "dao")
        monkeypatch.setenv("OUTCOME_AMM_FEE_TREASURY_BPS", "30")
        monkeypatch.setenv("OUTCOME_AMM_SENSITIVITY", str(2 * 10 ** 16))
        monkeypatch.setenv("OUTCOME_AMM_ORACLE_MAX_STALENESS", "120")
        config = EngineConfig.from_env()
        assert config.treasury_account == "dao"
        assert config.fee_treasury_bps == 30
        assert config.fee_vault_bps == 50
        assert config.sensitivity == 2 * 10 ** 16
        assert config.max_staleness == 120

    def test_invalid_config_rejected(self):
        with pytest.raises(InvalidConfig):
            MarketEngine(Ledger(), config=EngineConfig(sensitivity=10 ** 17))
        with pytest.raises(InvalidConfig):
            MarketEngine(Ledger(), config=EngineConfig(fee_lp_bps=20_000))

    def test_set_sensitivity(self):
        engine, market, _, _ = fresh_system()
        wide = engine.max_safe_collateral(market.id, Side.YES)
        engine.set_sensitivity(10 ** 16)
        assert engine.max_safe_collateral(market.id, Side.YES) < wide
        with pytest.raises(InvalidConfig):
            engine.set_sensitivity(10 ** 14)
        assert engine.config.sensitivity == 10 ** 16

    def test_required_collateral(self):
        engine, market, _, _ = fresh_system()
        assert engine.required_collateral(market.id) == 0
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        engine.buy(market.id, "bob", Side.NO, 20 * E6)
        assert engine.required_collateral(market.id) == max(
            market.q_yes, market.q_no) // 10 ** 12


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:

    def test_round_trip(self, tmp_path):
        engine, market, clock, _ = fresh_system()
        engine.add_liquidity(market.id, "bob", 200 * E6)
        engine.buy(market.id, "alice", Side.YES, 300 * E6)
        engine.buy(market.id, "carol", Side.NO, 40 * E6)
        engine.set_sensitivity(3 * 10 ** 16)

        path = str(tmp_path / "state.json")
        save_snapshot(engine, path)
        loaded = load_snapshot(path, clock=clock)

        assert loaded.markets == engine.markets
        assert loaded.ledger.accounts == engine.ledger.accounts
        assert loaded.ledger.supply == engine.ledger.supply
        assert loaded.ledger.entries == engine.ledger.entries
        assert loaded.config.sensitivity == 3 * 10 ** 16
        assert_conserved(loaded)

        loaded.ledger.mint("dave", SEED)
        second = loaded.create_market("dave", "Again?", SEED,
                                      ResolutionConfig(expiry_timestamp=EXPIRY))
        assert second.id == market.id + 1

    def test_loaded_engine_keeps_trading(self, tmp_path):
        engine, market, clock, _ = fresh_system()
        engine.buy(market.id, "alice", Side.YES, 100 * E6)
        path = str(tmp_path / "state.json")
        save_snapshot(engine, path)

        loaded = load_snapshot(path, clock=clock)
        again = loaded.buy(market.id, "alice", Side.YES, 100 * E6)
        expected = engine.buy(market.id, "alice", Side.YES, 100 * E6)
        assert again.tokens_out == expected.tokens_out

    @pytest.mark.parametrize("version, message", [(2, "newer"),
                                                  (0, "no migration")])
    def test_rejects_unknown_version(self, tmp_path, version, message):
        engine, _, clock, _ = fresh_system()
        path = tmp_path / "state.json"
        save_snapshot(engine, str(path))

        state = json.loads(path.read_text())
        assert state["version"] == 1
        state["version"] = version
        path.write_text(json.dumps(state))

        with pytest.raises(ValueError, match=message):
            load_snapshot(str(path), clock=clock)
