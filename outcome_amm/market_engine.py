"""
Market engine. Creates markets and runs every operation against them.

The engine owns the Market aggregates and is the only thing that mutates
them. Value never moves without the ledger: buys debit the trader and mint
shares, sells burn shares and credit collateral, claims and redemptions
credit collateral out of the market.

Each public operation is atomic. Checks that can fail (balances, solver
output, slippage) run before the first mutation, and the whole operation
runs inside _atomic(), which restores the market if anything raises.
The one deliberate exception is a chunked buy: each chunk is its own
atomic operation, and a failing chunk leaves earlier chunks committed
(PartialFill).

Collateral flow of a buy with gross G:
    trader --G--> [net + vault fee -> vault]
                  [lp fee          -> lp_fee_pot, fee accumulator]
                  [treasury fee    -> treasury account]

Sells are fee-free and pay out of the vault.
"""

import copy
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional

from outcome_amm import liquidity, redemption, resolution
from outcome_amm.errors import (
    EngineError, InsufficientBalance, InsufficientOutput, InsufficientSupply,
    InvalidAmount, InvalidConfig, MarketNotActive, MarketNotFound,
    OracleUnavailable, PartialFill, PriceImpactExceeded, ResolutionNotAllowed,
    SlippageExceeded, UpkeepNotNeeded,
)
from outcome_amm.events import (
    Buy, EventSink, InMemoryEventLog, LiquidityAdded, LpFeesClaimed,
    LpResidualClaimed, MarketCreated, MarketResolved, MarketStatusChanged,
    Redeemed, ResidualFinalized, Sell,
)
from outcome_amm.fees import FeeSplit, split_fees, validate_fee_bps
from outcome_amm.ledger import Ledger
from outcome_amm.lmsr import (
    b_for_seed, refund_for_shares, shares_for_collateral, spot_price as lmsr_spot_price,
)
from outcome_amm.models import (
    MIN_COLLATERAL_OUT, SHARES_PER_COLLATERAL, LpPosition, Market,
    MarketStatus, OracleType, Order, ResolutionConfig, Side, Trade,
    collateral_to_shares, next_id, shares_to_collateral,
)
from outcome_amm.oracle import Oracle
from outcome_amm.price_impact import (
    DEFAULT_SENSITIVITY, chunk_size, max_safe_collateral as safe_collateral,
    plan_chunks, validate_sensitivity,
)


logger = logging.getLogger(__name__)


def _unix_now() -> int:
    return int(time.time())


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class EngineConfig:
    treasury_account: str = "treasury"
    fee_treasury_bps: int = 100
    fee_vault_bps: int = 50
    fee_lp_bps: int = 50
    sensitivity: int = DEFAULT_SENSITIVITY
    oracle_timeout: float = resolution.DEFAULT_ORACLE_TIMEOUT
    max_staleness: int = resolution.DEFAULT_MAX_STALENESS

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            treasury_account=os.environ.get("OUTCOME_AMM_TREASURY", "treasury"),
            fee_treasury_bps=int(os.environ.get("OUTCOME_AMM_FEE_TREASURY_BPS", "100")),
            fee_vault_bps=int(os.environ.get("OUTCOME_AMM_FEE_VAULT_BPS", "50")),
            fee_lp_bps=int(os.environ.get("OUTCOME_AMM_FEE_LP_BPS", "50")),
            sensitivity=int(os.environ.get("OUTCOME_AMM_SENSITIVITY",
                                           str(DEFAULT_SENSITIVITY))),
            oracle_timeout=float(os.environ.get("OUTCOME_AMM_ORACLE_TIMEOUT",
                                                str(resolution.DEFAULT_ORACLE_TIMEOUT))),
            max_staleness=int(os.environ.get("OUTCOME_AMM_ORACLE_MAX_STALENESS",
                                             str(resolution.DEFAULT_MAX_STALENESS))),
        )

    def validate(self) -> None:
        validate_fee_bps(self.fee_treasury_bps, self.fee_vault_bps,
                         self.fee_lp_bps)
        validate_sensitivity(self.sensitivity)


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------

@dataclass
class BuyQuote:
    side: Side
    collateral_in: int
    tokens_out: int
    new_spot_price: int
    fees: FeeSplit
    cap: Optional[int]
    chunks: list[int] = field(default_factory=list)


@dataclass
class SellQuote:
    side: Side
    tokens_in: int
    collateral_out: int
    new_spot_price: int


class MarketEngine:

    def __init__(self, ledger: Ledger, oracle: Optional[Oracle] = None,
                 events: Optional[EventSink] = None,
                 config: Optional[EngineConfig] = None,
                 clock: Callable[[], int] = _unix_now):
        self.ledger = ledger
        self.oracle = oracle
        self.events = events if events is not None else InMemoryEventLog()
        self.config = config or EngineConfig()
        self.config.validate()
        self.clock = clock
        self.markets: dict[int, Market] = {}

    # ------------------------------------------------------------------
    # Market lifecycle
    # ------------------------------------------------------------------

    def create_market(self, creator: str, question: str, seed_collateral: int,
                      resolution_config: ResolutionConfig,
                      fee_treasury_bps: Optional[int] = None,
                      fee_vault_bps: Optional[int] = None,
                      fee_lp_bps: Optional[int] = None) -> Market:
        """
        Create a market seeded by `creator`.

        b is chosen so the LMSR worst-case loss b * ln 2 equals the seed.
        The seed goes into the vault and makes the creator the first LP.
        """
        fee_treasury_bps = _default(fee_treasury_bps, self.config.fee_treasury_bps)
        fee_vault_bps = _default(fee_vault_bps, self.config.fee_vault_bps)
        fee_lp_bps = _default(fee_lp_bps, self.config.fee_lp_bps)

        if seed_collateral <= 0:
            raise InvalidAmount(
                f"seed collateral must be positive, got {seed_collateral}")
        validate_fee_bps(fee_treasury_bps, fee_vault_bps, fee_lp_bps)
        if resolution_config.expiry_timestamp <= self.clock():
            raise InvalidConfig("expiry must be in the future",
                                expiry_timestamp=resolution_config.expiry_timestamp)
        if (resolution_config.oracle_type == OracleType.EXTERNAL_FEED
                and not resolution_config.feed_id):
            raise InvalidConfig("external feed markets need a feed_id")
        if resolution_config.tolerance < 0:
            raise InvalidConfig("tolerance must be non-negative")
        if resolution_config.is_resolved:
            raise InvalidConfig("new markets can't start resolved")

        b = b_for_seed(collateral_to_shares(seed_collateral))
        self.ledger.debit(creator, seed_collateral, reason="market_seed")

        market = Market.new(
            question=question,
            creator=creator,
            b=b,
            resolution=resolution_config,
            seed_collateral=seed_collateral,
            fee_treasury_bps=fee_treasury_bps,
            fee_vault_bps=fee_vault_bps,
            fee_lp_bps=fee_lp_bps,
        )
        liquidity.add_liquidity(market, creator, seed_collateral)
        self.markets[market.id] = market

        self.events.emit(MarketCreated(
            id=market.id,
            seed_collateral=seed_collateral,
            expiry_timestamp=resolution_config.expiry_timestamp,
        ))
        logger.info("market %d created by %s: seed=%d b=%d expiry=%d",
                    market.id, creator, seed_collateral, b,
                    resolution_config.expiry_timestamp)
        return market

    def get_market(self, market_id: int) -> Market:
        market = self.markets.get(market_id)
        if market is None:
            raise MarketNotFound(f"market {market_id} not found",
                                 market_id=market_id)
        return market

    def pause(self, market_id: int) -> Market:
        market = self.get_market(market_id)
        if market.status != MarketStatus.ACTIVE:
            raise MarketNotActive(
                f"market {market_id} is {market.status.value}, can't pause",
                market_id=market_id, status=market.status.value)
        return self._set_status(market, MarketStatus.PAUSED)

    def unpause(self, market_id: int) -> Market:
        market = self.get_market(market_id)
        if market.status != MarketStatus.PAUSED:
            raise MarketNotActive(
                f"market {market_id} is {market.status.value}, not paused",
                market_id=market_id, status=market.status.value)
        return self._set_status(market, MarketStatus.ACTIVE)

    def set_sensitivity(self, sensitivity: int) -> None:
        validate_sensitivity(sensitivity)
        logger.info("sensitivity %d -> %d", self.config.sensitivity, sensitivity)
        self.config.sensitivity = sensitivity

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    def buy(self, market_id: int, account: str, side: Side, collateral: int,
            min_tokens_out: int = 0, allow_split: bool = True) -> Order:
        """
        Spend `collateral` (gross, fees included) on shares of `side`.

        Orders above the price-impact cap are split into chunks, each sized
        against the cap recomputed after the previous chunk. With
        allow_split=False such an order raises PriceImpactExceeded instead.

        min_tokens_out applies to single-shot orders only.
        """
        market = self._get_tradeable_market(market_id)
        if collateral <= 0:
            raise InvalidAmount(f"buy amount must be positive, got {collateral}")
        available = self.ledger.collateral_balance(account)
        if available < collateral:
            raise InsufficientBalance(
                f"account {account}: need {collateral}, have {available}",
                required=collateral, available=available)

        order = Order(market_id=market_id, account=account, side=side,
                      requested=collateral)
        cap = self._cap(market, side)
        if cap is None or collateral <= cap:
            order.trades.append(
                self._buy_chunk(market, account, side, collateral,
                                min_tokens_out))
            return order

        if not allow_split:
            raise PriceImpactExceeded(
                f"buy of {collateral} exceeds price-impact cap {cap}",
                cap=cap, requested=collateral,
                chunks=len(plan_chunks(collateral, cap)) if cap else 0)

        remaining = collateral
        while remaining > 0:
            size = chunk_size(remaining, self._cap(market, side))
            try:
                if size <= 0:
                    raise PriceImpactExceeded(
                        "no collateral fits within the price-impact bound",
                        remaining=remaining)
                trade = self._buy_chunk(market, account, side, size, 0)
            except EngineError as e:
                if not order.trades:
                    raise
                logger.warning(
                    "market %d: buy by %s stopped after %d chunks, %d unfilled: %s",
                    market_id, account, order.chunks, remaining, e)
                raise PartialFill(
                    f"order filled {collateral - remaining} of {collateral}: "
                    f"{e}",
                    trades=order.trades, remaining=remaining,
                    cause=getattr(e, "code", "engine_error")) from e
            order.trades.append(trade)
            remaining -= size

        logger.info("market %d: %s bought %s in %d chunks (%d collateral)",
                    market_id, account, side.value, order.chunks, collateral)
        return order

    def sell(self, market_id: int, account: str, side: Side, tokens: int,
             min_collateral_out: int = 0) -> Trade:
        """Sell `tokens` shares of `side` back to the market. No fees."""
        market = self._get_tradeable_market(market_id)
        if tokens <= 0:
            raise InvalidAmount(f"sell amount must be positive, got {tokens}")
        held = self.ledger.share_balance(market_id, side, account)
        if tokens > held:
            raise InsufficientSupply(
                f"account {account} holds {held} {side.value}, can't sell {tokens}",
                held=held, requested=tokens)

        with self._atomic(market):
            q_side, q_other = market.pools(side)
            payout = shares_to_collateral(
                refund_for_shares(tokens, q_side, q_other, market.b))
            if payout < MIN_COLLATERAL_OUT:
                raise InsufficientOutput(
                    f"sell pays {payout}, below minimum {MIN_COLLATERAL_OUT}",
                    collateral_out=payout)
            if payout < min_collateral_out:
                raise SlippageExceeded(
                    f"sell pays {payout}, below requested {min_collateral_out}",
                    collateral_out=payout, min_collateral_out=min_collateral_out)

            self.ledger.burn_shares(market.id, side, account, tokens)
            market.set_q(side, q_side - tokens)
            market.vault -= payout
            self.ledger.credit(account, payout, reason="sell",
                               market_id=market.id)

            trade = self._record_trade(market, account, side, "sell",
                                       payout, tokens)
            self.events.emit(Sell(
                market_id=market.id,
                side=side.value,
                tokens_in=tokens,
                collateral_out=payout,
                new_spot_price=trade.spot_price,
                user=account,
            ))
        logger.debug("market %d: %s sold %d %s for %d",
                     market.id, account, tokens, side.value, payout)
        return trade

    # ------------------------------------------------------------------
    # Liquidity
    # ------------------------------------------------------------------

    def add_liquidity(self, market_id: int, provider: str,
                      amount: int) -> LpPosition:
        market = self._get_tradeable_market(market_id)
        if amount <= 0:
            raise InvalidAmount(f"liquidity amount must be positive, got {amount}")

        with self._atomic(market):
            self.ledger.debit(provider, amount, reason="add_liquidity",
                              market_id=market.id)
            pos = liquidity.add_liquidity(market, provider, amount)
            self.events.emit(LiquidityAdded(
                market_id=market.id, provider=provider, amount=amount))
        logger.info("market %d: %s added %d liquidity", market.id, provider,
                    amount)
        return pos

    def claim_lp_fees(self, market_id: int, provider: str) -> int:
        market = self.get_market(market_id)
        with self._atomic(market):
            amount = liquidity.claim_fees(market, provider)
            self.ledger.credit(provider, amount, reason="lp_fees",
                               market_id=market.id)
            self.events.emit(LpFeesClaimed(
                market_id=market.id, provider=provider, amount=amount))
        logger.info("market %d: %s claimed %d LP fees", market.id, provider,
                    amount)
        return amount

    def claim_lp_residual(self, market_id: int, provider: str) -> int:
        market = self.get_market(market_id)
        with self._atomic(market):
            amount = liquidity.claim_residual(market, provider)
            self.ledger.credit(provider, amount, reason="lp_residual",
                               market_id=market.id)
            self.events.emit(LpResidualClaimed(
                market_id=market.id, provider=provider, amount=amount))
        logger.info("market %d: %s claimed %d residual", market.id, provider,
                    amount)
        return amount

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def check_upkeep(self, market_id: int) -> bool:
        return resolution.check_upkeep(self.get_market(market_id), self.clock())

    def resolve(self, market_id: int, yes_wins: bool) -> Market:
        """Manual resolution. Only for markets without an oracle."""
        market = self.get_market(market_id)
        with self._atomic(market):
            resolution.resolve_manual(market, yes_wins)
            self.events.emit(MarketResolved(market_id=market.id,
                                            yes_wins=yes_wins))
        logger.info("market %d resolved manually: yes_wins=%s", market.id,
                    yes_wins)
        return market

    async def perform_upkeep(self, market_id: int) -> bool:
        """
        Resolve an expired oracle market from its feed. Returns yes_wins.

        The oracle call is the only await. The market is looked up and
        checked again afterwards, since another resolution may have landed
        while the call was in flight.
        """
        market = self.get_market(market_id)
        if not resolution.check_upkeep(market, self.clock()):
            raise UpkeepNotNeeded(
                f"market {market_id} is not due for resolution",
                market_id=market_id, resolved=market.is_resolved)
        if market.resolution.oracle_type != OracleType.EXTERNAL_FEED:
            raise ResolutionNotAllowed(
                f"market {market_id} has no oracle, resolve it manually",
                market_id=market_id)
        if self.oracle is None:
            raise OracleUnavailable("no oracle configured",
                                    market_id=market_id)

        feed_id = market.resolution.feed_id
        reading = await resolution.fetch_reading(
            self.oracle, feed_id, self.config.oracle_timeout)

        market = self.get_market(market_id)
        with self._atomic(market):
            yes_wins = resolution.apply_reading(
                market, reading, self.clock(), self.config.max_staleness)
            self.events.emit(MarketResolved(market_id=market.id,
                                            yes_wins=yes_wins))
        logger.info("market %d resolved by feed %s: value=%d yes_wins=%s",
                    market.id, feed_id, reading.value, yes_wins)
        return yes_wins

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    def redeem(self, market_id: int, account: str, side: Side) -> int:
        """Burn the account's whole balance of winning shares for collateral."""
        market = self.get_market(market_id)
        balance = self.ledger.share_balance(market_id, side, account)
        with self._atomic(market):
            payout = redemption.redeem(market, side, balance)
            self.ledger.burn_shares(market.id, side, account, balance)
            if payout > 0:
                self.ledger.credit(account, payout, reason="redeem",
                                   market_id=market.id)
            self.events.emit(Redeemed(
                market_id=market.id, user=account, side=side.value,
                collateral_out=payout))
        logger.debug("market %d: %s redeemed %d %s for %d", market.id,
                     account, balance, side.value, payout)
        return payout

    def finalize_residual(self, market_id: int) -> int:
        market = self.get_market(market_id)
        with self._atomic(market):
            amount = redemption.finalize_residual(market)
            self.events.emit(ResidualFinalized(market_id=market.id,
                                               amount=amount))
        logger.info("market %d: residual %d finalized to LPs", market.id,
                    amount)
        return amount

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def spot_price(self, market_id: int, side: Side) -> int:
        market = self.get_market(market_id)
        return lmsr_spot_price(market.q_yes, market.q_no, market.b,
                               side.is_yes)

    def spot_price_e6(self, market_id: int, side: Side) -> int:
        """Spot price at collateral precision (500000 is 0.50)."""
        return self.spot_price(market_id, side) // SHARES_PER_COLLATERAL

    def max_safe_collateral(self, market_id: int, side: Side) -> Optional[int]:
        """Price-impact cap for one buy. None means uncapped."""
        return self._cap(self.get_market(market_id), side)

    def required_collateral(self, market_id: int) -> int:
        """
        Collateral the vault must hold to pay every share of the larger pool
        (of the winning pool, once resolved).
        """
        market = self.get_market(market_id)
        if market.is_resolved:
            return shares_to_collateral(market.q(market.winning_side))
        return shares_to_collateral(max(market.q_yes, market.q_no))

    def pending_lp_fees(self, market_id: int, provider: str) -> int:
        return liquidity.pending_fees(self.get_market(market_id), provider)

    def pending_lp_residual(self, market_id: int, provider: str) -> int:
        return liquidity.pending_residual(self.get_market(market_id), provider)

    def quote_buy(self, market_id: int, side: Side,
                  collateral: int) -> BuyQuote:
        """Simulate a buy, chunking included, without committing anything."""
        market = self.get_market(market_id)
        if collateral <= 0:
            raise InvalidAmount(f"buy amount must be positive, got {collateral}")

        sim = copy.deepcopy(market)
        first_cap = self._cap(sim, side)
        chunks = []
        tokens_out = 0
        treasury = vault = lp = 0
        remaining = collateral
        while remaining > 0:
            cap = self._cap(sim, side)
            if not chunks and (cap is None or collateral <= cap):
                size = collateral
            else:
                size = chunk_size(remaining, cap)
            if size <= 0:
                raise PriceImpactExceeded(
                    "no collateral fits within the price-impact bound",
                    remaining=remaining)
            fees = split_fees(size, sim.fee_treasury_bps, sim.fee_vault_bps,
                              sim.fee_lp_bps)
            if fees.net <= 0:
                raise InsufficientOutput(f"nothing left after fees on {size}")
            q_side, q_other = sim.pools(side)
            tokens = shares_for_collateral(collateral_to_shares(fees.net),
                                           q_side, q_other, sim.b)
            sim.set_q(side, q_side + tokens)
            chunks.append(size)
            tokens_out += tokens
            treasury += fees.treasury
            vault += fees.vault
            lp += fees.lp
            remaining -= size

        return BuyQuote(
            side=side,
            collateral_in=collateral,
            tokens_out=tokens_out,
            new_spot_price=lmsr_spot_price(sim.q_yes, sim.q_no, sim.b,
                                           side.is_yes),
            fees=FeeSplit(gross=collateral, treasury=treasury, vault=vault,
                          lp=lp, net=collateral - treasury - vault - lp),
            cap=first_cap,
            chunks=chunks,
        )

    def quote_sell(self, market_id: int, side: Side, tokens: int) -> SellQuote:
        market = self.get_market(market_id)
        q_side, q_other = market.pools(side)
        refund = refund_for_shares(tokens, q_side, q_other, market.b)
        q_after = (q_side - tokens, q_other)
        q_yes, q_no = q_after if side.is_yes else q_after[::-1]
        return SellQuote(
            side=side,
            tokens_in=tokens,
            collateral_out=shares_to_collateral(refund),
            new_spot_price=lmsr_spot_price(q_yes, q_no, market.b, side.is_yes),
        )

    def collateral_held(self) -> int:
        """Collateral held by all markets (vaults plus LP pots)."""
        return sum(m.vault + m.lp_fee_pot + m.lp_residual_pot
                   for m in self.markets.values())

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @contextmanager
    def _atomic(self, market: Market):
        """Restore the market to its pre-operation state if anything raises."""
        snapshot = copy.deepcopy(market)
        try:
            yield
        except Exception:
            vars(market).update(vars(snapshot))
            raise

    def _get_tradeable_market(self, market_id: int) -> Market:
        market = self.get_market(market_id)
        now = self.clock()
        if not market.is_tradeable(now):
            reason = "expired" if market.is_expired(now) else market.status.value
            if market.is_resolved:
                reason = "resolved"
            raise MarketNotActive(f"market {market_id} is {reason}",
                                  market_id=market_id, reason=reason)
        return market

    def _cap(self, market: Market, side: Side) -> Optional[int]:
        return safe_collateral(market.q_yes, market.q_no, market.b, side,
                               self.config.sensitivity, market.fee_treasury_bps,
                               market.fee_vault_bps, market.fee_lp_bps)

    def _buy_chunk(self, market: Market, account: str, side: Side,
                   gross: int, min_tokens_out: int) -> Trade:
        with self._atomic(market):
            fees = split_fees(gross, market.fee_treasury_bps,
                              market.fee_vault_bps, market.fee_lp_bps)
            if fees.net <= 0:
                raise InsufficientOutput(f"nothing left after fees on {gross}")
            q_side, q_other = market.pools(side)
            tokens = shares_for_collateral(collateral_to_shares(fees.net),
                                           q_side, q_other, market.b)
            if tokens < min_tokens_out:
                raise SlippageExceeded(
                    f"buy yields {tokens} shares, below requested {min_tokens_out}",
                    tokens_out=tokens, min_tokens_out=min_tokens_out)

            self.ledger.debit(account, gross, reason="buy", market_id=market.id)
            market.set_q(side, q_side + tokens)
            market.vault += fees.net + fees.vault
            liquidity.accrue_fees(market, fees.lp)
            if fees.treasury > 0:
                self.ledger.credit(self.config.treasury_account, fees.treasury,
                                   reason="fee", market_id=market.id)
            self.ledger.mint_shares(market.id, side, account, tokens)

            trade = self._record_trade(market, account, side, "buy", gross,
                                       tokens, fees)
            self.events.emit(Buy(
                market_id=market.id,
                side=side.value,
                collateral_in=gross,
                tokens_out=tokens,
                new_spot_price=trade.spot_price,
                user=account,
            ))
        logger.debug("market %d: %s bought %d %s for %d (price %d)",
                     market.id, account, tokens, side.value, gross,
                     trade.spot_price)
        return trade

    def _record_trade(self, market: Market, account: str, side: Side,
                      kind: str, collateral: int, tokens: int,
                      fees: Optional[FeeSplit] = None) -> Trade:
        return Trade(
            id=next_id("trade"),
            market_id=market.id,
            account=account,
            side=side,
            kind=kind,
            collateral=collateral,
            tokens=tokens,
            spot_price=lmsr_spot_price(market.q_yes, market.q_no, market.b,
                                       side.is_yes),
            fees=fees,
        )

    def _set_status(self, market: Market, status: MarketStatus) -> Market:
        market.status = status
        self.events.emit(MarketStatusChanged(market_id=market.id,
                                             status=status.value))
        logger.info("market %d status -> %s", market.id, status.value)
        return market


def _default(value: Optional[int], fallback: int) -> int:
    return fallback if value is None else value
