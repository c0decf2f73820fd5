"""
Market resolution state machine.

    active | paused  ->  resolved      (terminal, never reverts)

Two paths in:
  - manual: an admin supplies yes_wins. Only for markets with no oracle.
  - oracle: once the market has expired, read the feed and compare it
    against the target. Fails closed: a missing, failed or stale reading
    raises and leaves the market unresolved. It never guesses.
"""

import asyncio
import logging

from outcome_amm.errors import (
    AlreadyResolved, OracleStale, OracleUnavailable, ResolutionNotAllowed,
)
from outcome_amm.models import (
    Comparison, Market, MarketStatus, OracleType, ResolutionConfig, _now,
)
from outcome_amm.oracle import Oracle, OracleReading


logger = logging.getLogger(__name__)

DEFAULT_MAX_STALENESS = 3600     # seconds
DEFAULT_ORACLE_TIMEOUT = 10.0    # seconds


def check_upkeep(market: Market, now: int) -> bool:
    """True when the market has expired and still needs resolving."""
    return market.is_expired(now) and not market.is_resolved


def evaluate(config: ResolutionConfig, value: int) -> bool:
    """Does `value` make Yes the winner?"""
    if config.comparison == Comparison.ABOVE:
        return value > config.target_value
    if config.comparison == Comparison.BELOW:
        return value < config.target_value
    return abs(value - config.target_value) <= config.tolerance


def _mark_resolved(market: Market, yes_wins: bool) -> None:
    market.resolution.yes_wins = yes_wins
    market.resolution.is_resolved = True
    market.status = MarketStatus.RESOLVED
    market.resolved_at = _now()


def _require_unresolved(market: Market) -> None:
    if market.is_resolved:
        raise AlreadyResolved(f"market {market.id} is already resolved",
                              market_id=market.id)


def resolve_manual(market: Market, yes_wins: bool) -> None:
    _require_unresolved(market)
    if market.resolution.oracle_type != OracleType.NONE:
        raise ResolutionNotAllowed(
            f"market {market.id} resolves by oracle "
            f"({market.resolution.oracle_type.value})",
            market_id=market.id)
    _mark_resolved(market, yes_wins)


async def fetch_reading(oracle: Oracle, feed_id: str,
                        timeout: float = DEFAULT_ORACLE_TIMEOUT) -> OracleReading:
    """
    Ask the oracle for its latest reading, bounded by `timeout`.

    Anything that goes wrong (timeout, transport error, bad payload) comes
    back as OracleUnavailable.
    """
    try:
        return await asyncio.wait_for(oracle.get_latest(feed_id), timeout)
    except asyncio.TimeoutError:
        logger.warning("oracle feed %s timed out after %.1fs", feed_id, timeout)
        raise OracleUnavailable(f"oracle feed {feed_id} timed out",
                                feed_id=feed_id)
    except Exception as e:
        logger.warning("oracle feed %s failed: %s", feed_id, e)
        raise OracleUnavailable(f"oracle feed {feed_id} failed: {e}",
                                feed_id=feed_id) from e


def apply_reading(market: Market, reading: OracleReading, now: int,
                  max_staleness: int = DEFAULT_MAX_STALENESS) -> bool:
    """Validate a reading and resolve the market from it. Returns yes_wins."""
    _require_unresolved(market)
    feed_id = market.resolution.feed_id

    if not reading.ok:
        raise OracleUnavailable(f"oracle feed {feed_id} reported failure",
                                feed_id=feed_id)
    age = now - reading.updated_at
    if age > max_staleness or age < 0:
        raise OracleStale(
            f"oracle feed {feed_id} reading is {age}s old "
            f"(max {max_staleness}s)",
            feed_id=feed_id, updated_at=reading.updated_at, now=now)

    yes_wins = evaluate(market.resolution, reading.value)
    _mark_resolved(market, yes_wins)
    return yes_wins
