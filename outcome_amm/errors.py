"""
Engine error taxonomy.

Every failure the engine raises is an EngineError with a machine-readable
`code` and optional `details`. All of them are raised before any state is
touched, with one exception: PartialFill, raised by a chunked buy after
some chunks have already been committed.

EngineError subclasses ValueError, so callers that only care about
"bad request vs. bug" can keep catching ValueError.
"""


class EngineError(ValueError):
    code = "engine_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


# --- Input validation ---

class InvalidAmount(EngineError):
    code = "invalid_amount"


class InvalidConfig(EngineError):
    code = "invalid_config"


# --- Trading ---

class InsufficientSupply(EngineError):
    code = "insufficient_supply"


class InsufficientOutput(EngineError):
    code = "insufficient_output"


class InsufficientBalance(EngineError):
    code = "insufficient_balance"


class SlippageExceeded(EngineError):
    code = "slippage_exceeded"


class PriceImpactExceeded(EngineError):
    code = "price_impact_exceeded"


class PartialFill(EngineError):
    """A chunked order stopped midway. `trades` were committed."""
    code = "partial_fill"

    def __init__(self, message: str, trades: list, remaining: int, **details):
        super().__init__(message, remaining=remaining, **details)
        self.trades = trades
        self.remaining = remaining


# --- Market state ---

class MarketNotFound(EngineError):
    code = "market_not_found"


class MarketNotActive(EngineError):
    code = "market_not_active"


class AlreadyResolved(MarketNotActive):
    code = "already_resolved"


# --- Redemption / LP claims ---

class NotResolved(EngineError):
    code = "not_resolved"


class NotWinningSide(EngineError):
    code = "not_winning_side"


class NothingToRedeem(EngineError):
    code = "nothing_to_redeem"


class NothingToClaim(EngineError):
    code = "nothing_to_claim"


class ResidualNotReady(EngineError):
    code = "residual_not_ready"


# --- Resolution ---

class ResolutionNotAllowed(EngineError):
    code = "resolution_not_allowed"


class UpkeepNotNeeded(EngineError):
    code = "upkeep_not_needed"


class OracleUnavailable(EngineError):
    code = "oracle_unavailable"


class OracleStale(OracleUnavailable):
    code = "oracle_stale"


# --- Fixed-point math ---

class DomainError(EngineError):
    code = "domain_error"


class DivisionByZero(EngineError):
    code = "division_by_zero"


class NoLiquidity(EngineError):
    code = "no_liquidity"
