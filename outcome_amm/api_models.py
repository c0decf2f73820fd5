"""
Pydantic request/response models for the API.
All amounts are decimal strings: collateral with 6 places, shares and
prices with 18. Nothing goes through a float.
"""

from pydantic import BaseModel


# --- Accounts ---

class AccountResponse(BaseModel):
    account: str
    collateral: str
    shares: dict[str, str]


# --- Markets ---

class MarketSummary(BaseModel):
    market_id: int
    question: str
    status: str
    expiry_timestamp: int
    price_yes: str
    price_no: str
    price_yes_e6: int
    vault: str
    yes_wins: bool | None
    created_at: str

class MarketDetail(MarketSummary):
    creator: str
    b: str
    q_yes: str
    q_no: str
    oracle_type: str
    feed_id: str
    target_value: int
    comparison: str
    fee_treasury_bps: int
    fee_vault_bps: int
    fee_lp_bps: int
    total_lp: str
    lp_fee_pot: str
    lp_residual_pot: str
    residual_finalized: bool
    required_collateral: str
    max_safe_yes: str | None
    max_safe_no: str | None
    resolved_at: str | None

class LpResponse(BaseModel):
    market_id: int
    provider: str
    shares: str
    pending_fees: str
    pending_residual: str


# --- Trading ---

class BuyRequest(BaseModel):
    side: str
    amount: str
    min_tokens_out: str = "0"
    allow_split: bool = True

class SellRequest(BaseModel):
    side: str
    shares: str
    min_collateral_out: str = "0"

class TradeResult(BaseModel):
    trade_id: int
    side: str
    kind: str
    collateral: str
    tokens: str
    price: str

class OrderResult(BaseModel):
    market_id: int
    side: str
    collateral_in: str
    tokens_out: str
    chunks: int
    price: str
    trades: list[TradeResult]

class QuoteResponse(BaseModel):
    side: str
    collateral_in: str
    tokens_out: str
    new_price: str
    fees: str
    net: str
    cap: str | None
    chunks: list[str]

class AmountResponse(BaseModel):
    market_id: int
    amount: str


# --- Liquidity ---

class AddLiquidityRequest(BaseModel):
    amount: str


# --- Admin ---

class MintRequest(BaseModel):
    account: str
    amount: str

class CreateMarketRequest(BaseModel):
    creator: str
    question: str
    seed_collateral: str
    expiry_timestamp: int
    oracle_type: str = "none"
    oracle_address: str = ""
    feed_id: str = ""
    target_value: int = 0
    comparison: str = "above"
    tolerance: int = 0
    fee_treasury_bps: int | None = None
    fee_vault_bps: int | None = None
    fee_lp_bps: int | None = None

class ResolveRequest(BaseModel):
    side: str

class ResolveResponse(BaseModel):
    market_id: int
    yes_wins: bool

class SensitivityRequest(BaseModel):
    sensitivity: str

class HealthResponse(BaseModel):
    status: str
    markets: int
    accounts: int
    sensitivity: str
