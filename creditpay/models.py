"""
Pydantic models for API requests and responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import AliasChoices, BaseModel, Field, PlainSerializer

# Decimal amounts go out as JSON numbers
Amount = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


# ============================================================================
# Health / Pricing
# ============================================================================

class HealthResponse(BaseModel):
    status: str = Field(..., description="ok")
    version: str
    chains: list[str] = Field(default_factory=list, description="Chains accepting payments")


class PricingTier(BaseModel):
    credits: int
    usd: Amount


class ChainPricing(BaseModel):
    chain: str
    token_symbol: str
    required_confirmations: int
    est_confirmation_time: str
    est_fee: str
    contracts: list[str] = Field(default_factory=list)
    tiers: list[PricingTier]


class PricingResponse(BaseModel):
    chains: list[ChainPricing]
    credit_value_usd: Amount = Field(Decimal("0.10"), description="USD value of one credit in escrow")


# ============================================================================
# Payments
# ============================================================================

class CreatePaymentRequest(BaseModel):
    """Request a deposit address for a credit tier."""

    credits: int = Field(..., description="Credit tier: 10, 1000, 10000 or 100000")
    chain: str = Field("bitcoin", description="bitcoin, polygon, ethereum or solana")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "credits": 1000,
                    "chain": "polygon",
                }
            ]
        }
    }


class PaymentAmount(BaseModel):
    credits: int
    usd: Amount
    native: Amount = Field(..., description="Amount in BTC or USDC")
    smallest_unit: int = Field(..., description="Amount in satoshis or 6-decimal token units")
    token_symbol: str
    decimals: int


class CreatePaymentResponse(BaseModel):
    payment_token: str
    chain: str
    deposit_address: str
    amount: PaymentAmount
    required_confirmations: int
    est_confirmation_time: str
    est_fee: str
    explorer_url: str
    contracts: list[str] = Field(default_factory=list)
    instructions: list[str]
    status_url: str
    claim_url: str


class PaymentStatusResponse(BaseModel):
    payment_token: str
    chain: str
    status: str = Field(..., description="awaiting_payment, awaiting_confirmations, confirmed or claimed")
    credits: int
    deposit_address: str
    token_symbol: str
    required_amount: int
    total_received: Optional[int] = None
    confirmed_received: Optional[int] = None
    confirmations: int = 0
    required_confirmations: Optional[int] = None
    percent_paid: Optional[Amount] = None
    verification_unavailable: bool = False
    last_checked_at: Optional[datetime] = None
    message: str = ""


class ClaimRequest(BaseModel):
    label: Optional[str] = Field(
        None,
        description="Label for a newly created account",
        validation_alias=AliasChoices("label", "agent_id"),
    )


class ClaimResponse(BaseModel):
    success: bool
    credits: int
    balance: Amount
    chain: str
    account_id: str
    api_key: Optional[str] = Field(None, description="Only present when a new account was created")
    message: str
    note: Optional[str] = None


# ============================================================================
# Escrow
# ============================================================================

class HoldRequest(BaseModel):
    amount_usd: Decimal = Field(..., description="USD amount to hold; 1 credit = $0.10")
    reference: Optional[str] = Field(None, max_length=255)
    service: Optional[str] = Field(None, max_length=64)


class HoldResponse(BaseModel):
    hold_id: str
    status: str
    amount_usd: Amount
    credits_held: int


class ReleaseRequest(BaseModel):
    hold_id: str


class ReleaseResponse(BaseModel):
    hold_id: str
    status: str
    amount_usd: Amount
    credits_released: int


class VoidRequest(BaseModel):
    hold_id: str
    refund_percent: int = Field(100, description="0-100, percentage of held credits returned")


class VoidResponse(BaseModel):
    hold_id: str
    status: str
    refund_percent: int
    refunded_credits: int
    amount_usd: Amount


# ============================================================================
# Account
# ============================================================================

class BalanceResponse(BaseModel):
    account_id: str
    credits: Amount
    usd_value: Amount
    status: str


class TransactionItem(BaseModel):
    id: int
    transaction_type: str
    amount: Amount
    balance_after: Amount
    description: Optional[str] = None
    related_payment_id: Optional[str] = None
    related_hold_id: Optional[str] = None
    created_at: datetime


class TransactionsResponse(BaseModel):
    account_id: str
    transactions: list[TransactionItem]


# ============================================================================
# Service metering
# ============================================================================

class VerifyRequest(BaseModel):
    token: str = Field(..., description="Account credential presented to the partner service")
    service: str
    operation: Optional[str] = None
    quantity: Decimal = Decimal(1)


class VerifyResponse(BaseModel):
    valid: bool
    agent_id: str
    account_type: str
    balance: Amount
    cost_per_unit: Amount
    total_cost: Amount
    can_afford: bool
    estimated_operations: int


class UsageRecordIn(BaseModel):
    account_id: str = Field(..., validation_alias=AliasChoices("account_id", "agent_id"))
    operation: Optional[str] = None
    quantity: Decimal = Decimal(1)
    timestamp: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class UsageRequest(BaseModel):
    service: str
    region: Optional[str] = None
    records: list[UsageRecordIn]


class UsageResult(BaseModel):
    agent_id: str
    credits_deducted: Amount
    shortfall: Amount = Decimal(0)
    new_balance: Optional[Amount] = None
    operations_count: int = 0
    error: Optional[str] = None


class UsageResponse(BaseModel):
    processed: int
    total_credits_deducted: Amount
    results: list[UsageResult]
