"""
API Models - Pydantic models for request/response validation.

External-facing operations answer with a structured body
(`success`, `message`, payload) rather than raw exceptions.
"""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status. PAID and FAILED are terminal."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class HintSource(str, Enum):
    """Which pool a redeemed hint was paid from."""

    DAILY = "daily"
    BONUS = "bonus"


# ============================================================================
# Hint Models
# ============================================================================


class HintContextModel(BaseModel):
    """What the sender told us about how the recipient knows them."""

    frequency: str = Field("", max_length=100)
    location: str = Field("", max_length=100)


class RedeemHintRequest(BaseModel):
    """POST /v1/hints/redeem request body."""

    compliment_id: str = Field(..., min_length=1, max_length=128)
    text: str = Field(..., max_length=5000, description="The compliment text being hinted about")
    hint_context: HintContextModel | None = None
    previous_hints: list[str] = Field(default_factory=list, max_length=50)

    @field_validator("text")
    @classmethod
    def validate_text(cls, v: str) -> str:
        """Compliment text must not be blank."""
        if not v.strip():
            raise ValueError("text must not be empty")
        return v


class HintRedemptionResponse(BaseModel):
    """POST /v1/hints/redeem response."""

    success: bool
    hint: str | None = None
    message: str
    source: HintSource | None = None
    hints: list[str] = Field(default_factory=list)
    daily_hints_available: int | None = None
    bonus_hints: int | None = None


class HintBalanceResponse(BaseModel):
    """GET /v1/hints/balance response."""

    account_id: str
    daily_hint_quota: int
    daily_hints_available: int
    bonus_hints: int
    total_available: int
    last_daily_reset_at: datetime | None = None


# ============================================================================
# Payment Models
# ============================================================================


class HintPackageResponse(BaseModel):
    """A purchasable bundle of bonus hints."""

    name: str
    amount: int
    num_hints: int


class HintPackageListResponse(BaseModel):
    """GET /v1/payments/packages response."""

    packages: list[HintPackageResponse]


class CreateInvoiceRequest(BaseModel):
    """POST /v1/payments/invoices request body."""

    name: str = Field(..., min_length=1, max_length=100)
    amount: int = Field(..., gt=0, description="Whole currency units")
    num_hints: int = Field(..., gt=0, le=1000)


class DeeplinkResponse(BaseModel):
    """Bank app deep link returned by the gateway."""

    name: str
    link: str
    logo: str | None = None
    description: str | None = None


class CreateInvoiceResponse(BaseModel):
    """POST /v1/payments/invoices response."""

    success: bool
    message: str
    qr_image: str = ""
    deeplinks: list[DeeplinkResponse] = Field(default_factory=list)
    invoice_id: str = ""
    error: str | None = None


class InvoiceStatusResponse(BaseModel):
    """GET /v1/payments/invoices/{invoice_id} response."""

    invoice_id: str
    status: InvoiceStatus
    amount: int
    num_hints: int
    created_at: datetime
    paid_at: datetime | None = None


# ============================================================================
# Webhook Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Payment webhook response body."""

    status: str
    success: bool
    message: str | None = None


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
