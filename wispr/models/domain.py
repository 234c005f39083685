"""
Domain Models - Internal business logic models using dataclasses.

All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime

from wispr.models.api import HintSource, InvoiceStatus


@dataclass(frozen=True)
class HintContext:
    """Sender context used to steer hint generation."""

    frequency: str = ""
    location: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.frequency or self.location)


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable view of an account's hint ledger fields."""

    account_id: str
    daily_hints_used: int = 0
    last_daily_reset_at: datetime | None = None
    bonus_hints: int = 0

    def __post_init__(self) -> None:
        """Validate ledger invariants."""
        if self.daily_hints_used < 0:
            raise ValueError(f"daily_hints_used cannot be negative: {self.daily_hints_used}")
        if self.bonus_hints < 0:
            raise ValueError(f"bonus_hints cannot be negative: {self.bonus_hints}")


@dataclass(frozen=True)
class HintPackage:
    """A purchasable bundle of bonus hints."""

    name: str
    amount: int
    num_hints: int

    def __post_init__(self) -> None:
        """Validate package constraints."""
        if not self.name:
            raise ValueError("Package name cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Package amount must be positive: {self.amount}")
        if self.num_hints <= 0:
            raise ValueError(f"Package num_hints must be positive: {self.num_hints}")


# Catalog offered in the app (amounts in whole MNT)
HINT_PACKAGES: tuple[HintPackage, ...] = (
    HintPackage(name="1 Hint", amount=1900, num_hints=1),
    HintPackage(name="5 Hint", amount=6900, num_hints=5),
    HintPackage(name="10 Hint", amount=11900, num_hints=10),
    HintPackage(name="20 Hint", amount=19900, num_hints=20),
)


@dataclass(frozen=True)
class ComplimentRecord:
    """Read-only view of the compliment a hint is requested for."""

    id: str
    owner_account_id: str
    text: str
    context: HintContext
    hints: tuple[str, ...] = ()


@dataclass(frozen=True)
class NewHint:
    """Result of a successful hint redemption."""

    compliment_id: str
    hint: str
    hints: tuple[str, ...]
    source: HintSource
    daily_hints_available: int
    bonus_hints: int


@dataclass(frozen=True)
class InvoiceData:
    """Immutable invoice data after persistence."""

    local_invoice_id: str
    gateway_invoice_id: str | None
    account_id: str
    amount: int
    num_hints: int
    status: InvoiceStatus
    created_at: datetime
    paid_at: datetime | None = None
    gateway_payment_ref: str | None = None


@dataclass(frozen=True)
class Deeplink:
    """Bank app deep link for paying a gateway invoice."""

    name: str
    link: str
    logo: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class IssuedInvoice:
    """What the caller needs to present a payable invoice."""

    local_invoice_id: str
    gateway_invoice_id: str
    qr_image: str
    deeplinks: tuple[Deeplink, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class WebhookPayload:
    """Normalized payment webhook payload - strict view over the loose inbound shapes."""

    gateway_id: str | None
    local_id: str | None
    status_hint: str
    payment_ref: str | None = None

    @property
    def has_identifiers(self) -> bool:
        return self.gateway_id is not None or self.local_id is not None


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of crediting a PAID invoice."""

    local_invoice_id: str
    account_id: str
    num_hints: int
    bonus_hints_after: int
    paid_at: datetime
