"""
Payment Gateway Protocol - Provider-agnostic invoice interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass, field
from typing import Protocol

from wispr.models.domain import Deeplink


@dataclass(frozen=True)
class GatewayInvoiceRequest:
    """
    Provider-agnostic invoice request.

    `sender_invoice_no` is our local invoice id; gateways echo it back in
    callbacks, which is what lets a payment be matched before the gateway's
    own id has been recorded.
    """

    sender_invoice_no: str
    receiver_code: str
    description: str
    amount: int
    callback_url: str

    def __post_init__(self) -> None:
        if not self.sender_invoice_no:
            raise ValueError("sender_invoice_no cannot be empty")
        if self.amount <= 0:
            raise ValueError(f"Invoice amount must be positive: {self.amount}")


@dataclass(frozen=True)
class GatewayInvoice:
    """Invoice as created by the gateway."""

    gateway_invoice_id: str
    qr_text: str
    qr_image: str
    deeplinks: tuple[Deeplink, ...] = field(default_factory=tuple)


class PaymentGateway(Protocol):
    """
    Payment gateway protocol.

    Implementations translate their own failures into:
      - GatewayRejectedError: the gateway answered but said no (non-2xx,
        malformed body, credential exchange refused)
      - TransientError: no answer (timeout, connection failure); the
        invoice may or may not exist on the gateway side
    """

    async def create_invoice(self, request: GatewayInvoiceRequest) -> GatewayInvoice:
        """Create a payable invoice with the gateway."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
