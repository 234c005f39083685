"""
Invoice Issuance Service - create a local PENDING invoice, then a gateway invoice.

The local row is always written before the gateway is called, so a crash
or timeout after the gateway call leaves a reconcilable PENDING invoice
rather than an untracked payment. The callback URL carries the local id,
which is enough for the webhook to match even if the gateway id is never
recorded.
"""

import uuid
from collections.abc import Callable
from datetime import datetime
from urllib.parse import urlencode

from structlog import get_logger

from wispr.db.models import utc_now
from wispr.exceptions import (
    GatewayRejectedError,
    InvoiceNotFoundError,
    TransientError,
    ValidationError,
)
from wispr.models.domain import InvoiceData, IssuedInvoice
from wispr.observability.metrics import metrics
from wispr.observability.tracing import trace_operation
from wispr.services.ledger_store import LedgerStore, LedgerTransaction
from wispr.services.payment_provider import GatewayInvoiceRequest, PaymentGateway

logger = get_logger(__name__)

DEFAULT_CALLBACK_BASE_URL = "http://localhost:9002"
WEBHOOK_PATH = "/api/payments/qpay-webhook"


def build_callback_url(base_url: str, local_invoice_id: str) -> str:
    """Webhook URL the gateway calls back, carrying our local invoice id."""
    if not base_url:
        logger.warning(
            "callback_base_url_missing",
            fallback=DEFAULT_CALLBACK_BASE_URL,
            local_invoice_id=local_invoice_id,
        )
        base_url = DEFAULT_CALLBACK_BASE_URL
    query = urlencode({"localId": local_invoice_id})
    return f"{base_url.rstrip('/')}{WEBHOOK_PATH}?{query}"


def _new_invoice_id() -> str:
    return str(uuid.uuid4())


class InvoiceService:
    """Issues hint-package invoices through a payment gateway."""

    def __init__(
        self,
        store: LedgerStore,
        gateway: PaymentGateway,
        callback_base_url: str = "",
        id_factory: Callable[[], str] = _new_invoice_id,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.callback_base_url = callback_base_url
        self.id_factory = id_factory
        self.clock = clock

    async def create_invoice(
        self, account_id: str, name: str, amount: int, num_hints: int
    ) -> IssuedInvoice:
        """
        Issue an invoice for `num_hints` bonus hints.

        Raises:
            ValidationError: missing account, non-positive amount or hint count
            GatewayRejectedError: the gateway refused; local invoice marked FAILED
            TransientError: the gateway did not answer; local invoice left PENDING
        """
        if not account_id:
            raise ValidationError("account id is required")
        if amount <= 0:
            raise ValidationError(f"amount must be positive, got {amount}")
        if num_hints <= 0:
            raise ValidationError(f"num_hints must be positive, got {num_hints}")

        local_invoice_id = self.id_factory()
        created_at = self.clock()

        async def _insert(tx: LedgerTransaction) -> None:
            tx.insert_invoice(local_invoice_id, account_id, amount, num_hints, created_at)

        with trace_operation(
            "invoice_issuance", account_id=account_id, local_invoice_id=local_invoice_id
        ):
            await self.store.run(_insert, operation="insert_invoice")
            logger.info(
                "invoice_created_pending",
                local_invoice_id=local_invoice_id,
                account_id=account_id,
                amount=amount,
                num_hints=num_hints,
            )

            request = GatewayInvoiceRequest(
                sender_invoice_no=local_invoice_id,
                receiver_code=account_id,
                description=f"{name} ({num_hints} hints)",
                amount=amount,
                callback_url=build_callback_url(self.callback_base_url, local_invoice_id),
            )

            try:
                gateway_invoice = await self.gateway.create_invoice(request)
            except GatewayRejectedError as exc:
                await self._mark_failed(local_invoice_id)
                metrics.record_invoice("rejected")
                logger.error(
                    "invoice_gateway_rejected",
                    local_invoice_id=local_invoice_id,
                    account_id=account_id,
                    status_code=exc.status_code,
                    error=exc.message,
                )
                raise
            except TransientError:
                metrics.record_invoice("orphaned")
                logger.error(
                    "invoice_gateway_outcome_unknown",
                    local_invoice_id=local_invoice_id,
                    account_id=account_id,
                )
                raise

            gateway_invoice_id = gateway_invoice.gateway_invoice_id

            async def _attach(tx: LedgerTransaction) -> bool:
                return await tx.attach_gateway_id(local_invoice_id, gateway_invoice_id)

            try:
                await self.store.run(_attach, operation="attach_gateway_id")
            except TransientError:
                # Payable anyway: the callback URL carries the local id
                logger.error(
                    "invoice_gateway_id_not_recorded",
                    local_invoice_id=local_invoice_id,
                    gateway_invoice_id=gateway_invoice_id,
                )

        metrics.record_invoice("issued")
        logger.info(
            "invoice_issued",
            local_invoice_id=local_invoice_id,
            gateway_invoice_id=gateway_invoice_id,
            account_id=account_id,
        )
        return IssuedInvoice(
            local_invoice_id=local_invoice_id,
            gateway_invoice_id=gateway_invoice_id,
            qr_image=gateway_invoice.qr_image,
            deeplinks=gateway_invoice.deeplinks,
        )

    async def _mark_failed(self, local_invoice_id: str) -> None:
        async def _fail(tx: LedgerTransaction) -> bool:
            return await tx.mark_invoice_failed(local_invoice_id)

        try:
            await self.store.run(_fail, operation="mark_invoice_failed")
        except TransientError:
            logger.error("invoice_mark_failed_unrecorded", local_invoice_id=local_invoice_id)

    async def get_invoice(self, account_id: str, local_invoice_id: str) -> InvoiceData:
        """
        Invoice status for its owner.

        Raises:
            InvoiceNotFoundError: unknown id, or the invoice belongs to someone else
        """
        invoice = await self.store.get_invoice(local_invoice_id)
        if invoice is None or invoice.account_id != account_id:
            raise InvoiceNotFoundError(gateway_id=None, local_id=local_invoice_id)
        return invoice
