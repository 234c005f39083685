"""
Payment Webhook Reconciler - turn a gateway payment callback into a bonus credit, exactly once.

Inbound payloads are loose (two names per id field, ids as strings or
numbers, GET query or POST JSON). They are normalized into a strict
WebhookPayload first; matching only ever sees normalized values.

Idempotency comes from the lookup itself: only PENDING invoices match, and
"mark PAID" + "credit bonus" commit in one transaction. A duplicate
delivery finds nothing PENDING and is answered with InvoiceNotFoundError.
"""

import hashlib
import hmac
import math
import re
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from structlog import get_logger

from wispr.db.models import Invoice, utc_now
from wispr.exceptions import InvoiceNotFoundError, MissingIdentifiersError, UnauthorizedError
from wispr.models.domain import ReconciliationResult, WebhookPayload
from wispr.observability.metrics import metrics
from wispr.observability.tracing import trace_operation
from wispr.services.ledger_store import LedgerStore, LedgerTransaction, add_bonus
from wispr.services.notifier import Notifier

logger = get_logger(__name__)

SIGNATURE_HEADER = "qpay-signature"
DEFAULT_PAYMENT_STATUS = "PAID"
SUCCESS_STATUSES = frozenset({"PAID", "SUCCESS"})

# Digits with an optional all-zero fraction: "00123", "-7", "123.0"
_INTEGRAL_ID = re.compile(r"^[+-]?\d{1,40}(\.0+)?$")


# ============================================================================
# Payload normalization
# ============================================================================


def normalize_id(value: Any) -> str | None:
    """String form of an id that may arrive as str, int or float; blank means absent."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else repr(value)
    text = str(value).strip()
    return text or None


def _first_present(raw: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        normalized = normalize_id(raw.get(key))
        if normalized is not None:
            return normalized
    return None


def normalize_payload(raw: Mapping[str, Any]) -> WebhookPayload:
    """
    Map any accepted inbound shape onto a WebhookPayload.

    Field aliases:
        gateway id  <- invoice_id | qpay_payment_id
        local id    <- sender_invoice_no | localId
        status      <- payment_status (absent/blank means PAID)
        payment ref <- payment_id | qpay_payment_id
    """
    status = raw.get("payment_status")
    status_hint = str(status).strip() if status is not None else ""
    return WebhookPayload(
        gateway_id=_first_present(raw, "invoice_id", "qpay_payment_id"),
        local_id=_first_present(raw, "sender_invoice_no", "localId"),
        status_hint=status_hint.upper() or DEFAULT_PAYMENT_STATUS,
        payment_ref=_first_present(raw, "payment_id", "qpay_payment_id"),
    )


def is_success_status(status_hint: str) -> bool:
    return status_hint.upper() in SUCCESS_STATUSES


def id_variants(value: str) -> list[str]:
    """
    Lookup keys for an id: the exact string, then its canonical integer form.

    "00123" and "123.0" also try "123"; non-numeric ids only match exactly.
    """
    variants = [value]
    if _INTEGRAL_ID.match(value):
        canonical = str(int(value.split(".", 1)[0]))
        if canonical != value:
            variants.append(canonical)
    return variants


# ============================================================================
# Signature verification
# ============================================================================


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature: str | None, secret: str) -> None:
    """
    Authenticate a POST body against the shared webhook secret.

    With no secret configured verification is skipped (testing posture only)
    and a warning is logged for every delivery.

    Raises:
        UnauthorizedError: signature missing or wrong
    """
    if not secret:
        logger.warning(
            "webhook_signature_verification_disabled",
            reason="QPAY_WEBHOOK_SECRET not set; accepting unsigned webhook",
        )
        return

    if not signature:
        raise UnauthorizedError("missing webhook signature")

    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise UnauthorizedError("invalid webhook signature")


# ============================================================================
# Reconciler
# ============================================================================


async def find_pending_invoice(tx: LedgerTransaction, payload: WebhookPayload) -> Invoice | None:
    """
    Locate the PENDING invoice a payload refers to.

    Tried in order: gateway id as gateway id, local id as local id, and
    finally gateway id as local id (the gateway sometimes echoes our
    reference in its own id field). Each step tries every id variant.
    """
    if payload.gateway_id is not None:
        for candidate in id_variants(payload.gateway_id):
            invoice = await tx.find_pending_by_gateway_id(candidate)
            if invoice is not None:
                return invoice

    if payload.local_id is not None:
        for candidate in id_variants(payload.local_id):
            invoice = await tx.find_pending_by_local_id(candidate)
            if invoice is not None:
                return invoice

    if payload.gateway_id is not None:
        for candidate in id_variants(payload.gateway_id):
            invoice = await tx.find_pending_by_local_id(candidate)
            if invoice is not None:
                return invoice

    return None


class WebhookReconciler:
    """Applies gateway payment confirmations to invoices and balances."""

    def __init__(
        self,
        store: LedgerStore,
        notifier: Notifier | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.clock = clock

    async def reconcile(self, payload: WebhookPayload) -> ReconciliationResult | None:
        """
        Mark the matching invoice PAID and credit its hints.

        Returns None (no mutation) when the payload reports a non-success
        payment status.

        Raises:
            MissingIdentifiersError: neither a gateway nor a local id
            InvoiceNotFoundError: no PENDING invoice matches (includes duplicates)
            TransientError: the transaction kept conflicting
        """
        if not payload.has_identifiers:
            raise MissingIdentifiersError()

        if not is_success_status(payload.status_hint):
            logger.info(
                "webhook_status_ignored",
                gateway_id=payload.gateway_id,
                local_id=payload.local_id,
                status=payload.status_hint,
            )
            return None

        paid_at = self.clock()

        async def _apply(tx: LedgerTransaction) -> ReconciliationResult:
            invoice = await find_pending_invoice(tx, payload)
            if invoice is None:
                raise InvoiceNotFoundError(payload.gateway_id, payload.local_id)

            tx.mark_invoice_paid(invoice, paid_at, payload.payment_ref)
            ledger = await tx.update_account(invoice.account_id, add_bonus(invoice.num_hints))
            return ReconciliationResult(
                local_invoice_id=invoice.local_invoice_id,
                account_id=invoice.account_id,
                num_hints=invoice.num_hints,
                bonus_hints_after=ledger.bonus_hints,
                paid_at=paid_at,
            )

        with trace_operation(
            "webhook_reconciliation", gateway_id=payload.gateway_id, local_id=payload.local_id
        ):
            try:
                result = await self.store.run(_apply, operation="reconcile_payment")
            except InvoiceNotFoundError:
                logger.info(
                    "webhook_invoice_not_found",
                    gateway_id=payload.gateway_id,
                    local_id=payload.local_id,
                )
                raise

        metrics.record_bonus_credit(result.num_hints)
        logger.info(
            "invoice_paid_and_credited",
            local_invoice_id=result.local_invoice_id,
            account_id=result.account_id,
            num_hints=result.num_hints,
            bonus_hints_after=result.bonus_hints_after,
        )
        return result

    async def notify_credited(self, result: ReconciliationResult) -> None:
        """Best-effort push to the account owner; never raises."""
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(
                result.account_id,
                title="Төлбөр амжилттай",
                body=f"{result.num_hints} нэмэлт hint таны дансанд орлоо.",
                url_path="/profile",
            )
        except Exception as exc:
            logger.warning(
                "payment_notification_failed",
                account_id=result.account_id,
                local_invoice_id=result.local_invoice_id,
                error=str(exc),
            )
