"""
API Routes - FastAPI endpoints for hints, payments and the gateway webhook.

Services raise typed exceptions; the handlers here translate them into
structured bodies (`success`, `message`, ...) with matching status codes.
"""

import json
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from structlog import get_logger

from wispr.api.dependencies import (
    ServiceContainer,
    get_container,
    get_current_account_id,
    get_invoice_service,
    get_redemption_service,
    get_webhook_reconciler,
)
from wispr.config import settings
from wispr.exceptions import (
    GatewayRejectedError,
    HintGenerationFailedError,
    InsufficientBalanceError,
    InvoiceNotFoundError,
    MissingIdentifiersError,
    TransientError,
    UnauthorizedError,
    ValidationError,
)
from wispr.models.api import (
    CreateInvoiceRequest,
    CreateInvoiceResponse,
    DeeplinkResponse,
    HealthResponse,
    HintBalanceResponse,
    HintPackageListResponse,
    HintPackageResponse,
    HintRedemptionResponse,
    InvoiceStatusResponse,
    RedeemHintRequest,
    WebhookResponse,
)
from wispr.models.domain import HINT_PACKAGES, HintContext
from wispr.observability.metrics import metrics
from wispr.services.hint_redemption import HintRedemptionService
from wispr.services.invoice_issuance import InvoiceService
from wispr.services.webhook_reconciler import (
    SIGNATURE_HEADER,
    WebhookReconciler,
    normalize_payload,
    verify_signature,
)

logger = get_logger(__name__)

router = APIRouter()


def _structured(status_code: int, body: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# ============================================================================
# Hint Endpoints
# ============================================================================


@router.get("/v1/hints/balance", response_model=HintBalanceResponse)
async def get_hint_balance(
    account_id: str = Depends(get_current_account_id),
    service: HintRedemptionService = Depends(get_redemption_service),
) -> HintBalanceResponse:
    """Daily and bonus hints available to the caller right now."""
    try:
        ledger, daily_available, total = await service.get_balance(account_id)
    except TransientError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.message
        ) from exc

    return HintBalanceResponse(
        account_id=account_id,
        daily_hint_quota=service.daily_quota,
        daily_hints_available=daily_available,
        bonus_hints=ledger.bonus_hints,
        total_available=total,
        last_daily_reset_at=ledger.last_daily_reset_at,
    )


@router.post("/v1/hints/redeem", response_model=HintRedemptionResponse)
async def redeem_hint(
    request: RedeemHintRequest,
    account_id: str = Depends(get_current_account_id),
    service: HintRedemptionService = Depends(get_redemption_service),
) -> HintRedemptionResponse | JSONResponse:
    """
    Spend one hint (daily pool first, then bonus) on a new clue about a compliment's sender.

    Nothing is charged unless a hint was generated.
    """
    context = None
    if request.hint_context is not None:
        context = HintContext(
            frequency=request.hint_context.frequency, location=request.hint_context.location
        )

    try:
        result = await service.redeem(
            account_id,
            request.compliment_id,
            request.text,
            context,
            request.previous_hints,
        )
    except ValidationError as exc:
        return _structured(
            status.HTTP_422_UNPROCESSABLE_CONTENT,
            HintRedemptionResponse(success=False, message=exc.message),
        )
    except InsufficientBalanceError as exc:
        return _structured(
            status.HTTP_402_PAYMENT_REQUIRED,
            HintRedemptionResponse(
                success=False,
                message="No hints left today. Buy more hints to keep guessing.",
                daily_hints_available=exc.daily_available,
                bonus_hints=exc.bonus_hints,
            ),
        )
    except HintGenerationFailedError:
        return _structured(
            status.HTTP_502_BAD_GATEWAY,
            HintRedemptionResponse(
                success=False, message="AI generation failed. Please try again later."
            ),
        )
    except TransientError:
        return _structured(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            HintRedemptionResponse(success=False, message="Please try again in a moment."),
        )

    return HintRedemptionResponse(
        success=True,
        hint=result.hint,
        message="Hint revealed",
        source=result.source,
        hints=list(result.hints),
        daily_hints_available=result.daily_hints_available,
        bonus_hints=result.bonus_hints,
    )


# ============================================================================
# Payment Endpoints
# ============================================================================


@router.get("/v1/payments/packages", response_model=HintPackageListResponse)
async def list_hint_packages() -> HintPackageListResponse:
    """Purchasable hint packages."""
    return HintPackageListResponse(
        packages=[
            HintPackageResponse(name=p.name, amount=p.amount, num_hints=p.num_hints)
            for p in HINT_PACKAGES
        ]
    )


@router.post("/v1/payments/invoices", response_model=CreateInvoiceResponse)
async def create_invoice(
    request: CreateInvoiceRequest,
    account_id: str = Depends(get_current_account_id),
    service: InvoiceService = Depends(get_invoice_service),
) -> CreateInvoiceResponse | JSONResponse:
    """Issue a QPay invoice for a hint package and return its QR code and bank deep links."""
    try:
        issued = await service.create_invoice(
            account_id, request.name, request.amount, request.num_hints
        )
    except ValidationError as exc:
        return _structured(
            status.HTTP_422_UNPROCESSABLE_CONTENT,
            CreateInvoiceResponse(success=False, message=exc.message, error=exc.message),
        )
    except GatewayRejectedError as exc:
        return _structured(
            status.HTTP_502_BAD_GATEWAY,
            CreateInvoiceResponse(
                success=False,
                message="Payment gateway rejected the invoice",
                error=exc.message,
            ),
        )
    except TransientError:
        return _structured(
            status.HTTP_503_SERVICE_UNAVAILABLE,
            CreateInvoiceResponse(
                success=False,
                message="Could not reach the payment gateway",
                error="gateway_unavailable",
            ),
        )

    return CreateInvoiceResponse(
        success=True,
        message="Invoice created",
        qr_image=issued.qr_image,
        deeplinks=[
            DeeplinkResponse(
                name=link.name, link=link.link, logo=link.logo, description=link.description
            )
            for link in issued.deeplinks
        ],
        invoice_id=issued.local_invoice_id,
    )


@router.get("/v1/payments/invoices/{invoice_id}", response_model=InvoiceStatusResponse)
async def get_invoice_status(
    invoice_id: str,
    account_id: str = Depends(get_current_account_id),
    service: InvoiceService = Depends(get_invoice_service),
) -> InvoiceStatusResponse:
    """Invoice status for polling until PAID."""
    try:
        invoice = await service.get_invoice(account_id, invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found"
        ) from exc

    return InvoiceStatusResponse(
        invoice_id=invoice.local_invoice_id,
        status=invoice.status,
        amount=invoice.amount,
        num_hints=invoice.num_hints,
        created_at=invoice.created_at,
        paid_at=invoice.paid_at,
    )


# ============================================================================
# QPay Webhook
# ============================================================================


async def _process_webhook(
    raw: dict[str, Any],
    method: str,
    reconciler: WebhookReconciler,
    background_tasks: BackgroundTasks,
) -> JSONResponse:
    payload = normalize_payload(raw)

    logger.info(
        "qpay_webhook_received",
        method=method,
        gateway_id=payload.gateway_id,
        local_id=payload.local_id,
        status=payload.status_hint,
    )

    try:
        result = await reconciler.reconcile(payload)
    except MissingIdentifiersError:
        metrics.record_webhook(method, "missing_identifiers")
        return _structured(
            status.HTTP_400_BAD_REQUEST,
            WebhookResponse(status="error", success=False, message="Missing invoice identifiers"),
        )
    except InvoiceNotFoundError:
        metrics.record_webhook(method, "not_found")
        return _structured(
            status.HTTP_404_NOT_FOUND,
            WebhookResponse(status="not_found", success=False, message="Invoice not found"),
        )
    except Exception as exc:
        metrics.record_webhook(method, "error")
        metrics.record_error(type(exc).__name__, "qpay_webhook")
        logger.error(
            "qpay_webhook_failed",
            gateway_id=payload.gateway_id,
            local_id=payload.local_id,
            error=str(exc),
            exc_info=True,
        )
        return _structured(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            WebhookResponse(status="error", success=False, message="Internal error"),
        )

    if result is None:
        metrics.record_webhook(method, "ignored")
        return _structured(
            status.HTTP_200_OK,
            WebhookResponse(
                status="ignored", success=False, message="Awaiting payment confirmation"
            ),
        )

    metrics.record_webhook(method, "paid")
    background_tasks.add_task(reconciler.notify_credited, result)
    return _structured(status.HTTP_200_OK, WebhookResponse(status="PAID", success=True))


@router.get("/api/payments/qpay-webhook", response_model=WebhookResponse)
async def qpay_webhook_get(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> JSONResponse:
    """
    QPay callback via query string (the callback URL we registered carries `localId`).

    Not signature-checked: there is no body to sign.
    """
    raw = dict(request.query_params)
    return await _process_webhook(raw, "GET", reconciler, background_tasks)


@router.post("/api/payments/qpay-webhook", response_model=WebhookResponse)
async def qpay_webhook_post(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: WebhookReconciler = Depends(get_webhook_reconciler),
) -> JSONResponse:
    """
    QPay callback with a JSON body, authenticated by `qpay-signature`
    (hex HMAC-SHA256 of the raw body) when QPAY_WEBHOOK_SECRET is set.
    """
    raw_body = await request.body()

    try:
        verify_signature(
            raw_body, request.headers.get(SIGNATURE_HEADER), settings.qpay_webhook_secret
        )
    except UnauthorizedError as exc:
        metrics.record_webhook("POST", "bad_signature")
        logger.warning("qpay_webhook_signature_rejected", reason=exc.message)
        return _structured(
            status.HTTP_403_FORBIDDEN,
            WebhookResponse(status="error", success=False, message="Invalid signature"),
        )

    try:
        raw = json.loads(raw_body) if raw_body else {}
    except (json.JSONDecodeError, UnicodeDecodeError):
        metrics.record_webhook("POST", "malformed")
        return _structured(
            status.HTTP_400_BAD_REQUEST,
            WebhookResponse(status="error", success=False, message="Body is not valid JSON"),
        )
    if not isinstance(raw, dict):
        metrics.record_webhook("POST", "malformed")
        return _structured(
            status.HTTP_400_BAD_REQUEST,
            WebhookResponse(status="error", success=False, message="Body must be a JSON object"),
        )

    # Query string ids (our callback URL's localId) complement the body
    merged = {**dict(request.query_params), **raw}
    return await _process_webhook(merged, "POST", reconciler, background_tasks)


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(container: ServiceContainer = Depends(get_container)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        async with container.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )
