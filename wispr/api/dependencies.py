"""
FastAPI Dependencies - service wiring and bearer authentication.

NO DICTIONARIES - All dependencies return typed objects.
"""

from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from structlog import get_logger

from wispr.config import Settings, settings
from wispr.db.session import create_engine_for_url, create_session_factory
from wispr.observability.tracing import instrument_sqlalchemy
from wispr.services.hint_generator import HintGenerator, OpenAIHintGenerator
from wispr.services.hint_redemption import HintRedemptionService
from wispr.services.invoice_issuance import InvoiceService
from wispr.services.ledger_store import LedgerStore
from wispr.services.notifier import HttpPushNotifier, Notifier
from wispr.services.payment_provider import PaymentGateway
from wispr.services.qpay_provider import QPayProvider
from wispr.services.webhook_reconciler import WebhookReconciler

logger = get_logger(__name__)


# ============================================================================
# Service container
# ============================================================================


@dataclass
class ServiceContainer:
    """Long-lived collaborators for one application instance (held on app.state)."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    store: LedgerStore
    gateway: PaymentGateway
    generator: HintGenerator
    notifier: Notifier | None
    redemption: HintRedemptionService
    invoices: InvoiceService
    reconciler: WebhookReconciler

    async def close(self) -> None:
        """Release network clients and the database engine."""
        await self.gateway.close()
        await self.generator.close()
        if self.notifier is not None:
            await self.notifier.close()
        await self.engine.dispose()


def build_service_container(config: Settings) -> ServiceContainer:
    """Wire every service from configuration."""
    engine = create_engine_for_url(config.database_url)
    instrument_sqlalchemy(engine)
    session_factory = create_session_factory(engine)

    store = LedgerStore(session_factory, max_attempts=config.ledger_max_transaction_attempts)

    gateway = QPayProvider(
        base_url=config.qpay_base_url,
        username=config.qpay_username,
        password=config.qpay_password,
        invoice_code=config.qpay_invoice_code,
        timeout_seconds=config.qpay_timeout_seconds,
        token_refresh_margin_seconds=config.qpay_token_refresh_margin_seconds,
    )
    if not gateway.is_configured:
        logger.warning("qpay_credentials_missing")

    generator = OpenAIHintGenerator(
        api_key=config.openai_api_key,
        model=config.hint_model,
        language=config.hint_language,
        timeout_seconds=config.hint_timeout_seconds,
    )
    if not generator.is_configured:
        logger.warning("openai_api_key_missing")

    notifier: Notifier | None = None
    if config.push_relay_url:
        notifier = HttpPushNotifier(config.push_relay_url, config.push_timeout_seconds)

    return ServiceContainer(
        engine=engine,
        session_factory=session_factory,
        store=store,
        gateway=gateway,
        generator=generator,
        notifier=notifier,
        redemption=HintRedemptionService(
            store, generator, config.daily_hint_quota, tz=config.ledger_tz
        ),
        invoices=InvoiceService(store, gateway, callback_base_url=config.app_base_url),
        reconciler=WebhookReconciler(store, notifier),
    )


def get_container(request: Request) -> ServiceContainer:
    """The container built at startup (overridden in tests)."""
    container: ServiceContainer | None = getattr(request.app.state, "services", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return container


def get_redemption_service(
    container: ServiceContainer = Depends(get_container),
) -> HintRedemptionService:
    return container.redemption


def get_invoice_service(container: ServiceContainer = Depends(get_container)) -> InvoiceService:
    return container.invoices


def get_webhook_reconciler(
    container: ServiceContainer = Depends(get_container),
) -> WebhookReconciler:
    return container.reconciler


# ============================================================================
# Bearer authentication
# ============================================================================

bearer_scheme = HTTPBearer(auto_error=False)


def decode_account_token(token: str, secret: str, audience: str | None = None) -> str:
    """
    Validate an HS256 JWT and return its subject (the account id).

    Raises:
        jwt.InvalidTokenError: bad signature, expired, wrong audience, no subject
    """
    payload = jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        audience=audience,
        options={"require": ["sub"], "verify_aud": audience is not None},
    )
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise jwt.InvalidTokenError("token subject is empty")
    return subject


async def get_current_account_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    FastAPI dependency resolving the caller's account id.

    Accepts: Authorization: Bearer {jwt}

    Usage:
        @router.get("/v1/hints/balance")
        async def balance(account_id: str = Depends(get_current_account_id)):
            ...
    """
    if not settings.auth_jwt_secret:
        logger.error("auth_jwt_secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured",
        )

    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return decode_account_token(
            credentials.credentials, settings.auth_jwt_secret, settings.auth_jwt_audience
        )
    except jwt.InvalidTokenError as exc:
        logger.warning("bearer_token_rejected", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
