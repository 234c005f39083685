"""
QPay Payment Gateway Implementation.

Talks to the QPay merchant API v2:
    POST /v2/auth/token   (HTTP Basic)  -> access token
    POST /v2/invoice      (Bearer)      -> invoice id, QR, bank deep links

NO DICTIONARIES leave this module - responses become typed dataclasses.
"""

import time
from collections.abc import Callable
from typing import Any

import httpx
from structlog import get_logger

from wispr.exceptions import GatewayRejectedError, TransientError
from wispr.models.domain import Deeplink
from wispr.observability.metrics import metrics
from wispr.services.payment_provider import GatewayInvoice, GatewayInvoiceRequest
from wispr.services.token_cache import BearerTokenCache, TokenGrant

logger = get_logger(__name__)


def _parse_deeplinks(raw: Any) -> tuple[Deeplink, ...]:
    if not isinstance(raw, list):
        return ()
    links: list[Deeplink] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("link"):
            continue
        links.append(
            Deeplink(
                name=str(item.get("name") or ""),
                link=str(item["link"]),
                logo=item.get("logo"),
                description=item.get("description"),
            )
        )
    return tuple(links)


class QPayProvider:
    """
    QPay gateway client.

    Implements the PaymentGateway protocol. Owns its token cache and (unless
    one is injected) its httpx client; call close() on shutdown.
    """

    TOKEN_PATH = "/v2/auth/token"
    INVOICE_PATH = "/v2/invoice"

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        invoice_code: str,
        timeout_seconds: float = 15.0,
        token_refresh_margin_seconds: float = 60,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.invoice_code = invoice_code
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client
        self.token_cache = BearerTokenCache(
            self._fetch_token,
            refresh_margin_seconds=token_refresh_margin_seconds,
            clock=clock,
        )

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Lazy-initialized HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password and self.invoice_code)

    async def _post(self, operation: str, path: str, **kwargs: Any) -> httpx.Response:
        started = time.perf_counter()
        try:
            return await self.http_client.post(f"{self.base_url}{path}", **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("qpay_request_timeout", operation=operation, error=str(exc))
            raise TransientError(f"QPay {operation} timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("qpay_request_transport_error", operation=operation, error=str(exc))
            raise TransientError(f"QPay {operation} unreachable: {exc}") from exc
        finally:
            metrics.record_gateway_request(operation, time.perf_counter() - started)

    async def _fetch_token(self) -> TokenGrant:
        """Exchange merchant credentials for an access token."""
        response = await self._post(
            "auth_token",
            self.TOKEN_PATH,
            auth=(self.username, self.password),
            data={},
        )
        if response.status_code >= 400:
            logger.error(
                "qpay_token_exchange_failed",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayRejectedError(
                "token exchange refused", status_code=response.status_code
            )

        try:
            body = response.json()
            access_token = body["access_token"]
        except (ValueError, KeyError, TypeError) as exc:
            raise GatewayRejectedError("token response malformed") from exc
        if not isinstance(access_token, str) or not access_token:
            raise GatewayRejectedError("token response malformed")

        expires_in = body.get("expires_in")
        return TokenGrant(
            access_token=access_token,
            expires_in=float(expires_in) if isinstance(expires_in, (int, float)) else None,
        )

    async def create_invoice(self, request: GatewayInvoiceRequest) -> GatewayInvoice:
        """
        Create a QPay invoice.

        Raises:
            GatewayRejectedError: non-2xx answer, 401, unusable body, or no access token
            TransientError: timeout or connection failure
        """
        try:
            token = await self.token_cache.get_or_refresh()
        except TransientError as exc:
            # No invoice request was sent, so nothing exists on the gateway side
            raise GatewayRejectedError(f"token exchange failed: {exc.message}") from exc

        payload = {
            "invoice_code": self.invoice_code,
            "sender_invoice_no": request.sender_invoice_no,
            "invoice_receiver_code": request.receiver_code,
            "invoice_description": request.description,
            "amount": request.amount,
            "callback_url": request.callback_url,
        }

        logger.info(
            "creating_qpay_invoice",
            sender_invoice_no=request.sender_invoice_no,
            amount=request.amount,
        )

        response = await self._post(
            "create_invoice",
            self.INVOICE_PATH,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )

        if response.status_code == 401:
            # Token revoked or expired early; next call exchanges credentials again
            self.token_cache.invalidate()
            logger.warning("qpay_token_rejected", sender_invoice_no=request.sender_invoice_no)
            raise GatewayRejectedError("access token rejected", status_code=401)

        if response.status_code >= 400:
            logger.error(
                "qpay_invoice_rejected",
                sender_invoice_no=request.sender_invoice_no,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayRejectedError(
                f"invoice creation failed ({response.status_code})",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayRejectedError("invoice response is not JSON") from exc

        invoice_id = body.get("invoice_id") if isinstance(body, dict) else None
        if invoice_id is None or str(invoice_id).strip() == "":
            raise GatewayRejectedError("invoice response has no invoice_id")

        invoice = GatewayInvoice(
            gateway_invoice_id=str(invoice_id).strip(),
            qr_text=str(body.get("qr_text") or ""),
            qr_image=str(body.get("qr_image") or ""),
            deeplinks=_parse_deeplinks(body.get("urls")),
        )

        logger.info(
            "qpay_invoice_created",
            sender_invoice_no=request.sender_invoice_no,
            gateway_invoice_id=invoice.gateway_invoice_id,
            deeplinks=len(invoice.deeplinks),
        )
        return invoice

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
