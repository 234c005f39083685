"""
Tests for the Payment Webhook Reconciler.

Covers payload normalization, invoice matching order, exactly-once crediting
and signature verification.
"""

from datetime import UTC, datetime

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from wispr.exceptions import (
    InvoiceNotFoundError,
    MissingIdentifiersError,
    UnauthorizedError,
)
from wispr.models.api import InvoiceStatus
from wispr.models.domain import ReconciliationResult, WebhookPayload
from wispr.services.ledger_store import LedgerTransaction
from wispr.services.webhook_reconciler import (
    WebhookReconciler,
    compute_signature,
    find_pending_invoice,
    id_variants,
    is_success_status,
    normalize_id,
    normalize_payload,
    verify_signature,
)

SECRET = "test-qpay-webhook-secret"


def paid(gateway_id: str | None = None, local_id: str | None = None) -> WebhookPayload:
    return WebhookPayload(gateway_id=gateway_id, local_id=local_id, status_hint="PAID")


# ============================================================================
# Normalization
# ============================================================================


class TestNormalizeId:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("inv-1", "inv-1"),
            ("  inv-1 ", "inv-1"),
            (90001, "90001"),
            (90001.0, "90001"),
            (12.5, "12.5"),
            ("", None),
            ("   ", None),
            (None, None),
            (True, None),
            (float("nan"), None),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_id(raw) == expected

    @given(st.integers(min_value=0, max_value=10**15))
    def test_int_and_float_agree(self, value):
        assert normalize_id(value) == normalize_id(float(value)) == str(value)


class TestNormalizePayload:
    def test_qpay_post_shape(self):
        payload = normalize_payload(
            {"invoice_id": 90001, "sender_invoice_no": "inv-1", "payment_status": "paid", "payment_id": 555}
        )

        assert payload == WebhookPayload(
            gateway_id="90001", local_id="inv-1", status_hint="PAID", payment_ref="555"
        )

    def test_callback_query_shape(self):
        payload = normalize_payload({"qpay_payment_id": "777", "localId": "inv-1"})

        assert payload.gateway_id == "777"
        assert payload.local_id == "inv-1"
        assert payload.payment_ref == "777"

    def test_absent_status_means_paid(self):
        assert normalize_payload({"localId": "inv-1"}).status_hint == "PAID"
        assert normalize_payload({"localId": "inv-1", "payment_status": " "}).status_hint == "PAID"

    def test_primary_alias_wins(self):
        payload = normalize_payload({"invoice_id": "A", "qpay_payment_id": "B"})
        assert payload.gateway_id == "A"

    def test_no_identifiers(self):
        assert normalize_payload({"payment_status": "PAID"}).has_identifiers is False

    @settings(deadline=None)
    @given(
        st.dictionaries(
            st.sampled_from(
                ["invoice_id", "qpay_payment_id", "sender_invoice_no", "localId", "payment_status", "other"]
            ),
            st.one_of(
                st.none(),
                st.text(alphabet=st.characters(codec="ascii"), max_size=20),
                st.integers(),
                st.floats(allow_nan=True, allow_infinity=True),
            ),
        )
    )
    def test_never_raises(self, raw):
        payload = normalize_payload(raw)

        assert payload.status_hint
        assert payload.status_hint == payload.status_hint.strip().upper()
        if payload.gateway_id is not None:
            assert payload.gateway_id == payload.gateway_id.strip() != ""


class TestSuccessStatus:
    @pytest.mark.parametrize("status", ["PAID", "paid", "SUCCESS"])
    def test_success(self, status):
        assert is_success_status(status) is True

    @pytest.mark.parametrize("status", ["FAILED", "PENDING", "CANCELLED", ""])
    def test_not_success(self, status):
        assert is_success_status(status) is False


class TestIdVariants:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("90001", ["90001"]),
            ("0090001", ["0090001", "90001"]),
            ("90001.0", ["90001.0", "90001"]),
            ("inv-0001", ["inv-0001"]),
            ("12.5", ["12.5"]),
        ],
    )
    def test_variants(self, raw, expected):
        assert id_variants(raw) == expected


# ============================================================================
# Signature
# ============================================================================


class TestSignature:
    def test_valid_signature(self):
        body = b'{"invoice_id": "90001"}'
        verify_signature(body, compute_signature(body, SECRET), SECRET)

    def test_uppercase_hex_accepted(self):
        body = b'{"invoice_id": "90001"}'
        verify_signature(body, compute_signature(body, SECRET).upper(), SECRET)

    def test_tampered_body_rejected(self):
        signature = compute_signature(b'{"invoice_id": "90001"}', SECRET)

        with pytest.raises(UnauthorizedError):
            verify_signature(b'{"invoice_id": "90002"}', signature, SECRET)

    def test_missing_signature_rejected(self):
        with pytest.raises(UnauthorizedError):
            verify_signature(b"{}", None, SECRET)

    def test_no_secret_skips_verification(self):
        verify_signature(b"{}", None, "")


# ============================================================================
# Matching
# ============================================================================


class TestFindPendingInvoice:
    async def _find(self, store, payload: WebhookPayload) -> str | None:
        async def _lookup(tx: LedgerTransaction) -> str | None:
            invoice = await find_pending_invoice(tx, payload)
            return invoice.local_invoice_id if invoice else None

        return await store.run(_lookup, operation="lookup")

    async def test_gateway_id_matched_first(self, store, seed):
        await seed.invoice("inv-by-gateway", "acct-1", gateway_invoice_id="90001")
        await seed.invoice("inv-by-local", "acct-1")

        assert await self._find(store, paid("90001", "inv-by-local")) == "inv-by-gateway"

    async def test_local_id_when_gateway_id_unknown(self, store, seed):
        await seed.invoice("inv-1", "acct-1")

        assert await self._find(store, paid("unknown", "inv-1")) == "inv-1"

    async def test_gateway_field_carrying_local_id(self, store, seed):
        await seed.invoice("inv-1", "acct-1")

        assert await self._find(store, paid("inv-1", None)) == "inv-1"

    async def test_numeric_forms_match(self, store, seed):
        await seed.invoice("inv-1", "acct-1", gateway_invoice_id="90001")

        assert await self._find(store, paid("0090001")) == "inv-1"
        assert await self._find(store, paid("90001.0")) == "inv-1"

    async def test_settled_invoices_never_match(self, store, seed):
        await seed.invoice("inv-1", "acct-1", gateway_invoice_id="90001", status=InvoiceStatus.PAID)
        await seed.invoice("inv-2", "acct-1", status=InvoiceStatus.FAILED)

        assert await self._find(store, paid("90001", "inv-2")) is None


# ============================================================================
# Reconciliation
# ============================================================================


class TestReconcile:
    async def test_marks_paid_and_credits_bonus(self, reconciler, store, seed, fixed_datetime):
        await seed.account("acct-1", bonus_hints=2)
        await seed.invoice("inv-1", "acct-1", gateway_invoice_id="90001", num_hints=5)

        result = await reconciler.reconcile(
            WebhookPayload(gateway_id="90001", local_id=None, status_hint="PAID", payment_ref="pay-1")
        )

        assert result == ReconciliationResult(
            local_invoice_id="inv-1",
            account_id="acct-1",
            num_hints=5,
            bonus_hints_after=7,
            paid_at=fixed_datetime,
        )
        invoice = await store.get_invoice("inv-1")
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_at == fixed_datetime
        assert invoice.gateway_payment_ref == "pay-1"
        assert (await store.read_account("acct-1")).bonus_hints == 7

    async def test_credits_account_without_row(self, reconciler, store, seed):
        await seed.invoice("inv-1", "new-acct", num_hints=10)

        await reconciler.reconcile(paid(local_id="inv-1"))

        ledger = await store.read_account("new-acct")
        assert ledger.bonus_hints == 10
        assert ledger.daily_hints_used == 0

    async def test_duplicate_delivery_credits_once(self, reconciler, store, seed):
        await seed.invoice("inv-1", "acct-1", gateway_invoice_id="90001", num_hints=5)

        await reconciler.reconcile(paid("90001"))
        with pytest.raises(InvoiceNotFoundError):
            await reconciler.reconcile(paid("90001", "inv-1"))

        assert (await store.read_account("acct-1")).bonus_hints == 5

    async def test_racing_duplicate_credits_once(self, reconciler, store, seed, monkeypatch):
        await seed.invoice("inv-1", "acct-1", gateway_invoice_id="90001", num_hints=5)
        lookups = 0

        async def _lookup_then_lose_race(tx: LedgerTransaction, payload: WebhookPayload):
            nonlocal lookups
            lookups += 1
            invoice = await find_pending_invoice(tx, payload)
            if lookups == 1:
                # The duplicate delivery commits between our read and our commit
                await reconciler.reconcile(paid(local_id="inv-1"))
            return invoice

        monkeypatch.setattr(
            "wispr.services.webhook_reconciler.find_pending_invoice", _lookup_then_lose_race
        )

        with pytest.raises(InvoiceNotFoundError):
            await reconciler.reconcile(paid("90001"))

        assert (await store.read_account("acct-1")).bonus_hints == 5
        assert (await store.get_invoice("inv-1")).status == InvoiceStatus.PAID

    async def test_non_success_status_is_ignored(self, reconciler, store, seed):
        await seed.invoice("inv-1", "acct-1")

        result = await reconciler.reconcile(
            WebhookPayload(gateway_id=None, local_id="inv-1", status_hint="FAILED")
        )

        assert result is None
        assert (await store.get_invoice("inv-1")).status == InvoiceStatus.PENDING
        assert (await store.read_account("acct-1")).bonus_hints == 0

    async def test_missing_identifiers(self, reconciler):
        with pytest.raises(MissingIdentifiersError):
            await reconciler.reconcile(paid())

    async def test_unknown_invoice(self, reconciler):
        with pytest.raises(InvoiceNotFoundError):
            await reconciler.reconcile(paid("nope", "nope"))


class TestNotifyCredited:
    def _result(self) -> ReconciliationResult:
        return ReconciliationResult(
            local_invoice_id="inv-1",
            account_id="acct-1",
            num_hints=5,
            bonus_hints_after=5,
            paid_at=datetime(2025, 1, 15, 12, 0, tzinfo=UTC),
        )

    async def test_pushes_to_account_owner(self, reconciler, notifier):
        await reconciler.notify_credited(self._result())

        notifier.notify.assert_awaited_once()
        args, kwargs = notifier.notify.call_args
        assert args[0] == "acct-1"
        assert "5" in kwargs["body"]
        assert kwargs["url_path"] == "/profile"

    async def test_notifier_failure_is_swallowed(self, reconciler, notifier):
        notifier.notify.side_effect = RuntimeError("relay down")

        await reconciler.notify_credited(self._result())

    async def test_without_notifier(self, store):
        await WebhookReconciler(store, None).notify_credited(self._result())
