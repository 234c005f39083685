"""
Ledger Store - transactional persistence for hint balances, compliments and invoices.

Every unit of work runs inside a `LedgerTransaction`:

    read ... -> mutate ... -> commit()

Rows carry a version column, so commit() fails with ConcurrencyError when
another writer changed a row this transaction read. `LedgerStore.run()`
re-executes the whole unit of work a bounded number of times on conflict,
re-reading fresh state each attempt. Nothing is ever partially applied: a
unit of work either commits all of its mutations or none of them.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from structlog import get_logger

from wispr.db.models import Account, Compliment, Invoice
from wispr.exceptions import ConcurrencyError, HintLedgerError, TransientError
from wispr.models.api import InvoiceStatus
from wispr.models.domain import ComplimentRecord, HintContext, InvoiceData, LedgerSnapshot
from wispr.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")

AccountMutator = Callable[[LedgerSnapshot], LedgerSnapshot]


def _snapshot(account: Account) -> LedgerSnapshot:
    return LedgerSnapshot(
        account_id=account.account_id,
        daily_hints_used=account.daily_hints_used,
        last_daily_reset_at=account.last_daily_reset_at,
        bonus_hints=account.bonus_hints,
    )


def compliment_to_domain(compliment: Compliment) -> ComplimentRecord:
    return ComplimentRecord(
        id=compliment.id,
        owner_account_id=compliment.owner_account_id,
        text=compliment.text,
        context=HintContext(
            frequency=compliment.hint_frequency or "", location=compliment.hint_location or ""
        ),
        hints=tuple(compliment.hints or ()),
    )


def invoice_to_domain(invoice: Invoice) -> InvoiceData:
    """Convert ORM invoice to domain model."""
    return InvoiceData(
        local_invoice_id=invoice.local_invoice_id,
        gateway_invoice_id=invoice.gateway_invoice_id,
        account_id=invoice.account_id,
        amount=invoice.amount,
        num_hints=invoice.num_hints,
        status=InvoiceStatus(invoice.status),
        created_at=invoice.created_at,
        paid_at=invoice.paid_at,
        gateway_payment_ref=invoice.gateway_payment_ref,
    )


class LedgerTransaction:
    """
    One optimistic-concurrency unit of work over a single session.

    Reads return immutable snapshots (accounts) or session-bound rows
    (compliments, invoices); writes are buffered until commit().

    Every row loaded here stays referenced until the transaction ends. The
    session's identity map only holds rows weakly, and a row that fell out
    of it would be re-read at its newest version, hiding a concurrent write
    from the version check.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        # None records an account read as absent
        self._accounts: dict[str, Account | None] = {}
        self._rows: list[object] = []

    async def _load_account(self, account_id: str) -> Account | None:
        if account_id not in self._accounts:
            self._accounts[account_id] = await self.session.get(Account, account_id)
        return self._accounts[account_id]

    def _hold(self, row: T) -> T:
        if row is not None:
            self._rows.append(row)
        return row

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def read_account(self, account_id: str) -> LedgerSnapshot:
        """Read an account's ledger; an absent row reads as an empty ledger."""
        account = await self._load_account(account_id)
        if account is None:
            return LedgerSnapshot(account_id=account_id)
        return _snapshot(account)

    async def update_account(self, account_id: str, mutator: AccountMutator) -> LedgerSnapshot:
        """
        Apply `mutator` to the account's current ledger and stage the result.

        Merge semantics: only the ledger fields are written, every other
        column keeps its stored value. A missing row is created with zeroed
        defaults before the mutator runs (accounts exist lazily).
        """
        account = await self._load_account(account_id)
        if account is None:
            account = Account(
                account_id=account_id,
                daily_hints_used=0,
                last_daily_reset_at=None,
                bonus_hints=0,
            )
            self.session.add(account)
            self._accounts[account_id] = account

        updated = mutator(_snapshot(account))
        if updated.account_id != account_id:
            raise ValueError("ledger mutator must not change the account id")

        account.daily_hints_used = updated.daily_hints_used
        account.last_daily_reset_at = updated.last_daily_reset_at
        account.bonus_hints = updated.bonus_hints
        return updated

    # ------------------------------------------------------------------
    # Compliments
    # ------------------------------------------------------------------

    async def read_compliment(self, compliment_id: str) -> Compliment | None:
        """Load the compliment a hint is being revealed for."""
        return self._hold(await self.session.get(Compliment, compliment_id))

    async def append_hint(self, compliment_id: str, hint: str) -> tuple[str, ...]:
        """Append one hint to the compliment's history and return the new history."""
        compliment = self._hold(await self.session.get(Compliment, compliment_id))
        if compliment is None:
            raise ValueError(f"Compliment {compliment_id} disappeared inside transaction")
        # Reassign so the JSON column is marked dirty
        compliment.hints = [*(compliment.hints or []), hint]
        return tuple(compliment.hints)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def insert_invoice(
        self,
        local_invoice_id: str,
        account_id: str,
        amount: int,
        num_hints: int,
        created_at: datetime,
    ) -> Invoice:
        """Stage a new PENDING invoice without a gateway id."""
        invoice = Invoice(
            local_invoice_id=local_invoice_id,
            gateway_invoice_id=None,
            account_id=account_id,
            amount=amount,
            num_hints=num_hints,
            status=InvoiceStatus.PENDING.value,
            created_at=created_at,
        )
        self.session.add(invoice)
        return self._hold(invoice)

    async def get_invoice(self, local_invoice_id: str) -> Invoice | None:
        """Load an invoice by its local id, whatever its status."""
        return self._hold(await self.session.get(Invoice, local_invoice_id))

    async def find_pending_by_gateway_id(self, gateway_invoice_id: str) -> Invoice | None:
        """Find a PENDING invoice whose gateway id equals `gateway_invoice_id` exactly."""
        stmt = (
            select(Invoice)
            .where(
                Invoice.gateway_invoice_id == gateway_invoice_id,
                Invoice.status == InvoiceStatus.PENDING.value,
            )
            .order_by(Invoice.created_at)
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return self._hold(result.scalar_one_or_none())

    async def find_pending_by_local_id(self, local_invoice_id: str) -> Invoice | None:
        """Find a PENDING invoice whose local id equals `local_invoice_id` exactly."""
        stmt = select(Invoice).where(
            Invoice.local_invoice_id == local_invoice_id,
            Invoice.status == InvoiceStatus.PENDING.value,
        )
        result = await self.session.execute(stmt)
        return self._hold(result.scalar_one_or_none())

    def mark_invoice_paid(
        self, invoice: Invoice, paid_at: datetime, payment_ref: str | None
    ) -> None:
        """PENDING -> PAID. Callers must have loaded the invoice as PENDING in this transaction."""
        if invoice.status != InvoiceStatus.PENDING.value:
            raise ValueError(f"Invoice {invoice.local_invoice_id} is {invoice.status}, not PENDING")
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = paid_at
        if payment_ref:
            invoice.gateway_payment_ref = payment_ref

    async def attach_gateway_id(self, local_invoice_id: str, gateway_invoice_id: str) -> bool:
        """
        Record the gateway's id on an invoice that does not have one yet.

        Status is left untouched, so an invoice already reconciled by local
        id still gets its gateway id. Returns False if the invoice is gone or
        already carries a different gateway id (which is never overwritten).
        """
        invoice = self._hold(await self.session.get(Invoice, local_invoice_id))
        if invoice is None:
            return False
        if invoice.gateway_invoice_id is None:
            invoice.gateway_invoice_id = gateway_invoice_id
            return True
        if invoice.gateway_invoice_id != gateway_invoice_id:
            logger.warning(
                "gateway_id_mismatch",
                local_invoice_id=local_invoice_id,
                stored_gateway_id=invoice.gateway_invoice_id,
                new_gateway_id=gateway_invoice_id,
            )
            return False
        return True

    async def mark_invoice_failed(self, local_invoice_id: str) -> bool:
        """PENDING -> FAILED. Any other status is left alone."""
        invoice = self._hold(await self.session.get(Invoice, local_invoice_id))
        if invoice is None or invoice.status != InvoiceStatus.PENDING.value:
            return False
        invoice.status = InvoiceStatus.FAILED.value
        return True

    async def commit(self) -> None:
        """
        Flush and commit every staged mutation atomically.

        Raises:
            ConcurrencyError: a row read by this transaction was changed (or
                created) by another writer since it was read
        """
        try:
            await self.session.commit()
        except StaleDataError as exc:
            await self.session.rollback()
            raise ConcurrencyError(str(exc)) from exc
        except IntegrityError as exc:
            # Duplicate primary key: a concurrent writer created the row first
            await self.session.rollback()
            raise ConcurrencyError(str(exc.orig)) from exc


class LedgerStore:
    """
    Entry point for ledger units of work with bounded conflict retry.

    Usage:
        async def _credit(tx: LedgerTransaction) -> LedgerSnapshot:
            return await tx.update_account(account_id, add_bonus(5))

        snapshot = await store.run(_credit, operation="credit")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 4,
        retry_backoff_seconds: float = 0.02,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    async def run(
        self,
        work: Callable[[LedgerTransaction], Awaitable[T]],
        operation: str,
    ) -> T:
        """
        Execute `work` in a fresh transaction and commit it, retrying on conflict.

        Domain errors raised by `work` (HintLedgerError subclasses) roll the
        transaction back and propagate unchanged. Conflicts and store errors
        are retried; once attempts are exhausted TransientError is raised.
        """
        last_error: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                tx = LedgerTransaction(session)
                try:
                    result = await work(tx)
                    await tx.commit()
                    return result
                except ConcurrencyError as exc:
                    last_error = exc
                    metrics.record_ledger_conflict(operation)
                    logger.warning(
                        "ledger_transaction_conflict",
                        operation=operation,
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                    )
                except HintLedgerError:
                    await session.rollback()
                    raise
                except (OperationalError, DBAPIError) as exc:
                    await session.rollback()
                    last_error = exc
                    metrics.record_error(type(exc).__name__, operation)
                    logger.warning(
                        "ledger_store_error",
                        operation=operation,
                        attempt=attempt,
                        error=str(exc),
                    )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.retry_backoff_seconds * attempt)

        logger.error(
            "ledger_transaction_exhausted",
            operation=operation,
            attempts=self.max_attempts,
            error=str(last_error),
        )
        raise TransientError(f"{operation} did not commit after {self.max_attempts} attempts")

    async def read_account(self, account_id: str) -> LedgerSnapshot:
        """Read-only ledger snapshot (no commit, no retry)."""
        async with self.session_factory() as session:
            return await LedgerTransaction(session).read_account(account_id)

    async def read_compliment(self, compliment_id: str) -> ComplimentRecord | None:
        """Read-only compliment lookup."""
        async with self.session_factory() as session:
            compliment = await LedgerTransaction(session).read_compliment(compliment_id)
            return compliment_to_domain(compliment) if compliment else None

    async def get_invoice(self, local_invoice_id: str) -> InvoiceData | None:
        """Read-only invoice lookup by local id."""
        async with self.session_factory() as session:
            invoice = await LedgerTransaction(session).get_invoice(local_invoice_id)
            return invoice_to_domain(invoice) if invoice else None


def add_bonus(amount: int) -> AccountMutator:
    """Mutator crediting `amount` bonus hints."""

    def _mutate(ledger: LedgerSnapshot) -> LedgerSnapshot:
        return replace(ledger, bonus_hints=ledger.bonus_hints + amount)

    return _mutate
