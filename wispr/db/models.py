"""
Database Models - SQLAlchemy ORM models with strict typing.

Every mutable row carries a `version` column used for optimistic concurrency:
an UPDATE whose version no longer matches affects zero rows and is reported
as a conflict at flush time.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from wispr.models.api import InvoiceStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware timestamp; naive values coming back from the driver are UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not allowed")
        # SQLite stores wall-clock text, so everything is written as UTC
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class Account(Base):
    """
    ORM model for accounts table.

    Holds the hint ledger for one end user. Rows are created lazily on the
    first ledger write; the id is owned by the auth provider.
    """

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    # Daily pool
    daily_hints_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_daily_reset_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    # Purchased balance, independent of the daily cycle
    bonus_hints: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("daily_hints_used >= 0", name="ck_daily_hints_used_non_negative"),
        CheckConstraint("bonus_hints >= 0", name="ck_bonus_hints_non_negative"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Account(account_id={self.account_id}, daily_hints_used={self.daily_hints_used}, "
            f"bonus_hints={self.bonus_hints}, version={self.version})>"
        )


class Compliment(Base):
    """
    ORM model for compliments table.

    The anonymous message a recipient spends hints on. `hints` only grows.
    """

    __tablename__ = "compliments"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_account_id: Mapped[str] = mapped_column(String(128), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)

    hint_frequency: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    hint_location: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    hints: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utc_now, onupdate=utc_now
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (Index("idx_compliments_owner", "owner_account_id"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Compliment(id={self.id}, owner_account_id={self.owner_account_id}, "
            f"hints={len(self.hints or [])})>"
        )


class Invoice(Base):
    """
    ORM model for invoices table.

    Keyed by the locally generated id; the gateway id is attached once the
    gateway accepts the invoice. Transitions: PENDING -> PAID | FAILED.
    """

    __tablename__ = "invoices"

    local_invoice_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    gateway_invoice_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    account_id: Mapped[str] = mapped_column(String(128), nullable=False)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    num_hints: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.PENDING.value
    )
    gateway_payment_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_invoice_amount_positive"),
        CheckConstraint("num_hints > 0", name="ck_invoice_num_hints_positive"),
        CheckConstraint(
            "status IN ('PENDING', 'PAID', 'FAILED')", name="ck_invoice_status_valid"
        ),
        Index("idx_invoices_gateway_status", "gateway_invoice_id", "status"),
        Index("idx_invoices_account", "account_id"),
        Index("idx_invoices_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Invoice(local_invoice_id={self.local_invoice_id}, "
            f"gateway_invoice_id={self.gateway_invoice_id}, status={self.status})>"
        )
