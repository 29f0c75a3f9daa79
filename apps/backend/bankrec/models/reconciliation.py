"""Reconciliation batch, line and record models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bankrec.database import Base
from bankrec.models.base import Money, TimestampMixin, UUIDMixin
from bankrec.models.partner import PartnerCategory


class BatchStatus(str, Enum):
    """Reconciliation batch lifecycle."""

    IN_PROGRESS = "in_progress"
    VALIDATED = "validated"


class LineStatus(str, Enum):
    """Derived matching status of a reconciliation line."""

    MATCHED = "matched"
    UNCERTAIN = "uncertain"
    UNMATCHED = "unmatched"


class ReconciliationBatch(UUIDMixin, TimestampMixin, Base):
    """An imported bank statement period being reconciled."""

    __tablename__ = "reconciliation_batches"

    number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    date_start: Mapped[date] = mapped_column(Date, nullable=False)
    date_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        SQLEnum(BatchStatus, name="batch_status_enum"),
        default=BatchStatus.IN_PROGRESS,
    )
    total_lines: Mapped[int] = mapped_column(Integer, default=0)
    matched_lines: Mapped[int] = mapped_column(Integer, default=0)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    lines: Mapped[list["ReconciliationLine"]] = relationship(
        "ReconciliationLine",
        back_populates="batch",
        order_by="ReconciliationLine.position",
        passive_deletes=True,
    )


class ReconciliationLine(UUIDMixin, TimestampMixin, Base):
    """Matching state of one bank transaction within a batch."""

    __tablename__ = "reconciliation_lines"

    batch_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("reconciliation_batches.id"), nullable=False, index=True
    )
    # Line numbers key reconciliation records and invoice links, so they are unique across batches
    line_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    label: Mapped[str] = mapped_column(Text, nullable=False)
    debit: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    credit: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0.00"))
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    status: Mapped[LineStatus] = mapped_column(
        SQLEnum(LineStatus, name="line_status_enum"),
        default=LineStatus.UNMATCHED,
    )
    invoice_ids: Mapped[list[str]] = mapped_column(JSON, default=list)
    suggested_invoice_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    subscription_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    declaration_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    partner_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    partner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    partner_category: Mapped[PartnerCategory | None] = mapped_column(
        SQLEnum(PartnerCategory, name="partner_category_enum"),
        nullable=True,
    )
    score: Mapped[int] = mapped_column(Integer, default=0)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # VAT split stored for subscription lines
    total_ht: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    total_tva: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    total_ttc: Mapped[Decimal | None] = mapped_column(Money, nullable=True)

    batch: Mapped[ReconciliationBatch] = relationship("ReconciliationBatch", back_populates="lines")


class BankReconciliation(UUIDMixin, TimestampMixin, Base):
    """Reconciliation record written at validation, keyed by line number."""

    __tablename__ = "bank_reconciliations"

    line_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    transaction_label: Mapped[str] = mapped_column(Text, nullable=False)
    transaction_debit: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    transaction_credit: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    transaction_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    invoice_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    subscription_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    declaration_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class InvoiceReconciliation(UUIDMixin, Base):
    """Join row between an invoice and the reconciliation record that settled it."""

    __tablename__ = "invoice_reconciliations"
    __table_args__ = (
        UniqueConstraint("invoice_id", "reconciliation_id", name="uq_invoice_reconciliations_pair"),
    )

    invoice_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("invoices.id"), nullable=False, index=True)
    reconciliation_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("bank_reconciliations.id"), nullable=False, index=True
    )
    created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
