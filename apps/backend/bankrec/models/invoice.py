"""Invoice models."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, DateTime, String, Uuid
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from bankrec.database import Base
from bankrec.models.base import Money, TimestampMixin, UUIDMixin


class InvoiceCategory(str, Enum):
    """Invoice book an invoice belongs to."""

    SALES = "sales"
    PURCHASES_GENERAL = "purchases_general"
    PURCHASES_SERVICES = "purchases_services"
    PURCHASES_STATE = "purchases_state"

    @property
    def is_purchase(self) -> bool:
        return self is not InvoiceCategory.SALES


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    DRAFT = "draft"
    VALIDATED = "validated"
    PAID = "paid"
    CANCELLED = "cancelled"


class Invoice(UUIDMixin, TimestampMixin, Base):
    """Sales or purchase invoice eligible for bank reconciliation."""

    __tablename__ = "invoices"

    number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    category: Mapped[InvoiceCategory] = mapped_column(
        SQLEnum(InvoiceCategory, name="invoice_category_enum"),
        nullable=False,
    )
    emission_date: Mapped[date] = mapped_column(Date, nullable=False)
    partner_id: Mapped[UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    partner_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    total_ht: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    total_tva: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    total_ttc: Mapped[Decimal] = mapped_column(Money, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus, name="invoice_status_enum"),
        default=InvoiceStatus.VALIDATED,
    )

    # Reconciliation write-back, null while the invoice is free
    reconciliation_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reconciliation_line_number: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
