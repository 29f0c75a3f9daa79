"""Partner models (clients, suppliers, banks, staff)."""

from enum import Enum

from sqlalchemy import Boolean, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from bankrec.database import Base
from bankrec.models.base import TimestampMixin, UUIDMixin


class PartnerCategory(str, Enum):
    """Kind of counterparty a bank line can be attributed to."""

    GENERAL_SUPPLIER = "general_supplier"
    SERVICES_SUPPLIER = "services_supplier"
    STATE_SUPPLIER = "state_supplier"
    CLIENT = "client"
    BANK = "bank"
    CONTRACTOR = "contractor"
    EMPLOYEE = "employee"


# Order in which partner keyword expressions are tried against a bank label
PARTNER_MATCH_ORDER: tuple[PartnerCategory, ...] = (
    PartnerCategory.GENERAL_SUPPLIER,
    PartnerCategory.CLIENT,
    PartnerCategory.SERVICES_SUPPLIER,
    PartnerCategory.STATE_SUPPLIER,
    PartnerCategory.BANK,
    PartnerCategory.CONTRACTOR,
    PartnerCategory.EMPLOYEE,
)


class Partner(UUIDMixin, TimestampMixin, Base):
    """Named counterparty with its bank-label keyword expression."""

    __tablename__ = "partners"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[PartnerCategory] = mapped_column(
        SQLEnum(PartnerCategory, name="partner_category_enum"),
        nullable=False,
        index=True,
    )
    keywords: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Payment terms used to locate the invoices a payment settles
    payment_delay_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payment_gap_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    month_granularity: Mapped[bool] = mapped_column(Boolean, default=False)
