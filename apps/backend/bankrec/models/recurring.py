"""Recurring charge models: partner subscriptions and social-charge declarations."""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bankrec.database import Base
from bankrec.models.base import Money, RecurringChargeMixin, TimestampMixin, UUIDMixin


class Subscription(UUIDMixin, TimestampMixin, RecurringChargeMixin, Base):
    """Recurring partner subscription (rent, software, telecom...)."""

    __tablename__ = "subscriptions"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    monthly_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)
    # Free text as typed by users: "20%", "5,5 %", "normal", "exonéré"...
    vat_rate: Mapped[str | None] = mapped_column(String(32), nullable=True)


class Declaration(UUIDMixin, TimestampMixin, RecurringChargeMixin, Base):
    """Social or tax charge declaration paid by direct debit."""

    __tablename__ = "declarations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    organization: Mapped[str] = mapped_column(String(255), nullable=False)
    estimated_amount: Mapped[Decimal | None] = mapped_column(Money, nullable=True)


class SubscriptionPayment(UUIDMixin, TimestampMixin, Base):
    """Payment of a subscription recorded when a reconciliation is validated."""

    __tablename__ = "subscription_payments"

    subscription_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    reconciliation_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("bank_reconciliations.id"), nullable=True, index=True
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class SubscriptionConsumption(UUIDMixin, TimestampMixin, Base):
    """Usage line billed under a subscription, tied to the reconciliation that paid it."""

    __tablename__ = "subscription_consumptions"

    subscription_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    reconciliation_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("bank_reconciliations.id"), nullable=True, index=True
    )
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    consumption_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)


class DeclarationPayment(UUIDMixin, TimestampMixin, Base):
    """Payment of a charge declaration recorded when a reconciliation is validated."""

    __tablename__ = "declaration_payments"

    declaration_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("declarations.id", ondelete="CASCADE"), nullable=False
    )
    reconciliation_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("bank_reconciliations.id"), nullable=True, index=True
    )
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
