"""Shared column types and mixins for reconciliation models."""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Numeric, Text, Uuid
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

# Amounts are stored with cents precision; comparisons use the engine tolerance
Money = Numeric(18, 2)


class UUIDMixin:
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)


class TimestampMixin:
    """created_at/updated_at in UTC."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


class RecurringChargeMixin:
    """Columns shared by subscriptions and declarations.

    ``keywords`` uses the comma-OR / space-AND grammar; ``partner_id`` lets the
    linked partner's name act as an extra keyword.
    """

    keywords: Mapped[str | None] = mapped_column(Text, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)

    @declared_attr
    def partner_id(cls) -> Mapped[UUID | None]:
        return mapped_column(Uuid, ForeignKey("partners.id", ondelete="SET NULL"), nullable=True)
