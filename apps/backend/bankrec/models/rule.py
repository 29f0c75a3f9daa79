"""Configurable reconciliation scoring rules."""

from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, Integer, String, Text
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from bankrec.database import Base
from bankrec.models.base import TimestampMixin, UUIDMixin


class RuleType(str, Enum):
    """Condition vocabulary understood by the rule evaluator."""

    AMOUNT = "amount"
    DATE = "date"
    LABEL = "label"
    PARTNER = "partner"
    TRANSACTION_TYPE = "transaction_type"
    CUSTOM = "custom"
    SUBSCRIPTION = "subscription"
    DECLARATION = "declaration"


class ReconciliationRule(UUIDMixin, TimestampMixin, Base):
    """Scoring rule; condition parameters depend on rule_type."""

    __tablename__ = "reconciliation_rules"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    rule_type: Mapped[RuleType] = mapped_column(
        SQLEnum(RuleType, name="rule_type_enum"),
        nullable=False,
    )
    condition: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    # Lower value = evaluated first
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
