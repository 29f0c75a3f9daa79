"""SQLAlchemy models package."""

from bankrec.models.invoice import Invoice, InvoiceCategory, InvoiceStatus
from bankrec.models.partner import PARTNER_MATCH_ORDER, Partner, PartnerCategory
from bankrec.models.reconciliation import (
    BankReconciliation,
    BatchStatus,
    InvoiceReconciliation,
    LineStatus,
    ReconciliationBatch,
    ReconciliationLine,
)
from bankrec.models.recurring import (
    Declaration,
    DeclarationPayment,
    Subscription,
    SubscriptionConsumption,
    SubscriptionPayment,
)
from bankrec.models.rule import ReconciliationRule, RuleType

__all__ = [
    "PARTNER_MATCH_ORDER",
    "BankReconciliation",
    "BatchStatus",
    "Declaration",
    "DeclarationPayment",
    "Invoice",
    "InvoiceCategory",
    "InvoiceReconciliation",
    "InvoiceStatus",
    "LineStatus",
    "Partner",
    "PartnerCategory",
    "ReconciliationBatch",
    "ReconciliationLine",
    "ReconciliationRule",
    "RuleType",
    "Subscription",
    "SubscriptionConsumption",
    "SubscriptionPayment",
]
