"""In-memory working set shared by the matching strategies.

Strategies never mutate lines directly: they return ``LineMutation`` diffs
which ``apply_mutations`` applies before re-deriving each touched line's status.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from types import MappingProxyType
from typing import Any
from uuid import UUID

from bankrec.models import (
    InvoiceCategory,
    InvoiceStatus,
    LineStatus,
    PartnerCategory,
    RuleType,
)
from bankrec.services.errors import LineNotFoundError
from bankrec.services.keywords import effective_expression
from bankrec.services.status import derive_status

RECONCILABLE_INVOICE_STATUSES = frozenset({InvoiceStatus.VALIDATED, InvoiceStatus.PAID})


def amounts_equal(a: Decimal, b: Decimal, tolerance: Decimal = Decimal("0.01")) -> bool:
    """Compare two amounts with the currency tolerance."""
    return abs(a - b) < tolerance


@dataclass(frozen=True)
class Transaction:
    """Normalized bank transaction."""

    line_number: str
    date: date
    label: str
    debit: Decimal
    credit: Decimal
    amount: Decimal

    @property
    def absolute_amount(self) -> Decimal:
        return abs(self.amount)

    @property
    def is_credit(self) -> bool:
        return self.credit > 0


@dataclass(frozen=True)
class InvoiceCandidate:
    id: UUID
    number: str
    category: InvoiceCategory
    emission_date: date
    partner_name: str
    amount: Decimal
    status: InvoiceStatus
    partner_id: UUID | None = None
    reconciliation_number: str | None = None

    @property
    def is_free(self) -> bool:
        return self.reconciliation_number is None

    @property
    def is_reconcilable(self) -> bool:
        return self.is_free and self.status in RECONCILABLE_INVOICE_STATUSES


@dataclass(frozen=True)
class PartnerRef:
    """Partner attached to a line."""

    id: UUID
    name: str
    category: PartnerCategory


@dataclass(frozen=True)
class PartnerCandidate:
    id: UUID
    name: str
    category: PartnerCategory
    keywords: str | None = None
    payment_delay_days: int | None = None
    payment_gap_days: int | None = None
    month_granularity: bool = False

    @property
    def expression(self) -> str:
        return effective_expression(self.keywords, self.name)

    def ref(self) -> PartnerRef:
        return PartnerRef(id=self.id, name=self.name, category=self.category)


@dataclass(frozen=True)
class SubscriptionCandidate:
    id: UUID
    name: str
    monthly_amount: Decimal | None = None
    keywords: str | None = None
    partner_id: UUID | None = None
    vat_rate: str | None = None


@dataclass(frozen=True)
class DeclarationCandidate:
    id: UUID
    name: str
    organization: str
    estimated_amount: Decimal | None = None
    keywords: str | None = None
    partner_id: UUID | None = None


@dataclass(frozen=True)
class Rule:
    id: UUID
    rule_type: RuleType
    condition: Mapping[str, Any]
    score: int
    priority: int = 10
    active: bool = True
    name: str = ""


@dataclass(frozen=True)
class CandidateSnapshot:
    """Read-only candidate collections loaded once per run."""

    invoices: tuple[InvoiceCandidate, ...] = ()
    subscriptions: tuple[SubscriptionCandidate, ...] = ()
    declarations: tuple[DeclarationCandidate, ...] = ()
    partners: tuple[PartnerCandidate, ...] = ()
    rules: tuple[Rule, ...] = ()
    # Invoice ids held by lines of other in-progress batches, mapped to that line number
    reserved_elsewhere: Mapping[UUID, str] = field(default_factory=dict, hash=False)

    def partner(self, partner_id: UUID | None) -> PartnerCandidate | None:
        if partner_id is None:
            return None
        return next((p for p in self.partners if p.id == partner_id), None)

    def invoice(self, invoice_id: UUID) -> InvoiceCandidate | None:
        return next((inv for inv in self.invoices if inv.id == invoice_id), None)

    def subscription(self, subscription_id: UUID) -> SubscriptionCandidate | None:
        return next((s for s in self.subscriptions if s.id == subscription_id), None)

    def declaration(self, declaration_id: UUID) -> DeclarationCandidate | None:
        return next((d for d in self.declarations if d.id == declaration_id), None)

    def active_rules(self, *types: RuleType) -> list[Rule]:
        rules = [rule for rule in self.rules if rule.active and (not types or rule.rule_type in types)]
        return sorted(rules, key=lambda rule: rule.priority)


@dataclass
class LineState:
    """Current matching state of one transaction."""

    transaction: Transaction
    status: LineStatus = LineStatus.UNMATCHED
    invoice_ids: tuple[UUID, ...] = ()
    suggested_invoice_id: UUID | None = None
    subscription_id: UUID | None = None
    declaration_id: UUID | None = None
    partner: PartnerRef | None = None
    score: int = 0
    notes: str | None = None

    @property
    def line_number(self) -> str:
        return self.transaction.line_number

    @property
    def has_financial_link(self) -> bool:
        return bool(self.invoice_ids or self.subscription_id or self.declaration_id)


# Fields a mutation may set; status is excluded since it is always derived
MUTABLE_FIELDS = frozenset(
    {
        "invoice_ids",
        "suggested_invoice_id",
        "subscription_id",
        "declaration_id",
        "partner",
        "score",
        "notes",
    }
)

CLEARED_LINKAGE: Mapping[str, Any] = MappingProxyType(
    {
        "invoice_ids": (),
        "suggested_invoice_id": None,
        "subscription_id": None,
        "declaration_id": None,
        "partner": None,
        "score": 0,
    }
)


@dataclass(frozen=True)
class LineMutation:
    """Field changes for one line, produced by a strategy or an override."""

    line_number: str
    changes: Mapping[str, Any]
    source: str

    def __post_init__(self) -> None:
        unknown = set(self.changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported line fields: {sorted(unknown)}")
        object.__setattr__(self, "changes", MappingProxyType(dict(self.changes)))


@dataclass
class WorkingSet:
    """All lines of a batch, in import order."""

    lines: list[LineState] = field(default_factory=list)

    def line(self, line_number: str) -> LineState:
        for line in self.lines:
            if line.line_number == line_number:
                return line
        raise LineNotFoundError(line_number)

    def reserved_invoices(
        self,
        *,
        exclude_line: str | None = None,
        elsewhere: Mapping[UUID, str] | None = None,
    ) -> dict[UUID, str]:
        """Invoice ids linked or suggested on a line, mapped to that line's number.

        ``elsewhere`` adds reservations held by other in-progress batches.
        """
        reserved: dict[UUID, str] = dict(elsewhere or {})
        for line in self.lines:
            if line.line_number == exclude_line:
                continue
            for invoice_id in line.invoice_ids:
                reserved[invoice_id] = line.line_number
            if line.suggested_invoice_id is not None:
                reserved[line.suggested_invoice_id] = line.line_number
        return reserved

    def counts(self) -> dict[LineStatus, int]:
        totals = {status: 0 for status in LineStatus}
        for line in self.lines:
            totals[line.status] += 1
        return totals


def apply_mutations(working_set: WorkingSet, mutations: Iterable[LineMutation]) -> list[str]:
    """Apply diffs to the working set and re-derive status of touched lines.

    Returns the line numbers that were touched, in application order.
    """
    # Resolve every line first so an unknown line leaves the working set untouched
    resolved = [(working_set.line(mutation.line_number), mutation) for mutation in mutations]
    touched: list[str] = []
    for line, mutation in resolved:
        for name, value in mutation.changes.items():
            if name == "invoice_ids":
                value = tuple(value)
            setattr(line, name, value)
        line.status = derive_status(line)
        if mutation.line_number not in touched:
            touched.append(mutation.line_number)
    return touched
