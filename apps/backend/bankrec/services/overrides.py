"""Manual overrides and line reset."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from bankrec.logger import get_logger
from bankrec.services.errors import InvoiceAlreadyLinkedError, UnknownCandidateError
from bankrec.services.working_set import (
    CLEARED_LINKAGE,
    CandidateSnapshot,
    LineMutation,
    WorkingSet,
    apply_mutations,
)

logger = get_logger(__name__)

MANUAL_SCORE = 100


@dataclass(frozen=True)
class ManualOverride:
    """User edit of one line.

    Only fields named in ``fields_set`` are applied, so an explicit None
    detaches a link while an omitted field leaves it alone.
    """

    line_number: str
    invoice_ids: tuple[UUID, ...] | None = None
    subscription_id: UUID | None = None
    declaration_id: UUID | None = None
    partner_id: UUID | None = None
    notes: str | None = None
    fields_set: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_changes(cls, line_number: str, changes: dict[str, Any]) -> ManualOverride:
        values = dict(changes)
        if values.get("invoice_ids") is not None:
            values["invoice_ids"] = tuple(values["invoice_ids"])
        return cls(line_number=line_number, fields_set=frozenset(values), **values)


def _check_invoices(
    working_set: WorkingSet,
    snapshot: CandidateSnapshot,
    line_number: str,
    invoice_ids: tuple[UUID, ...],
) -> None:
    reserved = working_set.reserved_invoices(exclude_line=line_number, elsewhere=snapshot.reserved_elsewhere)
    for invoice_id in invoice_ids:
        invoice = snapshot.invoice(invoice_id)
        if invoice is None:
            raise UnknownCandidateError("invoice", invoice_id)
        if invoice_id in reserved:
            raise InvoiceAlreadyLinkedError(invoice_id, reserved[invoice_id])
        if not invoice.is_free:
            raise InvoiceAlreadyLinkedError(invoice_id, invoice.reconciliation_number or "")


def build_override_mutation(
    working_set: WorkingSet,
    snapshot: CandidateSnapshot,
    override: ManualOverride,
) -> LineMutation:
    line = working_set.line(override.line_number)
    changes: dict[str, Any] = {}
    requested = override.fields_set

    if "invoice_ids" in requested:
        invoice_ids = tuple(dict.fromkeys(override.invoice_ids or ()))
        _check_invoices(working_set, snapshot, line.line_number, invoice_ids)
        changes["invoice_ids"] = invoice_ids
        changes["suggested_invoice_id"] = None

    if "subscription_id" in requested:
        if override.subscription_id is not None and snapshot.subscription(override.subscription_id) is None:
            raise UnknownCandidateError("subscription", override.subscription_id)
        changes["subscription_id"] = override.subscription_id

    if "declaration_id" in requested:
        if override.declaration_id is not None and snapshot.declaration(override.declaration_id) is None:
            raise UnknownCandidateError("declaration", override.declaration_id)
        changes["declaration_id"] = override.declaration_id

    if "partner_id" in requested:
        if override.partner_id is None:
            changes["partner"] = None
        else:
            partner = snapshot.partner(override.partner_id)
            if partner is None:
                raise UnknownCandidateError("partner", override.partner_id)
            changes["partner"] = partner.ref()

    if "notes" in requested:
        changes["notes"] = override.notes

    if changes.get("invoice_ids") or changes.get("subscription_id") or changes.get("declaration_id"):
        changes["score"] = MANUAL_SCORE
    return LineMutation(line.line_number, changes, "manual")


def apply_override(
    working_set: WorkingSet,
    snapshot: CandidateSnapshot,
    override: ManualOverride,
) -> LineMutation:
    """Validate and apply a manual edit; status is re-derived like any other mutation."""
    mutation = build_override_mutation(working_set, snapshot, override)
    apply_mutations(working_set, [mutation])
    logger.info(
        "Manual override applied",
        line_number=override.line_number,
        fields=sorted(mutation.changes),
        status=working_set.line(override.line_number).status.value,
    )
    return mutation


def reset_line(working_set: WorkingSet, line_number: str) -> LineMutation:
    """Clear every link on a line; notes are kept. Status re-derives to unmatched."""
    mutation = LineMutation(line_number, dict(CLEARED_LINKAGE), "reset")
    apply_mutations(working_set, [mutation])
    return mutation
