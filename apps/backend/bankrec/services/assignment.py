"""Assignment resolver: one invoice per line, one line per invoice."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from uuid import UUID

from bankrec.logger import get_logger
from bankrec.services.engine_config import ReconciliationConfig
from bankrec.services.rules import INVOICE_RULE_TYPES, score_pair
from bankrec.services.working_set import (
    CandidateSnapshot,
    InvoiceCandidate,
    LineMutation,
    LineState,
    WorkingSet,
)

logger = get_logger(__name__)

SOURCE = "invoices"


@dataclass(frozen=True)
class ScoredPair:
    line_number: str
    invoice_id: UUID
    score: int


def available_invoices(working_set: WorkingSet, snapshot: CandidateSnapshot) -> list[InvoiceCandidate]:
    """Reconcilable invoices not reserved by a line of this batch or another in-progress one."""
    reserved = working_set.reserved_invoices(elsewhere=snapshot.reserved_elsewhere)
    return [inv for inv in snapshot.invoices if inv.is_reconcilable and inv.id not in reserved]


def needs_invoice(line: LineState) -> bool:
    return not line.has_financial_link and line.suggested_invoice_id is None


def score_candidates(
    lines: Iterable[LineState],
    invoices: Sequence[InvoiceCandidate],
    snapshot: CandidateSnapshot,
    config: ReconciliationConfig,
) -> list[ScoredPair]:
    """Score every (line, invoice) pair, in line order then invoice order."""
    rules = snapshot.active_rules(*INVOICE_RULE_TYPES)
    pairs: list[ScoredPair] = []
    for line in lines:
        for invoice in invoices:
            score = score_pair(line.transaction, invoice, rules, config)
            if score is not None:
                pairs.append(ScoredPair(line.line_number, invoice.id, score))
    return pairs


def resolve_assignments(pairs: Sequence[ScoredPair]) -> list[ScoredPair]:
    """Greedy assignment by descending score.

    The sort is stable, so ties keep discovery order. A pair is taken only
    when neither its line nor its invoice has been taken already.
    """
    used_lines: set[str] = set()
    used_invoices: set[UUID] = set()
    assigned: list[ScoredPair] = []
    for pair in sorted(pairs, key=lambda p: -p.score):
        if pair.line_number in used_lines or pair.invoice_id in used_invoices:
            continue
        used_lines.add(pair.line_number)
        used_invoices.add(pair.invoice_id)
        assigned.append(pair)
    return assigned


def match_invoices(
    working_set: WorkingSet,
    snapshot: CandidateSnapshot,
    config: ReconciliationConfig,
) -> list[LineMutation]:
    """Invoice pass: confirmed link at or above the threshold, suggestion below it."""
    lines = [line for line in working_set.lines if needs_invoice(line)]
    invoices = available_invoices(working_set, snapshot)
    if not lines or not invoices:
        return []

    pairs = score_candidates(lines, invoices, snapshot, config)
    assigned = resolve_assignments(pairs)

    mutations: list[LineMutation] = []
    for pair in assigned:
        if pair.score >= config.matched_threshold:
            changes = {"invoice_ids": (pair.invoice_id,), "suggested_invoice_id": None, "score": pair.score}
        else:
            changes = {"suggested_invoice_id": pair.invoice_id, "score": pair.score}
        mutations.append(LineMutation(pair.line_number, changes, SOURCE))

    logger.info(
        "Invoice pass resolved",
        lines=len(lines),
        candidates=len(invoices),
        scored_pairs=len(pairs),
        assigned=len(assigned),
        confirmed=sum(1 for p in assigned if p.score >= config.matched_threshold),
    )
    return mutations
