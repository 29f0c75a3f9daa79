"""Multi-invoice combination matcher.

Two variants run for each eligible line, in order:

1. Exact period: a debit settles one general-expense invoice emitted in the
   same calendar month as the transaction.
2. Payment delay: a client or supplier pays 1 to N of its invoices emitted in
   a target month derived from its payment terms; the first subset (by size,
   then enumeration order) whose sum equals the amount wins.

Candidates are sorted by (emission date, number) before searching so the
result does not depend on snapshot order.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import date, timedelta
from decimal import Decimal
from itertools import combinations

from bankrec.logger import get_logger
from bankrec.models import InvoiceCategory, PartnerCategory
from bankrec.services.assignment import available_invoices
from bankrec.services.engine_config import ReconciliationConfig
from bankrec.services.keywords import normalize_label
from bankrec.services.partner_matching import find_partner
from bankrec.services.working_set import (
    CandidateSnapshot,
    InvoiceCandidate,
    LineMutation,
    LineState,
    PartnerCandidate,
    Transaction,
    WorkingSet,
)

logger = get_logger(__name__)

SOURCE = "combinations"

# Parties whose invoices can be settled by a grouped payment, in search order
PAYMENT_PARTY_ORDER: tuple[PartnerCategory, ...] = (
    PartnerCategory.CLIENT,
    PartnerCategory.SERVICES_SUPPLIER,
    PartnerCategory.STATE_SUPPLIER,
    PartnerCategory.GENERAL_SUPPLIER,
)


def is_eligible(line: LineState) -> bool:
    """Unlinked lines that are partner-less or attached to a general supplier.

    A line holding only a suggestion stays eligible, so the result does not
    depend on whether the invoice pass ran first.
    """
    if line.has_financial_link:
        return False
    return line.partner is None or line.partner.category is PartnerCategory.GENERAL_SUPPLIER


def _month_of(value: date) -> tuple[int, int]:
    return value.year, value.month


def _step_back_months(value: date, months: int) -> tuple[int, int]:
    index = value.year * 12 + (value.month - 1) - months
    return index // 12, index % 12 + 1


def target_month(transaction_date: date, party: PartnerCandidate, config: ReconciliationConfig) -> tuple[int, int]:
    """(year, month) whose invoices a payment on ``transaction_date`` settles."""
    delay = party.payment_delay_days if party.payment_delay_days is not None else config.default_payment_delay_days
    gap = party.payment_gap_days if party.payment_gap_days is not None else config.default_payment_gap_days
    if party.month_granularity:
        return _step_back_months(transaction_date, math.ceil((delay + gap) / 30))
    return _month_of(transaction_date - timedelta(days=delay + gap))


def _ordered(invoices: Sequence[InvoiceCandidate]) -> list[InvoiceCandidate]:
    return sorted(invoices, key=lambda inv: (inv.emission_date, inv.number))


def find_exact_period_invoice(
    transaction: Transaction,
    pool: Sequence[InvoiceCandidate],
    config: ReconciliationConfig,
) -> InvoiceCandidate | None:
    if transaction.debit <= 0:
        return None
    month = _month_of(transaction.date)
    for invoice in _ordered(pool):
        if invoice.category is not InvoiceCategory.PURCHASES_GENERAL:
            continue
        if _month_of(invoice.emission_date) != month:
            continue
        if abs(abs(invoice.amount) - transaction.absolute_amount) < config.amount_tolerance:
            return invoice
    return None


def _belongs_to(invoice: InvoiceCandidate, party: PartnerCandidate) -> bool:
    if invoice.partner_id is not None:
        return invoice.partner_id == party.id
    return bool(invoice.partner_name) and normalize_label(invoice.partner_name) == normalize_label(party.name)


def find_invoice_combination(
    amount: Decimal,
    candidates: Sequence[InvoiceCandidate],
    config: ReconciliationConfig,
) -> tuple[InvoiceCandidate, ...] | None:
    """First subset of 1..max_size candidates whose total equals ``amount``."""
    target = abs(amount)
    for size in range(1, min(config.max_combination_size, len(candidates)) + 1):
        for subset in combinations(candidates, size):
            total = sum((abs(inv.amount) for inv in subset), Decimal("0"))
            if abs(total - target) < config.amount_tolerance:
                return subset
    return None


def resolve_party(line: LineState, snapshot: CandidateSnapshot) -> PartnerCandidate | None:
    if line.partner is not None:
        return snapshot.partner(line.partner.id)
    return find_partner(line.transaction.label, snapshot.partners, PAYMENT_PARTY_ORDER)


def find_delayed_payment_invoices(
    line: LineState,
    party: PartnerCandidate,
    pool: Sequence[InvoiceCandidate],
    config: ReconciliationConfig,
) -> tuple[InvoiceCandidate, ...] | None:
    month = target_month(line.transaction.date, party, config)
    candidates = _ordered(
        [inv for inv in pool if _belongs_to(inv, party) and _month_of(inv.emission_date) == month]
    )
    if not candidates:
        return None
    return find_invoice_combination(line.transaction.amount, candidates, config)


def _own_suggestion(line: LineState, snapshot: CandidateSnapshot) -> InvoiceCandidate | None:
    if line.suggested_invoice_id is None:
        return None
    invoice = snapshot.invoice(line.suggested_invoice_id)
    if invoice is None or not invoice.is_reconcilable:
        return None
    return invoice


def match_combinations(
    working_set: WorkingSet,
    snapshot: CandidateSnapshot,
    config: ReconciliationConfig,
) -> list[LineMutation]:
    """Combination pass.

    A line may also settle its own suggested invoice, which is otherwise
    reserved; a suggestion left unused once the line is linked goes back to
    the pool for the following lines.
    """
    pool = available_invoices(working_set, snapshot)
    mutations: list[LineMutation] = []

    for line in working_set.lines:
        if not is_eligible(line):
            continue
        suggested = _own_suggestion(line, snapshot)
        line_pool = pool if suggested is None else [*pool, suggested]
        if not line_pool:
            continue

        party: PartnerCandidate | None = None
        matched: tuple[InvoiceCandidate, ...] | None = None
        single = find_exact_period_invoice(line.transaction, line_pool, config)
        if single is not None:
            matched = (single,)
        else:
            party = resolve_party(line, snapshot)
            if party is not None:
                matched = find_delayed_payment_invoices(line, party, line_pool, config)
        if not matched:
            continue

        consumed = {inv.id for inv in matched}
        pool = [inv for inv in line_pool if inv.id not in consumed]
        changes = {
            "invoice_ids": tuple(inv.id for inv in matched),
            "suggested_invoice_id": None,
            "score": config.combination_score,
        }
        if line.partner is None and party is not None:
            changes["partner"] = party.ref()
        mutations.append(LineMutation(line.line_number, changes, SOURCE))
        logger.debug(
            "Invoice combination matched",
            line_number=line.line_number,
            invoice_count=len(matched),
            party=party.name if party else None,
        )

    logger.info("Combination pass resolved", matched=len(mutations), remaining_pool=len(pool))
    return mutations
