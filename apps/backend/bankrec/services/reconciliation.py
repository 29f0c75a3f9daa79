"""Reconciliation orchestration: batches, snapshots, strategy runs and reporting."""

from __future__ import annotations

import csv
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from io import StringIO
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bankrec.logger import get_logger, log_timing
from bankrec.models import (
    BatchStatus,
    Declaration,
    Invoice,
    LineStatus,
    Partner,
    ReconciliationBatch,
    ReconciliationLine,
    ReconciliationRule,
    Subscription,
)
from bankrec.services import numbering
from bankrec.services.assignment import match_invoices
from bankrec.services.autosave import AutoSaver
from bankrec.services.combination_matching import match_combinations
from bankrec.services.engine_config import ReconciliationConfig, load_reconciliation_config
from bankrec.services.errors import BatchAlreadyValidatedError, LineNumberInUseError
from bankrec.services.overrides import ManualOverride, apply_override, reset_line
from bankrec.services.partner_matching import match_partners
from bankrec.services.persistence import (
    SaveReport,
    get_batch,
    line_state_from_row,
    save_working_set,
    unlink_line,
)
from bankrec.services.recurring_matching import match_recurring
from bankrec.services.working_set import (
    CandidateSnapshot,
    DeclarationCandidate,
    InvoiceCandidate,
    LineMutation,
    PartnerCandidate,
    Rule,
    SubscriptionCandidate,
    WorkingSet,
    apply_mutations,
)

if TYPE_CHECKING:
    from bankrec.schemas.reconciliation import TransactionIn

logger = get_logger(__name__)


class Strategy(str, Enum):
    """Matching passes a user can trigger."""

    INVOICES = "invoices"
    PARTNERS = "partners"
    RECURRING = "recurring"
    COMBINATIONS = "combinations"
    ALL = "all"


# Order used by Strategy.ALL; partners last so combinations can still resolve the paying party
ALL_STRATEGIES: tuple[Strategy, ...] = (
    Strategy.INVOICES,
    Strategy.RECURRING,
    Strategy.COMBINATIONS,
    Strategy.PARTNERS,
)


# --- batches and snapshots -------------------------------------------------


async def _existing_line_numbers(db: AsyncSession, candidates: Sequence[str]) -> set[str]:
    if not candidates:
        return set()
    result = await db.execute(
        select(ReconciliationLine.line_number).where(ReconciliationLine.line_number.in_(candidates))
    )
    return set(result.scalars())


async def _assign_line_numbers(db: AsyncSession, transactions: Sequence[TransactionIn]) -> list[str]:
    supplied = [txn.line_number for txn in transactions if txn.line_number]
    duplicates = {number for number in supplied if supplied.count(number) > 1}
    taken = await _existing_line_numbers(db, supplied) | duplicates
    if taken:
        raise LineNumberInUseError(sorted(taken))

    numbers: list[str] = []
    for position, txn in enumerate(transactions):
        if txn.line_number:
            numbers.append(txn.line_number)
            continue
        number = numbering.line_number(txn.transaction_date, position + 1)
        while number in numbers or number in supplied or await _existing_line_numbers(db, [number]):
            number = numbering.line_number(txn.transaction_date, position + 1)
        numbers.append(number)
    return numbers


async def create_batch(
    db: AsyncSession,
    date_start: date,
    date_end: date,
    transactions: Sequence[TransactionIn],
) -> ReconciliationBatch:
    """Create a batch and one unmatched line per imported transaction.

    Supplied line numbers must not exist in any batch; generated ones are
    redrawn on the rare token collision.
    """
    numbers = await _assign_line_numbers(db, transactions)
    batch = ReconciliationBatch(
        number=await numbering.next_batch_number(db, date_start),
        date_start=date_start,
        date_end=date_end,
        status=BatchStatus.IN_PROGRESS,
        total_lines=len(transactions),
        matched_lines=0,
    )
    db.add(batch)
    await db.flush()

    for position, txn in enumerate(transactions):
        db.add(
            ReconciliationLine(
                batch_id=batch.id,
                line_number=numbers[position],
                position=position,
                transaction_date=txn.transaction_date,
                label=txn.label,
                debit=txn.debit,
                credit=txn.credit,
                amount=txn.amount,
                status=LineStatus.UNMATCHED,
                invoice_ids=[],
                score=0,
            )
        )
    await db.flush()

    logger.info(
        "Reconciliation batch created",
        batch_number=batch.number,
        date_start=date_start.isoformat(),
        date_end=date_end.isoformat(),
        lines=len(transactions),
    )
    return batch


async def reservations_outside(db: AsyncSession, batch_id: UUID) -> dict[UUID, str]:
    """Invoices linked or suggested on lines of other in-progress batches."""
    result = await db.execute(
        select(ReconciliationLine.line_number, ReconciliationLine.invoice_ids, ReconciliationLine.suggested_invoice_id)
        .join(ReconciliationBatch, ReconciliationLine.batch_id == ReconciliationBatch.id)
        .where(ReconciliationBatch.status == BatchStatus.IN_PROGRESS)
        .where(ReconciliationBatch.id != batch_id)
    )
    reserved: dict[UUID, str] = {}
    for line_number, invoice_ids, suggested_invoice_id in result:
        for value in invoice_ids or []:
            reserved[UUID(value)] = line_number
        if suggested_invoice_id is not None:
            reserved[suggested_invoice_id] = line_number
    return reserved


async def load_snapshot(db: AsyncSession, *, for_batch_id: UUID | None = None) -> CandidateSnapshot:
    """Read-only candidate collections for one run.

    With ``for_batch_id``, invoices held by other in-progress batches are
    recorded as reserved so the batch cannot link them a second time.
    """
    invoices = (await db.execute(select(Invoice).order_by(Invoice.emission_date, Invoice.number))).scalars()
    subscriptions = (
        await db.execute(select(Subscription).where(Subscription.active.is_(True)).order_by(Subscription.name))
    ).scalars()
    declarations = (
        await db.execute(select(Declaration).where(Declaration.active.is_(True)).order_by(Declaration.name))
    ).scalars()
    partners = (await db.execute(select(Partner).order_by(Partner.name))).scalars()
    rules = (await db.execute(select(ReconciliationRule).order_by(ReconciliationRule.priority))).scalars()

    return CandidateSnapshot(
        invoices=tuple(
            InvoiceCandidate(
                id=inv.id,
                number=inv.number,
                category=inv.category,
                emission_date=inv.emission_date,
                partner_name=inv.partner_name or "",
                partner_id=inv.partner_id,
                amount=inv.total_ttc,
                status=inv.status,
                reconciliation_number=inv.reconciliation_number,
            )
            for inv in invoices
        ),
        subscriptions=tuple(
            SubscriptionCandidate(
                id=sub.id,
                name=sub.name,
                monthly_amount=sub.monthly_amount,
                keywords=sub.keywords,
                partner_id=sub.partner_id,
                vat_rate=sub.vat_rate,
            )
            for sub in subscriptions
        ),
        declarations=tuple(
            DeclarationCandidate(
                id=decl.id,
                name=decl.name,
                organization=decl.organization,
                estimated_amount=decl.estimated_amount,
                keywords=decl.keywords,
                partner_id=decl.partner_id,
            )
            for decl in declarations
        ),
        partners=tuple(
            PartnerCandidate(
                id=partner.id,
                name=partner.name,
                category=partner.category,
                keywords=partner.keywords,
                payment_delay_days=partner.payment_delay_days,
                payment_gap_days=partner.payment_gap_days,
                month_granularity=bool(partner.month_granularity),
            )
            for partner in partners
        ),
        rules=tuple(
            Rule(
                id=rule.id,
                rule_type=rule.rule_type,
                condition=rule.condition or {},
                score=rule.score,
                priority=rule.priority,
                active=rule.active,
                name=rule.name,
            )
            for rule in rules
        ),
        reserved_elsewhere=await reservations_outside(db, for_batch_id) if for_batch_id is not None else {},
    )


async def load_working_set(db: AsyncSession, batch_id: UUID) -> tuple[ReconciliationBatch, WorkingSet]:
    batch = await get_batch(db, batch_id, with_lines=True)
    return batch, WorkingSet(lines=[line_state_from_row(row) for row in batch.lines])


# --- strategies ------------------------------------------------------------


def compute_mutations(
    working_set: WorkingSet,
    snapshot: CandidateSnapshot,
    strategy: Strategy,
    config: ReconciliationConfig,
) -> list[LineMutation]:
    """Diff produced by one strategy; the working set is left untouched."""
    if strategy is Strategy.INVOICES:
        return match_invoices(working_set, snapshot, config)
    if strategy is Strategy.PARTNERS:
        return match_partners(working_set, snapshot)
    if strategy is Strategy.RECURRING:
        return match_recurring(working_set, snapshot, config)
    if strategy is Strategy.COMBINATIONS:
        return match_combinations(working_set, snapshot, config)
    raise ValueError(f"{strategy.value} is not a single strategy")


def run_strategy(
    working_set: WorkingSet,
    snapshot: CandidateSnapshot,
    strategy: Strategy,
    config: ReconciliationConfig | None = None,
) -> list[LineMutation]:
    """Run a strategy (or all of them, in order) and apply its diff.

    Statuses are re-derived after each strategy.
    """
    config = config or load_reconciliation_config()
    strategies = ALL_STRATEGIES if strategy is Strategy.ALL else (strategy,)
    applied: list[LineMutation] = []
    for step in strategies:
        with log_timing("matching_pass", logger, strategy=step.value, lines=len(working_set.lines)) as timing:
            mutations = compute_mutations(working_set, snapshot, step, config)
            apply_mutations(working_set, mutations)
            timing["mutations"] = len(mutations)
        applied.extend(mutations)
    return applied


# --- session ---------------------------------------------------------------


class ReconciliationSession:
    """A batch's working set plus the auto-saver persisting it.

    Matching and overrides mutate the in-memory working set and touch the
    auto-saver; ``flush()`` persists immediately.
    """

    def __init__(
        self,
        db: AsyncSession,
        batch: ReconciliationBatch,
        working_set: WorkingSet,
        snapshot: CandidateSnapshot,
        config: ReconciliationConfig | None = None,
        autosave_delay: float | None = None,
    ) -> None:
        self.db = db
        self.batch = batch
        self.working_set = working_set
        self.snapshot = snapshot
        self.config = config or load_reconciliation_config()
        self.autosaver = AutoSaver(self._save, delay_seconds=autosave_delay)
        self.last_report: SaveReport | None = None

    @classmethod
    async def open(
        cls,
        db: AsyncSession,
        batch_id: UUID,
        config: ReconciliationConfig | None = None,
        autosave_delay: float | None = None,
    ) -> ReconciliationSession:
        batch, working_set = await load_working_set(db, batch_id)
        snapshot = await load_snapshot(db, for_batch_id=batch.id)
        return cls(db, batch, working_set, snapshot, config=config, autosave_delay=autosave_delay)

    async def _save(self) -> SaveReport:
        self.last_report = await save_working_set(self.db, self.batch, self.working_set)
        return self.last_report

    def _ensure_editable(self) -> None:
        if self.batch.status == BatchStatus.VALIDATED:
            raise BatchAlreadyValidatedError(self.batch.number)

    def run(self, strategy: Strategy) -> list[LineMutation]:
        self._ensure_editable()
        mutations = run_strategy(self.working_set, self.snapshot, strategy, self.config)
        if mutations:
            self.autosaver.touch()
        return mutations

    def override(self, override: ManualOverride) -> LineMutation:
        self._ensure_editable()
        mutation = apply_override(self.working_set, self.snapshot, override)
        self.autosaver.touch()
        return mutation

    async def reset(self, line_number: str) -> bool:
        """Clear a line and reverse its persisted downstream writes.

        Allowed on validated batches, where it undoes that line's write-back.
        Returns True if a reconciliation record was removed.
        """
        reset_line(self.working_set, line_number)
        reversed_record = await unlink_line(self.db, line_number)
        await save_working_set(
            self.db,
            self.batch,
            self.working_set,
            line_numbers=[line_number],
            allow_validated=True,
        )
        logger.info(
            "Reconciliation line reset",
            batch_number=self.batch.number,
            line_number=line_number,
            reversed_record=reversed_record,
        )
        return reversed_record

    async def flush(self) -> SaveReport | None:
        return await self.autosaver.flush()


# --- reporting -------------------------------------------------------------


@dataclass(frozen=True)
class ExportRow:
    line_number: str
    date: date
    label: str
    debit: Decimal
    credit: Decimal
    status: LineStatus
    matched_record_ref: str
    matched_record_type: str
    partner_name: str
    matched_amount: Decimal | None
    score: int


EXPORT_HEADER = (
    "line_number",
    "date",
    "label",
    "debit",
    "credit",
    "status",
    "matched_record_ref",
    "matched_record_type",
    "partner_name",
    "matched_amount",
    "score",
)


def _matched_record(line, snapshot: CandidateSnapshot) -> tuple[str, str, Decimal | None]:
    if line.invoice_ids:
        invoices = [snapshot.invoice(invoice_id) for invoice_id in line.invoice_ids]
        refs = [inv.number if inv else str(invoice_id) for inv, invoice_id in zip(invoices, line.invoice_ids)]
        amount = sum((inv.amount for inv in invoices if inv), Decimal("0.00"))
        kind = "invoices" if len(line.invoice_ids) > 1 else "invoice"
        return ", ".join(refs), kind, amount
    if line.subscription_id:
        subscription = snapshot.subscription(line.subscription_id)
        name = subscription.name if subscription else str(line.subscription_id)
        return name, "subscription", subscription.monthly_amount if subscription else None
    if line.declaration_id:
        declaration = snapshot.declaration(line.declaration_id)
        name = declaration.name if declaration else str(line.declaration_id)
        return name, "declaration", declaration.estimated_amount if declaration else None
    if line.suggested_invoice_id:
        invoice = snapshot.invoice(line.suggested_invoice_id)
        return (invoice.number if invoice else str(line.suggested_invoice_id)), "suggestion", (
            invoice.amount if invoice else None
        )
    return "", "", None


def build_export_rows(working_set: WorkingSet, snapshot: CandidateSnapshot) -> list[ExportRow]:
    rows: list[ExportRow] = []
    for line in working_set.lines:
        ref, kind, amount = _matched_record(line, snapshot)
        txn = line.transaction
        rows.append(
            ExportRow(
                line_number=line.line_number,
                date=txn.date,
                label=txn.label,
                debit=txn.debit,
                credit=txn.credit,
                status=line.status,
                matched_record_ref=ref,
                matched_record_type=kind,
                partner_name=line.partner.name if line.partner else "",
                matched_amount=amount,
                score=line.score,
            )
        )
    return rows


def export_csv(rows: Sequence[ExportRow]) -> str:
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(EXPORT_HEADER)
    for row in rows:
        writer.writerow(
            [
                row.line_number,
                row.date.isoformat(),
                row.label,
                row.debit,
                row.credit,
                row.status.value,
                row.matched_record_ref,
                row.matched_record_type,
                row.partner_name,
                "" if row.matched_amount is None else row.matched_amount,
                row.score,
            ]
        )
    content = output.getvalue()
    output.close()
    return content


def batch_stats(working_set: WorkingSet) -> dict[str, int | float]:
    counts = working_set.counts()
    total = len(working_set.lines)
    matched = counts[LineStatus.MATCHED]
    return {
        "total": total,
        "matched": matched,
        "uncertain": counts[LineStatus.UNCERTAIN],
        "unmatched": counts[LineStatus.UNMATCHED],
        "match_rate": round(matched / total * 100, 2) if total else 0.0,
    }
