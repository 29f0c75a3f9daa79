"""Reconciliation service exceptions."""

from datetime import date
from uuid import UUID


class ReconciliationError(Exception):
    """Base exception for reconciliation errors."""

    pass


class BatchNotFoundError(ReconciliationError):
    def __init__(self, batch_id: UUID | str) -> None:
        super().__init__(f"Reconciliation batch {batch_id} not found")
        self.batch_id = batch_id


class LineNotFoundError(ReconciliationError):
    def __init__(self, line_number: str) -> None:
        super().__init__(f"Reconciliation line {line_number} not found")
        self.line_number = line_number


class BatchAlreadyValidatedError(ReconciliationError):
    """Raised when a validated batch is validated again or mutated."""

    def __init__(self, batch_number: str) -> None:
        super().__init__(f"Reconciliation {batch_number} is already validated")
        self.batch_number = batch_number


class PeriodAlreadyReconciledError(ReconciliationError):
    """Raised when a batch period overlaps a batch that was already validated."""

    def __init__(self, batch_number: str, date_start: date, date_end: date) -> None:
        super().__init__(
            f"Period already reconciled by {batch_number} ({date_start.isoformat()} to {date_end.isoformat()})"
        )
        self.batch_number = batch_number
        self.date_start = date_start
        self.date_end = date_end


class InvoiceAlreadyLinkedError(ReconciliationError):
    """Raised when an invoice would be linked to a second line."""

    def __init__(self, invoice_id: UUID, line_number: str) -> None:
        super().__init__(f"Invoice {invoice_id} is already linked to line {line_number}")
        self.invoice_id = invoice_id
        self.line_number = line_number


class UnknownCandidateError(ReconciliationError):
    """Raised when a manual override references an id missing from the snapshot."""

    def __init__(self, kind: str, candidate_id: UUID) -> None:
        super().__init__(f"Unknown {kind} {candidate_id}")
        self.kind = kind
        self.candidate_id = candidate_id


class CascadeError(ReconciliationError):
    """Raised when one step of an unlink/delete cascade fails.

    Steps are retryable: each one deletes or updates rows keyed by id.
    """

    def __init__(self, step: str, line_number: str | None, cause: Exception) -> None:
        target = f" for line {line_number}" if line_number else ""
        super().__init__(f"Cascade step '{step}' failed{target}: {cause}")
        self.step = step
        self.line_number = line_number


class LineNumberInUseError(ReconciliationError):
    """Raised when an imported line number already belongs to another line."""

    def __init__(self, line_numbers: list[str]) -> None:
        super().__init__(f"Line numbers already in use: {', '.join(line_numbers)}")
        self.line_numbers = line_numbers
