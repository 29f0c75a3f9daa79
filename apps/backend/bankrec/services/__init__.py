"""Services package."""

from bankrec.services.autosave import AutoSaver
from bankrec.services.engine_config import ReconciliationConfig, load_reconciliation_config
from bankrec.services.errors import (
    BatchAlreadyValidatedError,
    BatchNotFoundError,
    CascadeError,
    InvoiceAlreadyLinkedError,
    LineNotFoundError,
    PeriodAlreadyReconciledError,
    ReconciliationError,
    UnknownCandidateError,
)
from bankrec.services.overrides import ManualOverride, apply_override, reset_line
from bankrec.services.persistence import (
    LineFailure,
    SaveReport,
    ValidationReport,
    delete_batch,
    find_overlapping_validated_batch,
    save_working_set,
    unlink_line,
    validate_batch,
)
from bankrec.services.reconciliation import (
    ReconciliationSession,
    Strategy,
    batch_stats,
    build_export_rows,
    create_batch,
    export_csv,
    load_snapshot,
    load_working_set,
    run_strategy,
)
from bankrec.services.status import derive_status
from bankrec.services.working_set import (
    CandidateSnapshot,
    LineMutation,
    LineState,
    WorkingSet,
    apply_mutations,
)

__all__ = [
    "AutoSaver",
    "BatchAlreadyValidatedError",
    "BatchNotFoundError",
    "CandidateSnapshot",
    "CascadeError",
    "InvoiceAlreadyLinkedError",
    "LineFailure",
    "LineMutation",
    "LineNotFoundError",
    "LineState",
    "ManualOverride",
    "PeriodAlreadyReconciledError",
    "ReconciliationConfig",
    "ReconciliationError",
    "ReconciliationSession",
    "SaveReport",
    "Strategy",
    "UnknownCandidateError",
    "ValidationReport",
    "WorkingSet",
    "apply_mutations",
    "apply_override",
    "batch_stats",
    "build_export_rows",
    "create_batch",
    "delete_batch",
    "derive_status",
    "export_csv",
    "find_overlapping_validated_batch",
    "load_reconciliation_config",
    "load_snapshot",
    "load_working_set",
    "reset_line",
    "run_strategy",
    "save_working_set",
    "unlink_line",
    "validate_batch",
]
