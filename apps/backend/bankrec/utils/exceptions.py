"""HTTP translation of reconciliation service errors for FastAPI routers."""

from typing import NoReturn

from fastapi import HTTPException, status

from bankrec.services.errors import (
    BatchAlreadyValidatedError,
    BatchNotFoundError,
    CascadeError,
    InvoiceAlreadyLinkedError,
    LineNotFoundError,
    LineNumberInUseError,
    PeriodAlreadyReconciledError,
    ReconciliationError,
    UnknownCandidateError,
)

# Checked in order; first isinstance match wins
ERROR_STATUS: tuple[tuple[type[ReconciliationError], int], ...] = (
    (BatchNotFoundError, status.HTTP_404_NOT_FOUND),
    (LineNotFoundError, status.HTTP_404_NOT_FOUND),
    (UnknownCandidateError, status.HTTP_400_BAD_REQUEST),
    (BatchAlreadyValidatedError, status.HTTP_409_CONFLICT),
    (PeriodAlreadyReconciledError, status.HTTP_409_CONFLICT),
    (InvoiceAlreadyLinkedError, status.HTTP_409_CONFLICT),
    (LineNumberInUseError, status.HTTP_409_CONFLICT),
    (CascadeError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(exc: ReconciliationError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def raise_http_error(exc: ReconciliationError) -> NoReturn:
    """Re-raise a service error as an HTTPException carrying its message."""
    raise HTTPException(status_code=status_for(exc), detail=str(exc)) from exc
