"""Pydantic schemas package."""

from bankrec.schemas.reconciliation import (
    BatchCreateRequest,
    BatchDetailResponse,
    BatchListResponse,
    BatchResponse,
    BatchStatsResponse,
    LineFailureResponse,
    LineOverrideRequest,
    LineResponse,
    MatchRequest,
    MatchResponse,
    ResetResponse,
    TransactionIn,
    ValidationReportResponse,
)

__all__ = [
    "BatchCreateRequest",
    "BatchDetailResponse",
    "BatchListResponse",
    "BatchResponse",
    "BatchStatsResponse",
    "LineFailureResponse",
    "LineOverrideRequest",
    "LineResponse",
    "MatchRequest",
    "MatchResponse",
    "ResetResponse",
    "TransactionIn",
    "ValidationReportResponse",
]
