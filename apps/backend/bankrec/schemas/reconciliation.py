"""Pydantic schemas for reconciliation API."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bankrec.models import BatchStatus, LineStatus, PartnerCategory
from bankrec.services.reconciliation import Strategy


class TransactionIn(BaseModel):
    """Parsed bank transaction handed over by the import step."""

    transaction_date: date
    label: str = Field(..., min_length=1, max_length=1000)
    debit: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    credit: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    amount: Decimal | None = Field(default=None, decimal_places=2)
    line_number: str | None = Field(default=None, min_length=1, max_length=64)

    @field_validator("label")
    @classmethod
    def strip_label(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("label must not be blank")
        return stripped

    @model_validator(mode="after")
    def check_amounts(self) -> "TransactionIn":
        if self.debit > 0 and self.credit > 0:
            raise ValueError("a transaction is either a debit or a credit")
        signed = self.credit - self.debit
        if self.amount is None:
            self.amount = signed
        elif (self.debit > 0 or self.credit > 0) and abs(self.amount - signed) >= Decimal("0.01"):
            raise ValueError("amount must equal credit - debit")
        return self


class BatchCreateRequest(BaseModel):
    """Request body to import a bank statement period."""

    date_start: date
    date_end: date
    transactions: list[TransactionIn] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_period(self) -> "BatchCreateRequest":
        if self.date_end < self.date_start:
            raise ValueError("date_end must be on or after date_start")
        numbers = [txn.line_number for txn in self.transactions if txn.line_number]
        if len(numbers) != len(set(numbers)):
            raise ValueError("line numbers must be unique within a batch")
        return self


class LineResponse(BaseModel):
    """Reconciliation line state."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    line_number: str
    position: int
    transaction_date: date
    label: str
    debit: Decimal
    credit: Decimal
    amount: Decimal
    status: LineStatus
    invoice_ids: list[UUID] = Field(default_factory=list)
    suggested_invoice_id: UUID | None = None
    subscription_id: UUID | None = None
    declaration_id: UUID | None = None
    partner_id: UUID | None = None
    partner_name: str | None = None
    partner_category: PartnerCategory | None = None
    score: int
    notes: str | None = None
    total_ht: Decimal | None = None
    total_tva: Decimal | None = None
    total_ttc: Decimal | None = None


class BatchResponse(BaseModel):
    """Reconciliation batch summary."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    number: str
    date_start: date
    date_end: date
    status: BatchStatus
    total_lines: int
    matched_lines: int
    validated_at: datetime | None = None
    created_at: datetime


class BatchDetailResponse(BatchResponse):
    """Batch with its lines in import order."""

    lines: list[LineResponse] = Field(default_factory=list)


class BatchListResponse(BaseModel):
    items: list[BatchResponse]
    total: int  # All batches, not just this page


class MatchRequest(BaseModel):
    """Request body to run a matching strategy."""

    strategy: Strategy = Strategy.ALL


class LineFailureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    line_number: str
    step: str
    error: str


class MatchResponse(BaseModel):
    """Result of a matching run."""

    strategy: Strategy
    mutations: int
    touched_lines: list[str]
    matched: int
    uncertain: int
    unmatched: int
    saved: int
    failures: list[LineFailureResponse] = Field(default_factory=list)


class LineOverrideRequest(BaseModel):
    """Manual edit of a line. Omitted fields are left unchanged; null detaches."""

    invoice_ids: list[UUID] | None = None
    subscription_id: UUID | None = None
    declaration_id: UUID | None = None
    partner_id: UUID | None = None
    notes: str | None = Field(default=None, max_length=2000)

    @model_validator(mode="after")
    def check_not_empty(self) -> "LineOverrideRequest":
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self


class ResetResponse(BaseModel):
    line: LineResponse
    reversed_record: bool


class ValidationReportResponse(BaseModel):
    """Outcome of a batch validation."""

    model_config = ConfigDict(from_attributes=True)

    batch_number: str
    validated: bool
    processed: int
    invoices_linked: int
    payments_created: int
    failures: list[LineFailureResponse] = Field(default_factory=list)


class BatchStatsResponse(BaseModel):
    """Line counts and match rate of a batch."""

    total: int
    matched: int
    uncertain: int
    unmatched: int
    match_rate: float
