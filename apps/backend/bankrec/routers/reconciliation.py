"""Reconciliation API router."""

from io import StringIO
from uuid import UUID

from fastapi import APIRouter, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy import func, select

from bankrec.deps import DbSession, EngineConfig
from bankrec.logger import bind_batch_context, get_logger
from bankrec.models import LineStatus, ReconciliationBatch, ReconciliationLine
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
    ValidationReportResponse,
)
from bankrec.services.errors import BatchNotFoundError, CascadeError, ReconciliationError
from bankrec.services.overrides import ManualOverride
from bankrec.services.persistence import delete_batch as delete_batch_service
from bankrec.services.persistence import get_batch
from bankrec.services.persistence import validate_batch as validate_batch_service
from bankrec.services.reconciliation import (
    ReconciliationSession,
    batch_stats,
    build_export_rows,
    create_batch as create_batch_service,
    export_csv,
    load_snapshot,
    load_working_set,
)
from bankrec.utils import raise_http_error

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])
logger = get_logger(__name__)


async def _open_session(db: DbSession, batch_id: UUID, config: EngineConfig) -> ReconciliationSession:
    bind_batch_context(batch_id=batch_id)
    try:
        session = await ReconciliationSession.open(db, batch_id, config=config)
    except BatchNotFoundError as exc:
        raise_http_error(exc)
    bind_batch_context(batch_number=session.batch.number)
    return session


async def _line_response(db: DbSession, batch_id: UUID, line_number: str) -> LineResponse:
    result = await db.execute(
        select(ReconciliationLine)
        .where(ReconciliationLine.batch_id == batch_id)
        .where(ReconciliationLine.line_number == line_number)
        .execution_options(populate_existing=True)
    )
    return LineResponse.model_validate(result.scalar_one())


@router.post("/batches", response_model=BatchDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_batch(payload: BatchCreateRequest, db: DbSession) -> BatchDetailResponse:
    """Import a bank statement period; every line starts unmatched."""
    try:
        batch = await create_batch_service(db, payload.date_start, payload.date_end, payload.transactions)
    except ReconciliationError as exc:
        raise_http_error(exc)
    await db.commit()
    batch = await get_batch(db, batch.id, with_lines=True)
    return BatchDetailResponse.model_validate(batch)


@router.get("/batches", response_model=BatchListResponse)
async def list_batches(
    db: DbSession,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> BatchListResponse:
    total = (await db.execute(select(func.count()).select_from(ReconciliationBatch))).scalar_one()
    result = await db.execute(
        select(ReconciliationBatch)
        .order_by(ReconciliationBatch.date_start.desc(), ReconciliationBatch.number.desc())
        .limit(limit)
        .offset(offset)
    )
    items = [BatchResponse.model_validate(batch) for batch in result.scalars()]
    return BatchListResponse(items=items, total=total)


@router.get("/batches/{batch_id}", response_model=BatchDetailResponse)
async def get_batch_detail(batch_id: UUID, db: DbSession) -> BatchDetailResponse:
    try:
        batch = await get_batch(db, batch_id, with_lines=True)
    except BatchNotFoundError as exc:
        raise_http_error(exc)
    return BatchDetailResponse.model_validate(batch)


@router.get("/batches/{batch_id}/stats", response_model=BatchStatsResponse)
async def get_batch_stats(batch_id: UUID, db: DbSession) -> BatchStatsResponse:
    try:
        _, working_set = await load_working_set(db, batch_id)
    except BatchNotFoundError as exc:
        raise_http_error(exc)
    return BatchStatsResponse(**batch_stats(working_set))


@router.post("/batches/{batch_id}/match", response_model=MatchResponse)
async def run_matching(
    batch_id: UUID, payload: MatchRequest, db: DbSession, config: EngineConfig
) -> MatchResponse:
    """Run a matching strategy over the batch and save the result."""
    session = await _open_session(db, batch_id, config)
    try:
        mutations = session.run(payload.strategy)
    except ReconciliationError as exc:
        raise_http_error(exc)

    report = await session.flush()
    await db.commit()
    logger.info("Matching strategy applied", strategy=payload.strategy, mutations=len(mutations))

    counts = session.working_set.counts()
    touched = list(dict.fromkeys(mutation.line_number for mutation in mutations))
    return MatchResponse(
        strategy=payload.strategy,
        mutations=len(mutations),
        touched_lines=touched,
        matched=counts[LineStatus.MATCHED],
        uncertain=counts[LineStatus.UNCERTAIN],
        unmatched=counts[LineStatus.UNMATCHED],
        saved=report.saved if report else 0,
        failures=[LineFailureResponse.model_validate(f) for f in (report.failures if report else [])],
    )


@router.patch("/batches/{batch_id}/lines/{line_number}", response_model=LineResponse)
async def override_line(
    batch_id: UUID,
    line_number: str,
    payload: LineOverrideRequest,
    db: DbSession,
    config: EngineConfig,
) -> LineResponse:
    """Manually link or detach invoices, a subscription, a declaration, a partner or notes."""
    bind_batch_context(line_number=line_number)
    session = await _open_session(db, batch_id, config)
    override = ManualOverride.from_changes(line_number, payload.model_dump(exclude_unset=True))
    try:
        session.override(override)
    except ReconciliationError as exc:
        raise_http_error(exc)

    await session.flush()
    await db.commit()
    return await _line_response(db, batch_id, line_number)


@router.post("/batches/{batch_id}/lines/{line_number}/reset", response_model=ResetResponse)
async def reset_line(batch_id: UUID, line_number: str, db: DbSession, config: EngineConfig) -> ResetResponse:
    """Clear every link on a line and reverse its invoice and payment write-back."""
    bind_batch_context(line_number=line_number)
    session = await _open_session(db, batch_id, config)
    try:
        reversed_record = await session.reset(line_number)
    except CascadeError as exc:
        await db.rollback()
        raise_http_error(exc)
    except ReconciliationError as exc:
        raise_http_error(exc)

    await db.commit()
    return ResetResponse(line=await _line_response(db, batch_id, line_number), reversed_record=reversed_record)


@router.post("/batches/{batch_id}/validate", response_model=ValidationReportResponse)
async def validate_batch(batch_id: UUID, db: DbSession) -> ValidationReportResponse:
    """Write links back to invoices and payments and close the batch."""
    bind_batch_context(batch_id=batch_id)
    try:
        report = await validate_batch_service(db, batch_id)
    except ReconciliationError as exc:
        raise_http_error(exc)

    await db.commit()
    return ValidationReportResponse.model_validate(report)


@router.delete("/batches/{batch_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_batch(batch_id: UUID, db: DbSession) -> None:
    """Delete a batch after reversing every line's downstream writes."""
    bind_batch_context(batch_id=batch_id)
    try:
        await delete_batch_service(db, batch_id)
    except CascadeError as exc:
        await db.rollback()
        raise_http_error(exc)
    except ReconciliationError as exc:
        raise_http_error(exc)
    await db.commit()


@router.get("/batches/{batch_id}/export")
async def export_batch(batch_id: UUID, db: DbSession) -> StreamingResponse:
    """Export the batch as CSV."""
    try:
        batch, working_set = await load_working_set(db, batch_id)
    except BatchNotFoundError as exc:
        raise_http_error(exc)
    snapshot = await load_snapshot(db)
    content = export_csv(build_export_rows(working_set, snapshot))
    return StreamingResponse(
        StringIO(content),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={batch.number}.csv"},
    )
