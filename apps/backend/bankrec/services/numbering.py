"""Batch and line number generation."""

from __future__ import annotations

import secrets
import string
from datetime import date

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bankrec.config import settings
from bankrec.models import ReconciliationBatch

_ALPHABET = string.ascii_uppercase + string.digits


def random_token(length: int = 5) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def line_number(transaction_date: date, sequence: int, *, prefix: str | None = None) -> str:
    """RL-YYYYMMDD-XXXXX-NNNN; generated once at import and never regenerated."""
    prefix = prefix or settings.line_number_prefix
    return f"{prefix}-{transaction_date:%Y%m%d}-{random_token()}-{sequence:04d}"


async def next_batch_number(db: AsyncSession, period_start: date, *, prefix: str | None = None) -> str:
    """RAP-YYMM-NN, NN following the highest sequence already used that month."""
    prefix = prefix or settings.batch_number_prefix
    stem = f"{prefix}-{period_start:%y%m}-"
    result = await db.execute(select(ReconciliationBatch.number).where(ReconciliationBatch.number.like(f"{stem}%")))
    sequences = [int(number[len(stem) :]) for number in result.scalars() if number[len(stem) :].isdigit()]
    return f"{stem}{max(sequences, default=0) + 1:02d}"
