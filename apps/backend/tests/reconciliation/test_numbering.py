"""Batch and line numbering."""

import re
from datetime import date

import pytest

from bankrec.models import ReconciliationBatch
from bankrec.services.numbering import line_number, next_batch_number


def test_line_number_format():
    number = line_number(date(2024, 1, 15), 7)
    assert re.fullmatch(r"RL-20240115-[A-Z0-9]{5}-0007", number)


def test_line_numbers_are_unique_per_call():
    numbers = {line_number(date(2024, 1, 15), 1) for _ in range(20)}
    assert len(numbers) > 1


def test_line_number_prefix_override():
    assert line_number(date(2024, 3, 1), 12, prefix="BQ").startswith("BQ-20240301-")


@pytest.mark.asyncio
async def test_batch_number_sequence(db):
    assert await next_batch_number(db, date(2024, 1, 1)) == "RAP-2401-01"

    for number in ("RAP-2401-01", "RAP-2401-03", "RAP-2402-01"):
        db.add(ReconciliationBatch(number=number, date_start=date(2024, 1, 1), date_end=date(2024, 1, 31)))
    await db.flush()

    # Follows the highest sequence so a deleted batch never frees its number
    assert await next_batch_number(db, date(2024, 1, 20)) == "RAP-2401-04"
    assert await next_batch_number(db, date(2024, 2, 1)) == "RAP-2402-02"
    assert await next_batch_number(db, date(2024, 3, 1)) == "RAP-2403-01"
