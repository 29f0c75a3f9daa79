"""VAT parsing and split."""

from decimal import Decimal

import pytest

from bankrec.services.vat import parse_vat_rate, split_amount, split_for_rate_text


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("20%", Decimal("20")),
        ("5,5 %", Decimal("5.5")),
        ("TVA 2.1", Decimal("2.1")),
        ("taux normal", Decimal("20")),
        ("Réduit", Decimal("5.5")),
        ("super réduit", Decimal("2.1")),
        ("intermédiaire", Decimal("10")),
        ("exonéré", Decimal("0")),
        ("", None),
        (None, None),
        ("inconnu", None),
    ],
)
def test_parse_vat_rate(raw, expected):
    assert parse_vat_rate(raw) == expected


def test_split_rounds_half_up():
    split = split_amount(Decimal("-49.90"), Decimal("20"))
    assert split.total_ttc == Decimal("49.90")
    assert split.total_ht == Decimal("41.58")
    assert split.total_tva == Decimal("8.32")


def test_split_parts_add_up():
    split = split_amount(Decimal("100.00"), Decimal("5.5"))
    assert split.total_ht + split.total_tva == split.total_ttc
    assert split.total_ht == Decimal("94.79")


def test_zero_rate():
    split = split_amount(Decimal("12.00"), Decimal("0"))
    assert split.total_ht == Decimal("12.00")
    assert split.total_tva == Decimal("0.00")


def test_unparseable_rate_gives_no_split():
    assert split_for_rate_text(Decimal("10.00"), "n/a") is None
    assert split_for_rate_text(Decimal("12.00"), "20 %").total_ht == Decimal("10.00")
