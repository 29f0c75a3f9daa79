"""VAT split for subscription payments."""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from bankrec.services.keywords import normalize_label

CENT = Decimal("0.01")

# Named French VAT rates, matched on the normalized text
NAMED_RATES: tuple[tuple[str, Decimal], ...] = (
    ("SUPER REDUIT", Decimal("2.1")),
    ("INTERMEDIAIRE", Decimal("10")),
    ("REDUIT", Decimal("5.5")),
    ("NORMAL", Decimal("20")),
    ("EXONERE", Decimal("0")),
)

_NUMBER = re.compile(r"(\d+(?:[.,]\d+)?)")


@dataclass(frozen=True)
class VatSplit:
    total_ht: Decimal
    total_tva: Decimal
    total_ttc: Decimal


def parse_vat_rate(raw: str | None) -> Decimal | None:
    """Percentage from free text: "20%", "5,5 %", "normal", "exonéré"..."""
    if raw is None or not raw.strip():
        return None
    number = _NUMBER.search(raw)
    if number:
        return Decimal(number.group(1).replace(",", "."))
    normalized = normalize_label(raw)
    for name, rate in NAMED_RATES:
        if name in normalized:
            return rate
    return None


def split_amount(amount: Decimal, rate_percent: Decimal) -> VatSplit:
    """Split a tax-inclusive amount, rounding half-up to cents."""
    ttc = abs(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    ht = (ttc / (1 + rate_percent / 100)).quantize(CENT, rounding=ROUND_HALF_UP)
    return VatSplit(total_ht=ht, total_tva=ttc - ht, total_ttc=ttc)


def split_for_rate_text(amount: Decimal, raw_rate: str | None) -> VatSplit | None:
    rate = parse_vat_rate(raw_rate)
    if rate is None:
        return None
    return split_amount(amount, rate)
