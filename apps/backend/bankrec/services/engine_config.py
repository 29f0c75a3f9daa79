"""Runtime configuration for the matching engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path

import yaml

from bankrec.config import settings
from bankrec.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReconciliationConfig:
    """Scores, thresholds and tolerances used by the matchers."""

    amount_tolerance: Decimal = Decimal("0.01")
    base_amount_score: int = 40
    matched_threshold: int = 70

    # Fallback table used when no invoice scoring rule is active
    type_match_score: int = 10
    date_band_scores: tuple[tuple[int, int], ...] = ((0, 30), (3, 25), (7, 20), (30, 10), (60, 5))
    partner_name_score: int = 15
    invoice_number_score: int = 10
    payment_keyword_score: int = 5
    payment_keywords: tuple[str, ...] = field(default_factory=lambda: tuple(settings.payment_keywords))

    # Subscription / declaration direct path
    recurring_amount_score: int = 90
    recurring_keyword_score: int = 75

    # Multi-invoice combinations
    combination_score: int = 100
    max_combination_size: int = 4
    default_payment_delay_days: int = 30
    default_payment_gap_days: int = 5


DEFAULT_CONFIG = ReconciliationConfig()

_config_cache: ReconciliationConfig | None = None


def _from_mapping(raw: dict, base: ReconciliationConfig) -> ReconciliationConfig:
    scoring = raw.get("scoring", {}) or {}
    fallback = raw.get("fallback", {}) or {}
    recurring = raw.get("recurring", {}) or {}
    combinations = raw.get("combinations", {}) or {}

    date_bands = fallback.get("date_bands")
    return ReconciliationConfig(
        amount_tolerance=Decimal(str(scoring.get("amount_tolerance", base.amount_tolerance))),
        base_amount_score=int(scoring.get("base_amount_score", base.base_amount_score)),
        matched_threshold=int(scoring.get("matched_threshold", base.matched_threshold)),
        type_match_score=int(fallback.get("type_match", base.type_match_score)),
        date_band_scores=(
            tuple((int(band["max_days"]), int(band["score"])) for band in date_bands)
            if date_bands
            else base.date_band_scores
        ),
        partner_name_score=int(fallback.get("partner_name", base.partner_name_score)),
        invoice_number_score=int(fallback.get("invoice_number", base.invoice_number_score)),
        payment_keyword_score=int(fallback.get("payment_keyword", base.payment_keyword_score)),
        payment_keywords=tuple(fallback.get("payment_keywords", base.payment_keywords)),
        recurring_amount_score=int(recurring.get("amount", base.recurring_amount_score)),
        recurring_keyword_score=int(recurring.get("keyword", base.recurring_keyword_score)),
        combination_score=int(combinations.get("score", base.combination_score)),
        max_combination_size=int(combinations.get("max_size", base.max_combination_size)),
        default_payment_delay_days=int(combinations.get("payment_delay_days", base.default_payment_delay_days)),
        default_payment_gap_days=int(combinations.get("payment_gap_days", base.default_payment_gap_days)),
    )


def load_reconciliation_config(
    force_reload: bool = False,
    config_path: Path | None = None,
) -> ReconciliationConfig:
    """Load engine configuration from YAML if available.

    Caches the result to avoid repeated disk I/O. Environment variables
    RECONCILIATION_MATCHED_THRESHOLD and RECONCILIATION_AMOUNT_TOLERANCE
    override the file.
    """
    global _config_cache
    if _config_cache is not None and not force_reload:
        return _config_cache

    config = DEFAULT_CONFIG
    path = config_path or settings.reconciliation_config_path

    if path.exists():
        try:
            raw = yaml.safe_load(path.read_text()) or {}
            config = _from_mapping(raw, config)
        except (yaml.YAMLError, AttributeError, KeyError, TypeError, ValueError, ArithmeticError) as e:
            logger.warning(
                "Failed to load reconciliation config - using defaults",
                config_path=str(path),
                error=str(e),
                error_type=type(e).__name__,
            )

    threshold_env = os.getenv("RECONCILIATION_MATCHED_THRESHOLD")
    tolerance_env = os.getenv("RECONCILIATION_AMOUNT_TOLERANCE")
    if threshold_env:
        config = replace(config, matched_threshold=int(threshold_env))
    if tolerance_env:
        config = replace(config, amount_tolerance=Decimal(tolerance_env))

    _config_cache = config
    return config
