"""Rule evaluator: scores one (transaction, invoice) pair."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

from bankrec.logger import get_logger
from bankrec.models import InvoiceCategory, RuleType
from bankrec.services.engine_config import ReconciliationConfig
from bankrec.services.keywords import contains_any, normalize_label
from bankrec.services.working_set import InvoiceCandidate, Rule, Transaction

logger = get_logger(__name__)

# Rule types scored against invoices; subscription/declaration rules belong to the recurring matcher
INVOICE_RULE_TYPES = (
    RuleType.AMOUNT,
    RuleType.DATE,
    RuleType.LABEL,
    RuleType.PARTNER,
    RuleType.TRANSACTION_TYPE,
    RuleType.CUSTOM,
)

SUPPLIER_MONTHLY = "supplier_monthly"

_DIGITS = re.compile(r"\d+")
_MALFORMED = (KeyError, TypeError, ValueError, AttributeError, InvalidOperation)


class MalformedRuleError(ValueError):
    """Raised internally when a rule condition cannot be interpreted."""


def amount_difference(transaction: Transaction, invoice: InvoiceCandidate) -> Decimal:
    return abs(abs(transaction.amount) - abs(invoice.amount))


def amounts_match(transaction: Transaction, invoice: InvoiceCandidate, tolerance: Decimal) -> bool:
    return amount_difference(transaction, invoice) < tolerance


def days_between(transaction: Transaction, invoice: InvoiceCandidate) -> int:
    return abs((transaction.date - invoice.emission_date).days)


def same_month(transaction: Transaction, invoice: InvoiceCandidate) -> bool:
    return (transaction.date.year, transaction.date.month) == (
        invoice.emission_date.year,
        invoice.emission_date.month,
    )


def type_matches(transaction: Transaction, invoice: InvoiceCandidate) -> bool:
    """Credits pay sales invoices, debits pay purchase invoices."""
    if transaction.credit > 0 and invoice.category is InvoiceCategory.SALES:
        return True
    return transaction.debit > 0 and invoice.category.is_purchase


def partner_name_matches(normalized_label: str, partner_name: str) -> bool:
    """Label contains the partner's name, or one of its words longer than three characters."""
    name = normalize_label(partner_name)
    if not name:
        return False
    if name in normalized_label:
        return True
    return any(len(word) > 3 and word in normalized_label for word in name.split())


def invoice_number_matches(normalized_label: str, invoice_number: str) -> bool:
    """Digits of the invoice number appear in the label once spaces are removed."""
    digits = "".join(_DIGITS.findall(invoice_number or ""))
    if len(digits) < 3:
        return False
    return digits in normalized_label.replace(" ", "")


def _decimal(condition: Mapping[str, Any], key: str, default: Decimal) -> Decimal:
    value = condition.get(key)
    if value is None:
        return default
    return Decimal(str(value))


def _keywords(condition: Mapping[str, Any], key: str = "keywords") -> list[str]:
    value = condition.get(key) or []
    if isinstance(value, str):
        return [part for part in value.split(",") if part.strip()]
    if not isinstance(value, list):
        raise MalformedRuleError(f"{key} must be a list of strings")
    return [str(item) for item in value]


def _amount_rule(rule, transaction, invoice, label, config) -> int:
    tolerance = _decimal(rule.condition, "tolerance", config.amount_tolerance)
    return rule.score if amount_difference(transaction, invoice) <= tolerance else 0


def _date_rule(rule, transaction, invoice, label, config) -> int:
    max_days = int(rule.condition["max_days"])
    return rule.score if days_between(transaction, invoice) <= max_days else 0


def _label_rule(rule, transaction, invoice, label, config) -> int:
    return rule.score if contains_any(label, _keywords(rule.condition)) else 0


def _partner_rule(rule, transaction, invoice, label, config) -> int:
    return rule.score if partner_name_matches(label, invoice.partner_name) else 0


def _transaction_type_rule(rule, transaction, invoice, label, config) -> int:
    return rule.score if type_matches(transaction, invoice) else 0


def _supplier_keyword(condition: Mapping[str, Any]) -> str:
    if condition.get("kind") != SUPPLIER_MONTHLY:
        raise MalformedRuleError(f"unsupported custom rule kind: {condition.get('kind')!r}")
    keyword = normalize_label(condition["supplier_keyword"])
    if not keyword:
        raise MalformedRuleError("supplier_keyword is empty")
    return keyword


def _custom_rule(rule, transaction, invoice, label, config) -> int:
    condition = rule.condition
    keyword = _supplier_keyword(condition)
    if keyword not in label:
        return 0
    tolerance = _decimal(condition, "tolerance", config.amount_tolerance)
    if amount_difference(transaction, invoice) > tolerance:
        return 0
    if condition.get("same_month", True) and not same_month(transaction, invoice):
        return 0
    score = rule.score
    bonus_keywords = _keywords(condition)
    if bonus_keywords and contains_any(label, bonus_keywords):
        score += int(condition.get("keyword_bonus", 0))
    return score


RuleScorer = Callable[[Rule, Transaction, InvoiceCandidate, str, ReconciliationConfig], int]

RULE_SCORERS: dict[RuleType, RuleScorer] = {
    RuleType.AMOUNT: _amount_rule,
    RuleType.DATE: _date_rule,
    RuleType.LABEL: _label_rule,
    RuleType.PARTNER: _partner_rule,
    RuleType.TRANSACTION_TYPE: _transaction_type_rule,
    RuleType.CUSTOM: _custom_rule,
}


def _warn_malformed(rule: Rule, error: Exception) -> None:
    logger.warning(
        "Ignoring malformed reconciliation rule",
        rule_id=str(rule.id),
        rule_name=rule.name,
        rule_type=rule.rule_type.value,
        error=str(error),
        error_type=type(error).__name__,
    )


def is_excluded(transaction: Transaction, invoice: InvoiceCandidate, rules: Sequence[Rule]) -> bool:
    """Hard veto from same-supplier, same-month custom rules.

    When the label names the rule's supplier but the invoice was emitted in
    another month, the invoice is never proposed for this transaction.
    """
    label = normalize_label(transaction.label)
    for rule in rules:
        if rule.rule_type is not RuleType.CUSTOM:
            continue
        try:
            keyword = _supplier_keyword(rule.condition)
            enforce_month = bool(rule.condition.get("same_month", True))
        except _MALFORMED as e:
            _warn_malformed(rule, e)
            continue
        if enforce_month and keyword in label and not same_month(transaction, invoice):
            return True
    return False


def default_score(
    transaction: Transaction,
    invoice: InvoiceCandidate,
    label: str,
    config: ReconciliationConfig,
) -> int:
    """Fixed scoring table used when no invoice rule is active."""
    score = 0
    if type_matches(transaction, invoice):
        score += config.type_match_score
    days = days_between(transaction, invoice)
    for max_days, band_score in config.date_band_scores:
        if days <= max_days:
            score += band_score
            break
    if partner_name_matches(label, invoice.partner_name):
        score += config.partner_name_score
    if invoice_number_matches(label, invoice.number):
        score += config.invoice_number_score
    if contains_any(label, config.payment_keywords):
        score += config.payment_keyword_score
    return score


def score_pair(
    transaction: Transaction,
    invoice: InvoiceCandidate,
    rules: Sequence[Rule],
    config: ReconciliationConfig,
) -> int | None:
    """Score a transaction against one invoice.

    Returns None when the amounts differ or a custom rule vetoes the pair.
    ``rules`` are the active invoice rules in priority order; when empty the
    default table applies.
    """
    if not amounts_match(transaction, invoice, config.amount_tolerance):
        return None
    if is_excluded(transaction, invoice, rules):
        return None

    label = normalize_label(transaction.label)
    score = config.base_amount_score
    if not rules:
        return score + default_score(transaction, invoice, label, config)

    for rule in rules:
        scorer = RULE_SCORERS.get(rule.rule_type)
        if scorer is None:
            continue
        try:
            score += scorer(rule, transaction, invoice, label, config)
        except _MALFORMED as e:
            _warn_malformed(rule, e)
    return score
