"""Subscription / declaration matcher."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from bankrec.logger import get_logger
from bankrec.models import RuleType
from bankrec.services.engine_config import ReconciliationConfig
from bankrec.services.keywords import contains_any, matches_expression, normalize_label
from bankrec.services.working_set import (
    CandidateSnapshot,
    DeclarationCandidate,
    LineMutation,
    LineState,
    Rule,
    SubscriptionCandidate,
    Transaction,
    WorkingSet,
)

logger = get_logger(__name__)

SOURCE = "recurring"

_MALFORMED = (KeyError, TypeError, ValueError, AttributeError, InvalidOperation)


@dataclass(frozen=True)
class RecurringMatch:
    """A subscription or a declaration retained for one transaction."""

    score: int
    subscription_id: UUID | None = None
    declaration_id: UUID | None = None
    partner_id: UUID | None = None


def _amount_close(value: Decimal, expected: Decimal, tolerance: Decimal) -> bool:
    return abs(abs(value) - abs(expected)) < tolerance


def _any_expression_matches(label: str, expressions: list[str | None]) -> bool:
    return any(expr and expr.strip() and matches_expression(label, expr) for expr in expressions)


def match_subscription(
    transaction: Transaction,
    snapshot: CandidateSnapshot,
    config: ReconciliationConfig,
) -> RecurringMatch | None:
    """Monthly amount first, across every subscription; then keywords."""
    for subscription in snapshot.subscriptions:
        if subscription.monthly_amount is None:
            continue
        if _amount_close(transaction.amount, subscription.monthly_amount, config.amount_tolerance):
            return _subscription_match(subscription, config.recurring_amount_score)

    for subscription in snapshot.subscriptions:
        partner = snapshot.partner(subscription.partner_id)
        expressions = [subscription.keywords, subscription.name, partner.name if partner else None]
        if _any_expression_matches(transaction.label, expressions):
            return _subscription_match(subscription, config.recurring_keyword_score)
    return None


def _subscription_match(subscription: SubscriptionCandidate, score: int) -> RecurringMatch:
    return RecurringMatch(score=score, subscription_id=subscription.id, partner_id=subscription.partner_id)


def match_declaration(
    transaction: Transaction,
    snapshot: CandidateSnapshot,
    config: ReconciliationConfig,
) -> RecurringMatch | None:
    """Keyword match on name, organization or partner; estimated amount must agree when set."""
    for declaration in snapshot.declarations:
        partner = snapshot.partner(declaration.partner_id)
        expressions = [
            declaration.keywords,
            declaration.name,
            declaration.organization,
            partner.name if partner else None,
        ]
        if not _any_expression_matches(transaction.label, expressions):
            continue
        if declaration.estimated_amount is not None:
            if not _amount_close(transaction.amount, declaration.estimated_amount, config.amount_tolerance):
                continue
            return _declaration_match(declaration, config.recurring_amount_score)
        return _declaration_match(declaration, config.recurring_keyword_score)
    return None


def _declaration_match(declaration: DeclarationCandidate, score: int) -> RecurringMatch:
    return RecurringMatch(score=score, declaration_id=declaration.id, partner_id=declaration.partner_id)


def _rule_target(rule: Rule, snapshot: CandidateSnapshot) -> RecurringMatch:
    condition: Mapping[str, Any] = rule.condition
    if rule.rule_type is RuleType.SUBSCRIPTION:
        target = snapshot.subscription(UUID(str(condition["subscription_id"])))
        if target is None:
            raise ValueError("subscription_id does not reference an active subscription")
        return RecurringMatch(score=rule.score, subscription_id=target.id, partner_id=target.partner_id)
    target = snapshot.declaration(UUID(str(condition["declaration_id"])))
    if target is None:
        raise ValueError("declaration_id does not reference an active declaration")
    return RecurringMatch(score=rule.score, declaration_id=target.id, partner_id=target.partner_id)


def _rule_holds(rule: Rule, transaction: Transaction, config: ReconciliationConfig) -> bool:
    condition = rule.condition
    keywords = condition.get("keywords") or []
    if isinstance(keywords, str):
        keywords = [part for part in keywords.split(",") if part.strip()]
    amount = condition.get("amount")
    if not keywords and amount is None:
        raise ValueError("rule needs keywords or an amount")

    direction = condition.get("transaction_type", "any")
    if direction not in ("debit", "credit", "any"):
        raise ValueError(f"unsupported transaction_type: {direction!r}")
    if direction == "debit" and transaction.debit <= 0:
        return False
    if direction == "credit" and transaction.credit <= 0:
        return False

    if keywords and not contains_any(normalize_label(transaction.label), keywords):
        return False
    if amount is not None:
        tolerance = Decimal(str(condition.get("tolerance", config.amount_tolerance)))
        return abs(abs(transaction.amount) - abs(Decimal(str(amount)))) <= tolerance
    return True


def match_by_rules(
    transaction: Transaction,
    snapshot: CandidateSnapshot,
    config: ReconciliationConfig,
) -> RecurringMatch | None:
    """Highest-scoring subscription/declaration rule; priority order breaks ties."""
    best: RecurringMatch | None = None
    for rule in snapshot.active_rules(RuleType.SUBSCRIPTION, RuleType.DECLARATION):
        try:
            if not _rule_holds(rule, transaction, config):
                continue
            candidate = _rule_target(rule, snapshot)
        except _MALFORMED as e:
            logger.warning(
                "Ignoring malformed reconciliation rule",
                rule_id=str(rule.id),
                rule_name=rule.name,
                rule_type=rule.rule_type.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            continue
        if best is None or candidate.score > best.score:
            best = candidate
    return best


def find_recurring(
    transaction: Transaction,
    snapshot: CandidateSnapshot,
    config: ReconciliationConfig,
) -> RecurringMatch | None:
    direct = match_subscription(transaction, snapshot, config) or match_declaration(transaction, snapshot, config)
    ruled = match_by_rules(transaction, snapshot, config)
    if ruled is not None and (direct is None or ruled.score > direct.score):
        return ruled
    return direct


def _needs_recurring(line: LineState) -> bool:
    return not line.has_financial_link


def match_recurring(
    working_set: WorkingSet,
    snapshot: CandidateSnapshot,
    config: ReconciliationConfig,
) -> list[LineMutation]:
    mutations: list[LineMutation] = []
    for line in working_set.lines:
        if not _needs_recurring(line):
            continue
        match = find_recurring(line.transaction, snapshot, config)
        if match is None:
            continue
        changes: dict[str, Any] = {
            "subscription_id": match.subscription_id,
            "declaration_id": match.declaration_id,
            "suggested_invoice_id": None,
            "score": match.score,
        }
        partner = snapshot.partner(match.partner_id)
        if line.partner is None and partner is not None:
            changes["partner"] = partner.ref()
        mutations.append(LineMutation(line.line_number, changes, SOURCE))

    logger.info(
        "Recurring pass resolved",
        subscriptions=sum(1 for m in mutations if m.changes["subscription_id"] is not None),
        declarations=sum(1 for m in mutations if m.changes["declaration_id"] is not None),
    )
    return mutations
