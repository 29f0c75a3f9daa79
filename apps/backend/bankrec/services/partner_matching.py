"""Partner/keyword matcher."""

from __future__ import annotations

from collections.abc import Sequence

from bankrec.logger import get_logger
from bankrec.models import PARTNER_MATCH_ORDER, PartnerCategory
from bankrec.services.keywords import KeywordExpression, normalize_label
from bankrec.services.working_set import (
    CandidateSnapshot,
    LineMutation,
    PartnerCandidate,
    WorkingSet,
)

logger = get_logger(__name__)

SOURCE = "partners"


def find_partner(
    label: str,
    partners: Sequence[PartnerCandidate],
    categories: Sequence[PartnerCategory] = PARTNER_MATCH_ORDER,
) -> PartnerCandidate | None:
    """First partner whose keyword expression matches, categories in priority order."""
    if not normalize_label(label):
        return None
    for category in categories:
        for partner in partners:
            if partner.category is not category:
                continue
            if KeywordExpression.parse(partner.expression).matches(label):
                return partner
    return None


def match_partners(working_set: WorkingSet, snapshot: CandidateSnapshot) -> list[LineMutation]:
    mutations: list[LineMutation] = []
    for line in working_set.lines:
        if line.partner is not None:
            continue
        partner = find_partner(line.transaction.label, snapshot.partners)
        if partner is None:
            continue
        mutations.append(LineMutation(line.line_number, {"partner": partner.ref()}, SOURCE))

    logger.info("Partner pass resolved", attached=len(mutations))
    return mutations
