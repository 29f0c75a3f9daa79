"""Status derivation for reconciliation lines."""

from __future__ import annotations

from typing import TYPE_CHECKING

from bankrec.models import LineStatus

if TYPE_CHECKING:
    from bankrec.services.working_set import LineState


def derive_status(line: LineState) -> LineStatus:
    """Map a line's linkage to its status.

    Invoices, a subscription or a declaration make a line matched. A partner
    alone, or an invoice suggested below the matched threshold, leaves it
    uncertain. Nothing attached means unmatched.
    """
    if line.invoice_ids or line.subscription_id or line.declaration_id:
        return LineStatus.MATCHED
    if line.partner is not None or line.suggested_invoice_id is not None:
        return LineStatus.UNCERTAIN
    return LineStatus.UNMATCHED
