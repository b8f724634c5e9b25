"""Human review of invoices held at PENDING_REVIEW."""

import logging

from services.approval.state_machine import (
    ApprovalDecision,
    ApprovalStateMachine,
    ApprovalStatus,
)
from services.invoices.store import InvoiceStore
from services.shared.errors import InvoiceNotFoundError

logger = logging.getLogger(__name__)


class ReviewService:
    """Applies reviewer decisions through the invoice store."""

    def __init__(self, store: InvoiceStore, state_machine: ApprovalStateMachine) -> None:
        self._store = store
        self._state_machine = state_machine

    def review_invoice(
        self, invoice_id: str, decision: ApprovalStatus, reviewer: str | None = None
    ) -> ApprovalDecision:
        """Move a PENDING_REVIEW invoice to APPROVED or REJECTED.

        Idempotent: repeating the decision an invoice already has returns it
        unchanged.

        Args:
            invoice_id: Invoice to review
            decision: APPROVED or REJECTED
            reviewer: Reviewer identifier for the audit trail

        Returns:
            The invoice's decision after the review

        Raises:
            InvoiceNotFoundError: If the invoice id is unknown
            InvalidTransitionError: If the invoice is not pending review
        """
        record = self._store.get(invoice_id)
        if record is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")

        updated = self._state_machine.transition(record.decision, decision, reviewer)
        if updated is record.decision:
            logger.info(f"Invoice {invoice_id} already {decision.value}, nothing to do")
            return updated

        stored = self._store.compare_and_set_decision(
            invoice_id, expected=record.decision.status, decision=updated
        )
        if stored is None:
            # Lost a concurrent review
            current = self._store.get(invoice_id)
            if current is None:
                raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
            return self._state_machine.transition(current.decision, decision, reviewer)

        logger.info(f"Invoice {invoice_id} reviewed as {decision.value} by {reviewer or 'unknown'}")
        return stored.decision
