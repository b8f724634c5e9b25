"""Auto-approval state machine and human review.

States: PENDING_REVIEW (initial), APPROVED and REJECTED (terminal).

The automatic decision is evaluated once per invoice:
- any BLOCKING finding -> REJECTED
- confidence >= approval threshold and no WARNING or BLOCKING finding -> APPROVED
- otherwise -> PENDING_REVIEW

An unpaid extraction is never auto-approved: insufficient credits force
PENDING_REVIEW (a blocking finding still rejects).
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from services.anomaly.detector import AnomalyFinding, Severity
from services.pipeline import metrics
from services.shared.config import Settings
from services.shared.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self != ApprovalStatus.PENDING_REVIEW


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ApprovalDecision(BaseModel):
    """Approval outcome for one invoice.

    Attributes:
        status: Current state
        confidence: Aggregate extraction confidence the decision was based on
        reasons: Human-readable reasons for anything other than APPROVED
        findings: Anomaly findings the decision was based on, INFO included
        insufficient_credits: Approval withheld because the debit failed
        reviewer: Who moved the invoice out of PENDING_REVIEW, if a human did
        previous_status: State before the last transition
    """

    model_config = ConfigDict(frozen=True)

    status: ApprovalStatus
    confidence: float = Field(..., ge=0, le=1)
    reasons: tuple[str, ...] = ()
    findings: tuple[AnomalyFinding, ...] = ()
    insufficient_credits: bool = False
    reviewer: str | None = None
    previous_status: ApprovalStatus | None = None
    decided_at: datetime = Field(default_factory=_utcnow)


class ApprovalStateMachine:
    """Deterministic mapping from signals to an ApprovalDecision."""

    def __init__(self, settings: Settings, now: Callable[[], datetime] = _utcnow) -> None:
        self._approval_threshold = settings.approval_threshold
        self._now = now

    def decide(
        self,
        confidence: float,
        findings: list[AnomalyFinding],
        insufficient_credits: bool = False,
    ) -> ApprovalDecision:
        """Evaluate the automatic transition out of PENDING_REVIEW.

        Args:
            confidence: Aggregate confidence of the winning extraction
            findings: All findings, blacklist finding included
            insufficient_credits: Whether the credit debit failed

        Returns:
            Decision with the resulting status
        """
        blocking = [f for f in findings if f.severity == Severity.BLOCKING]
        warnings = [f for f in findings if f.severity == Severity.WARNING]

        if blocking:
            status = ApprovalStatus.REJECTED
            reasons = [f.message for f in blocking]
        elif insufficient_credits:
            status = ApprovalStatus.PENDING_REVIEW
            reasons = ["Insufficient credits to cover extraction cost"]
            reasons.extend(f.message for f in warnings)
        elif confidence >= self._approval_threshold and not warnings:
            status = ApprovalStatus.APPROVED
            reasons = []
        else:
            status = ApprovalStatus.PENDING_REVIEW
            reasons = [f.message for f in warnings] or [
                f"Confidence {confidence:.3f} below approval threshold"
            ]

        metrics.decisions_total.labels(status=status.value).inc()
        logger.info(f"Decision {status.value} at confidence {confidence:.3f}")
        return ApprovalDecision(
            status=status,
            confidence=confidence,
            reasons=tuple(reasons),
            findings=tuple(findings),
            insufficient_credits=insufficient_credits,
            previous_status=ApprovalStatus.PENDING_REVIEW if status.is_terminal else None,
            decided_at=self._now(),
        )

    def transition(
        self,
        current: ApprovalDecision,
        target: ApprovalStatus,
        reviewer: str | None = None,
    ) -> ApprovalDecision:
        """Apply a human review decision.

        Re-applying the status the invoice already has is a no-op that
        returns the current decision.

        Raises:
            InvalidTransitionError: If target is not terminal, or the invoice
                is in a different terminal state
        """
        if not target.is_terminal:
            raise InvalidTransitionError(
                f"Review decision must be APPROVED or REJECTED, got {target.value}"
            )
        if current.status == target:
            return current
        if current.status != ApprovalStatus.PENDING_REVIEW:
            raise InvalidTransitionError(
                f"Cannot move invoice from {current.status.value} to {target.value}: "
                f"only PENDING_REVIEW invoices can be reviewed",
                details={"current": current.status.value, "target": target.value},
            )

        return current.model_copy(
            update={
                "status": target,
                "reviewer": reviewer,
                "previous_status": current.status,
                "decided_at": self._now(),
            }
        )
