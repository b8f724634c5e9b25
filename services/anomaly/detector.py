"""Rule engine over finalized invoices.

Every rule runs independently so all findings surface together. Findings
carry a severity the approval state machine acts on:
- BLOCKING: the invoice is rejected (blacklisted issuer, gross total mismatch)
- WARNING: the invoice is held for review
- INFO: recorded for audit only (e.g. blacklist status could not be checked)
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from services.contacts.models import BlacklistStatus
from services.extraction.schema import InvoiceField, ParsedInvoice
from services.extraction.validators import is_valid_tax_id
from services.pipeline import metrics
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class AnomalyKind(str, Enum):
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    DUPLICATE_FOLIO = "DUPLICATE_FOLIO"
    DATE_OUT_OF_RANGE = "DATE_OUT_OF_RANGE"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    BLACKLISTED_COUNTERPARTY = "BLACKLISTED_COUNTERPARTY"
    OTHER = "OTHER"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    BLOCKING = "blocking"


class AnomalyFinding(BaseModel):
    """One rule violation found on an invoice."""

    model_config = ConfigDict(frozen=True)

    kind: AnomalyKind
    severity: Severity
    message: str
    field: InvoiceField | None = None
    details: dict[str, str] = Field(default_factory=dict)


class FolioHistory(Protocol):
    """Lookup of folios already recorded for an issuer."""

    def has_folio(self, tenant_id: str, issuer_tax_id: str, uuid: str) -> bool: ...


def blacklist_finding(status: BlacklistStatus, tax_id: str | None) -> AnomalyFinding | None:
    """Finding for the issuer's blacklist status, merged in before the decision.

    EFOS/EDOS is blocking. UNKNOWN is kept for audit but does not block.
    """
    if status.is_blacklisted:
        return AnomalyFinding(
            kind=AnomalyKind.BLACKLISTED_COUNTERPARTY,
            severity=Severity.BLOCKING,
            message=f"Issuer {tax_id} is listed as {status.value}",
            field=InvoiceField.ISSUER_TAX_ID,
            details={"status": status.value},
        )
    if status == BlacklistStatus.UNKNOWN and tax_id:
        return AnomalyFinding(
            kind=AnomalyKind.OTHER,
            severity=Severity.INFO,
            message=f"Blacklist status of issuer {tax_id} could not be verified",
            field=InvoiceField.ISSUER_TAX_ID,
            details={"status": status.value},
        )
    return None


class AnomalyDetector:
    """Evaluates anomaly rules against a ParsedInvoice."""

    def __init__(
        self,
        settings: Settings,
        history: FolioHistory,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize detector.

        Args:
            settings: Application settings with rule thresholds
            history: Folio lookup for duplicate detection
            now: Clock returning naive local time, like CFDI issue dates
        """
        self.settings = settings
        self._history = history
        self._now = now

    def detect(self, invoice: ParsedInvoice, tenant_id: str) -> list[AnomalyFinding]:
        """Run every rule and collect the findings.

        Args:
            invoice: Finalized invoice
            tenant_id: Owning tenant, scopes duplicate detection

        Returns:
            All findings, possibly empty
        """
        findings: list[AnomalyFinding] = []
        for rule in (
            self._check_amounts,
            self._check_duplicate,
            self._check_date,
            self._check_confidence,
            self._check_tax_ids,
            self._check_high_amount,
        ):
            findings.extend(rule(invoice, tenant_id))

        for finding in findings:
            metrics.anomalies_total.labels(kind=finding.kind.value).inc()
        if findings:
            kinds = ", ".join(f.kind.value for f in findings)
            logger.info(f"Invoice {invoice.uuid} has {len(findings)} anomalies: {kinds}")
        return findings

    def _check_amounts(self, invoice: ParsedInvoice, tenant_id: str) -> list[AnomalyFinding]:
        if invoice.subtotal is None or invoice.tax is None or invoice.total is None:
            return []

        expected = invoice.subtotal + invoice.tax
        difference = abs(invoice.total - expected)
        if difference <= self.settings.amount_tolerance:
            return []

        severity = (
            Severity.BLOCKING
            if difference > self.settings.amount_hard_tolerance
            else Severity.WARNING
        )
        return [
            AnomalyFinding(
                kind=AnomalyKind.AMOUNT_MISMATCH,
                severity=severity,
                message=(
                    f"Total {invoice.total} differs from subtotal + tax {expected} by {difference}"
                ),
                field=InvoiceField.TOTAL,
                details={"expected": str(expected), "difference": str(difference)},
            )
        ]

    def _check_duplicate(self, invoice: ParsedInvoice, tenant_id: str) -> list[AnomalyFinding]:
        if not invoice.uuid or not invoice.issuer_tax_id:
            return []
        if not self._history.has_folio(tenant_id, invoice.issuer_tax_id, invoice.uuid):
            return []
        return [
            AnomalyFinding(
                kind=AnomalyKind.DUPLICATE_FOLIO,
                severity=Severity.WARNING,
                message=f"Folio {invoice.uuid} was already recorded for {invoice.issuer_tax_id}",
                field=InvoiceField.UUID,
            )
        ]

    def _check_date(self, invoice: ParsedInvoice, tenant_id: str) -> list[AnomalyFinding]:
        if invoice.issue_date is None:
            return []

        now = self._now()
        oldest = now - timedelta(days=self.settings.retention_days)
        if invoice.issue_date.date() > now.date():
            message = f"Issue date {invoice.issue_date:%Y-%m-%d} is in the future"
        elif invoice.issue_date < oldest:
            message = (
                f"Issue date {invoice.issue_date:%Y-%m-%d} is older than "
                f"{self.settings.retention_days} days"
            )
        else:
            return []
        return [
            AnomalyFinding(
                kind=AnomalyKind.DATE_OUT_OF_RANGE,
                severity=Severity.WARNING,
                message=message,
                field=InvoiceField.ISSUE_DATE,
            )
        ]

    def _check_confidence(self, invoice: ParsedInvoice, tenant_id: str) -> list[AnomalyFinding]:
        confidence = invoice.confidence
        if confidence >= self.settings.approval_threshold:
            return []
        if confidence >= self.settings.reject_floor:
            return [
                AnomalyFinding(
                    kind=AnomalyKind.LOW_CONFIDENCE,
                    severity=Severity.WARNING,
                    message=(
                        f"Confidence {confidence:.2f} is below the approval threshold "
                        f"{self.settings.approval_threshold:.2f}"
                    ),
                )
            ]
        return [
            AnomalyFinding(
                kind=AnomalyKind.OTHER,
                severity=Severity.WARNING,
                message=(
                    f"Confidence {confidence:.2f} is below the reject floor "
                    f"{self.settings.reject_floor:.2f}"
                ),
            )
        ]

    def _check_tax_ids(self, invoice: ParsedInvoice, tenant_id: str) -> list[AnomalyFinding]:
        findings = []
        for field, tax_id in (
            (InvoiceField.ISSUER_TAX_ID, invoice.issuer_tax_id),
            (InvoiceField.RECEIVER_TAX_ID, invoice.receiver_tax_id),
        ):
            if tax_id and not is_valid_tax_id(tax_id):
                findings.append(
                    AnomalyFinding(
                        kind=AnomalyKind.OTHER,
                        severity=Severity.WARNING,
                        message=f"RFC {tax_id} has an invalid format",
                        field=field,
                    )
                )
        return findings

    def _check_high_amount(self, invoice: ParsedInvoice, tenant_id: str) -> list[AnomalyFinding]:
        if invoice.total is None or invoice.total <= self.settings.high_amount_threshold:
            return []
        return [
            AnomalyFinding(
                kind=AnomalyKind.OTHER,
                severity=Severity.WARNING,
                message=(
                    f"Total {invoice.total} exceeds {self.settings.high_amount_threshold}, "
                    f"manual verification recommended"
                ),
                field=InvoiceField.TOTAL,
            )
        ]
