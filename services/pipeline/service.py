"""Invoice processing pipeline.

Orchestrates one document end to end:
1. Tiered extraction, strictly sequential, escalating in cost order
2. Confidence scoring and invoice finalization from the winning attempt
3. Credit debit for the tiers actually executed
4. Anomaly detection and contact reconciliation, concurrently
5. Approval decision once both are done, then hand-off to the invoice store

Documents are independent; the contact registry, invoice store and credit
ledger are the only shared collaborators and are injected by the host.
"""

import logging
import uuid
from concurrent.futures import ThreadPoolExecutor

from pydantic import BaseModel, Field

from services.anomaly.detector import AnomalyDetector, AnomalyFinding, blacklist_finding
from services.approval.state_machine import ApprovalDecision, ApprovalStateMachine
from services.contacts.blacklist import BlacklistLookup, HttpBlacklistLookup
from services.contacts.models import BlacklistStatus, ContactRecord
from services.contacts.reconciler import ContactReconciler
from services.contacts.registry import ContactRegistry, InMemoryContactRegistry
from services.credits.ledger import CreditLedger, CreditLedgerAdapter, HttpCreditLedger
from services.extraction.base import FieldExtractor
from services.extraction.cloud_service import CloudParseService
from services.extraction.factory import create_extractors
from services.extraction.router import TierRouter
from services.extraction.schema import ExtractionAttempt, ParsedInvoice, RawDocument, Tier
from services.extraction.scoring import ConfidenceScorer
from services.invoices.store import InMemoryInvoiceStore, InvoiceStore, StoredInvoice
from services.pipeline import metrics
from services.shared.config import Settings, get_settings
from services.shared.errors import ExtractionExhaustedError, MalformedInputError

logger = logging.getLogger(__name__)


class PipelineResult(BaseModel):
    """Everything produced for one document.

    Attributes:
        invoice_id: Identifier assigned in the invoice store
        invoice: Finalized invoice from the winning attempt
        decision: Approval decision
        findings: All anomaly findings, blacklist finding included
        contact: Issuer contact after reconciliation, if it had a tax ID
        blacklist_status: Issuer blacklist status used for the decision
        attempts: Every extraction attempt made, in order
        credits_charged: Credits debited for this document
        credit_error: InsufficientCreditsError message if the debit failed
    """

    invoice_id: str
    tenant_id: str
    document_id: str
    invoice: ParsedInvoice
    decision: ApprovalDecision
    findings: list[AnomalyFinding] = Field(default_factory=list)
    contact: ContactRecord | None = None
    blacklist_status: BlacklistStatus = BlacklistStatus.UNKNOWN
    attempts: list[ExtractionAttempt] = Field(default_factory=list)
    credits_charged: int = 0
    credit_error: str | None = None

    @property
    def tiers_used(self) -> list[Tier]:
        return [attempt.tier for attempt in self.attempts]


class InvoicePipeline:
    """Processes raw documents into decided invoices."""

    def __init__(
        self,
        settings: Settings,
        extractors: dict[Tier, FieldExtractor],
        router: TierRouter,
        scorer: ConfidenceScorer,
        detector: AnomalyDetector,
        reconciler: ContactReconciler,
        credits: CreditLedgerAdapter,
        state_machine: ApprovalStateMachine,
        store: InvoiceStore,
    ) -> None:
        self.settings = settings
        self._extractors = extractors
        self._router = router
        self._scorer = scorer
        self._detector = detector
        self._reconciler = reconciler
        self._credits = credits
        self._state_machine = state_machine
        self._store = store

    def process(self, document: RawDocument) -> PipelineResult:
        """Run the full pipeline for one document.

        Args:
            document: Document to process

        Returns:
            PipelineResult, also saved to the invoice store

        Raises:
            ExtractionExhaustedError: If no tier produced a usable extraction
        """
        logger.info(
            f"Processing {document.media_type.value} document {document.document_id} "
            f"for tenant {document.tenant_id}"
        )
        attempts = self._extract(document)

        winner = self._scorer.select(attempts)
        if winner is None or not attempts[-1].success:
            # Paid work is billed even when no invoice comes out of it
            charge = self._credits.charge(document.tenant_id, attempts, document.document_id)
            if not charge.success:
                logger.warning(f"Could not bill exhausted document {document.document_id}")
            tiers = ", ".join(attempt.tier.name for attempt in attempts) or "none"
            error = attempts[-1].error if attempts else "no extractor is available"
            raise ExtractionExhaustedError(
                f"No tier produced a usable extraction for {document.document_id} "
                f"(tried {tiers}): {error}",
                attempts=attempts,
            )

        confidence = self._scorer.score_attempt(winner)
        invoice = ParsedInvoice.from_attempt(winner, confidence)
        logger.info(
            f"Document {document.document_id} extracted by {winner.tier.name} "
            f"with confidence {confidence:.3f}"
        )

        charge = self._credits.charge(document.tenant_id, attempts, document.document_id)

        with ThreadPoolExecutor(max_workers=2) as pool:
            detection = pool.submit(self._detector.detect, invoice, document.tenant_id)
            reconciliation = pool.submit(self._reconciler.reconcile, invoice, document.tenant_id)
            findings = detection.result()
            reconciled = reconciliation.result()

        extra = blacklist_finding(reconciled.blacklist_status, invoice.issuer_tax_id)
        if extra is not None:
            metrics.anomalies_total.labels(kind=extra.kind.value).inc()
            findings.append(extra)

        decision = self._state_machine.decide(
            confidence, findings, insufficient_credits=not charge.success
        )

        invoice_id = str(uuid.uuid4())
        self._store.save(
            StoredInvoice(
                invoice_id=invoice_id,
                tenant_id=document.tenant_id,
                document_id=document.document_id,
                invoice=invoice,
                decision=decision,
                findings=tuple(findings),
            )
        )
        logger.info(f"Invoice {invoice_id} ({invoice.uuid}) stored as {decision.status.value}")

        return PipelineResult(
            invoice_id=invoice_id,
            tenant_id=document.tenant_id,
            document_id=document.document_id,
            invoice=invoice,
            decision=decision,
            findings=findings,
            contact=reconciled.contact,
            blacklist_status=reconciled.blacklist_status,
            attempts=attempts,
            credits_charged=charge.credits_charged,
            credit_error=charge.error,
        )

    def _extract(self, document: RawDocument) -> list[ExtractionAttempt]:
        """Try the available tiers in the order chosen by the router."""
        available = {
            tier for tier, extractor in self._extractors.items() if extractor.is_available()
        }
        attempts: list[ExtractionAttempt] = []
        while (
            tier := self._router.next_tier(document.media_type, attempts, available)
        ) is not None:
            try:
                attempt = self._extractors[tier].extract(document)
                status = "success" if attempt.success else "failed"
            except MalformedInputError as e:
                logger.warning(f"{tier.name} could not parse {document.document_id}: {e}")
                attempt = ExtractionAttempt.failed(tier, e.message)
                status = "malformed"

            metrics.extraction_attempts_total.labels(tier=tier.name, status=status).inc()
            attempts.append(attempt)
        return attempts


def create_invoice_pipeline(
    settings: Settings | None = None,
    *,
    cloud_service: CloudParseService | None = None,
    registry: ContactRegistry | None = None,
    blacklist: BlacklistLookup | None = None,
    ledger: CreditLedger | None = None,
    store: InvoiceStore | None = None,
) -> InvoicePipeline:
    """Factory function to wire the pipeline from configuration.

    Collaborators not passed in default to the HTTP clients (cloud parse,
    blacklist, credit ledger) and in-memory stores (contacts, invoices).

    Args:
        settings: Application settings, loaded from the environment if omitted
        cloud_service: Cloud parse service
        registry: Contact registry
        blacklist: Blacklist lookup
        ledger: Credit ledger
        store: Invoice store

    Returns:
        Configured InvoicePipeline
    """
    settings = settings or get_settings()
    store = store if store is not None else InMemoryInvoiceStore()
    registry = registry if registry is not None else InMemoryContactRegistry()
    scorer = ConfidenceScorer(settings)

    return InvoicePipeline(
        settings=settings,
        extractors=create_extractors(settings, cloud_service),
        router=TierRouter(settings, scorer),
        scorer=scorer,
        detector=AnomalyDetector(settings, store),
        reconciler=ContactReconciler(
            settings, registry, blacklist or HttpBlacklistLookup(settings)
        ),
        credits=CreditLedgerAdapter(settings, ledger or HttpCreditLedger(settings)),
        state_machine=ApprovalStateMachine(settings),
        store=store,
    )
