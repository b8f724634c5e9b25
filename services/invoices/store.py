"""Invoice store capability and its in-memory implementation.

The store is the persistence collaborator the pipeline hands finished
invoices to. It also answers folio lookups for duplicate detection and
guards review transitions with a compare-and-set on the current status.
"""

import logging
import threading
from datetime import UTC, datetime
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field

from services.anomaly.detector import AnomalyFinding
from services.approval.state_machine import ApprovalDecision, ApprovalStatus
from services.extraction.schema import ParsedInvoice
from services.shared.errors import InvoiceNotFoundError

logger = logging.getLogger(__name__)


class StoredInvoice(BaseModel):
    """Persisted invoice with its current decision."""

    model_config = ConfigDict(frozen=True)

    invoice_id: str
    tenant_id: str
    document_id: str
    invoice: ParsedInvoice
    decision: ApprovalDecision
    findings: tuple[AnomalyFinding, ...] = ()
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class InvoiceStore(Protocol):
    """Persistence capability, owned by the host process."""

    def save(self, record: StoredInvoice) -> None: ...

    def get(self, invoice_id: str) -> StoredInvoice | None: ...

    def has_folio(self, tenant_id: str, issuer_tax_id: str, uuid: str) -> bool: ...

    def compare_and_set_decision(
        self, invoice_id: str, expected: ApprovalStatus, decision: ApprovalDecision
    ) -> StoredInvoice | None:
        """Replace the decision only if the current status is ``expected``.

        Returns:
            Updated record, or None if the status no longer matches

        Raises:
            InvoiceNotFoundError: If the invoice id is unknown
        """
        ...


class InMemoryInvoiceStore:
    """Thread-safe in-memory store for tests and single-process deployments."""

    def __init__(self) -> None:
        self._records: dict[str, StoredInvoice] = {}
        self._folios: set[tuple[str, str, str]] = set()
        self._lock = threading.Lock()

    def save(self, record: StoredInvoice) -> None:
        with self._lock:
            self._records[record.invoice_id] = record
            if record.invoice.uuid and record.invoice.issuer_tax_id:
                self._folios.add(
                    (record.tenant_id, record.invoice.issuer_tax_id, record.invoice.uuid)
                )
        logger.debug(f"Stored invoice {record.invoice_id} as {record.decision.status.value}")

    def get(self, invoice_id: str) -> StoredInvoice | None:
        with self._lock:
            return self._records.get(invoice_id)

    def has_folio(self, tenant_id: str, issuer_tax_id: str, uuid: str) -> bool:
        with self._lock:
            return (tenant_id, issuer_tax_id, uuid) in self._folios

    def compare_and_set_decision(
        self, invoice_id: str, expected: ApprovalStatus, decision: ApprovalDecision
    ) -> StoredInvoice | None:
        with self._lock:
            record = self._records.get(invoice_id)
            if record is None:
                raise InvoiceNotFoundError(f"Invoice {invoice_id} not found")
            if record.decision.status != expected:
                return None
            record = record.model_copy(update={"decision": decision})
            self._records[invoice_id] = record
        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
