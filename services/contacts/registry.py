"""Contact registry capability and its in-memory implementation.

Contacts are matched by exact tax ID within a tenant. Tax IDs are canonical
identifiers, so there is no fuzzy matching: two spellings of the same legal
name with different RFCs stay distinct contacts.
"""

import logging
import threading
from datetime import datetime
from typing import Protocol

from services.contacts.models import BlacklistStatus, ContactRecord, ContactSighting

logger = logging.getLogger(__name__)


class ContactRegistry(Protocol):
    """Storage capability for contacts, owned by the host process."""

    def get_by_tax_id(self, tenant_id: str, tax_id: str) -> ContactRecord | None: ...

    def upsert(self, sighting: ContactSighting) -> ContactRecord:
        """Create the contact or apply the sighting to it, atomically per tax ID."""
        ...

    def update_blacklist_status(
        self, tenant_id: str, tax_id: str, status: BlacklistStatus, checked_at: datetime
    ) -> ContactRecord | None: ...


def apply_sighting(record: ContactRecord | None, sighting: ContactSighting) -> ContactRecord:
    """Merge one invoice sighting into a contact record.

    Counters are additive. Identity fields are only replaced by a sighting
    extracted with higher confidence than the one that set them, and empty
    fields are filled from any sighting.

    Args:
        record: Existing record, or None to create one
        sighting: Identity observed on the invoice

    Returns:
        New record; the input record is not modified
    """
    if record is None:
        return ContactRecord(
            tenant_id=sighting.tenant_id,
            tax_id=sighting.tax_id,
            name=sighting.name,
            email=sighting.email,
            phone=sighting.phone,
            identity_confidence=sighting.confidence,
            total_invoices=1,
            total_amount=sighting.amount,
            first_seen_at=sighting.seen_at,
            last_seen_at=sighting.seen_at,
        )

    more_confident = sighting.confidence > record.identity_confidence
    updates = {
        "total_invoices": record.total_invoices + 1,
        "total_amount": record.total_amount + sighting.amount,
        "first_seen_at": min(record.first_seen_at, sighting.seen_at),
        "last_seen_at": max(record.last_seen_at, sighting.seen_at),
    }
    for attribute in ("name", "email", "phone"):
        observed = getattr(sighting, attribute)
        if observed and (more_confident or not getattr(record, attribute)):
            updates[attribute] = observed
    if more_confident and sighting.name:
        updates["identity_confidence"] = sighting.confidence

    return record.model_copy(update=updates)


class InMemoryContactRegistry:
    """Thread-safe in-memory registry for tests and single-process deployments."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], ContactRecord] = {}
        self._lock = threading.Lock()

    def get_by_tax_id(self, tenant_id: str, tax_id: str) -> ContactRecord | None:
        with self._lock:
            return self._records.get((tenant_id, tax_id))

    def upsert(self, sighting: ContactSighting) -> ContactRecord:
        key = (sighting.tenant_id, sighting.tax_id)
        with self._lock:
            existing = self._records.get(key)
            record = apply_sighting(existing, sighting)
            self._records[key] = record

        if existing is None:
            logger.info(f"Created contact {sighting.tax_id} for tenant {sighting.tenant_id}")
        return record

    def update_blacklist_status(
        self, tenant_id: str, tax_id: str, status: BlacklistStatus, checked_at: datetime
    ) -> ContactRecord | None:
        key = (tenant_id, tax_id)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            record = record.model_copy(
                update={"blacklist_status": status, "blacklist_checked_at": checked_at}
            )
            self._records[key] = record
        return record

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
