"""Contact reconciliation: registry upsert plus blacklist check.

The issuer of every processed invoice is recorded in the tenant's contact
registry with additive counters, then checked against the EFOS/EDOS
blacklist. The blacklist is only queried again once the stored status is
stale, unknown or missing.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from services.contacts.blacklist import BlacklistLookup
from services.contacts.models import BlacklistStatus, ContactRecord, ContactSighting
from services.contacts.registry import ContactRegistry
from services.extraction.schema import ParsedInvoice
from services.pipeline import metrics
from services.shared.config import Settings
from services.shared.errors import BlacklistLookupFailure, is_transient

logger = logging.getLogger(__name__)


class ReconciliationResult(BaseModel):
    """Contact after reconciliation and the blacklist status for this invoice.

    ``contact`` is None when the invoice has no issuer tax ID to key on.
    """

    contact: ContactRecord | None = None
    blacklist_status: BlacklistStatus = BlacklistStatus.UNKNOWN


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ContactReconciler:
    """Keeps the contact registry in step with processed invoices."""

    def __init__(
        self,
        settings: Settings,
        registry: ContactRegistry,
        blacklist: BlacklistLookup,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize reconciler.

        Args:
            settings: Application settings
            registry: Contact registry capability
            blacklist: Blacklist lookup capability
            now: Clock, injectable for tests
        """
        self.settings = settings
        self._registry = registry
        self._blacklist = blacklist
        self._now = now
        self._revalidation_window = timedelta(days=settings.blacklist_revalidation_days)

    def reconcile(self, invoice: ParsedInvoice, tenant_id: str) -> ReconciliationResult:
        """Record the invoice issuer and resolve its blacklist status.

        Never raises for lookup failures: the status is UNKNOWN instead, unless
        the contact is already known to be listed, in which case that listing
        still applies.
        """
        if not invoice.issuer_tax_id:
            logger.warning("Invoice has no issuer tax ID, skipping contact reconciliation")
            return ReconciliationResult()

        now = self._now()
        sighting = ContactSighting(
            tenant_id=tenant_id,
            tax_id=invoice.issuer_tax_id,
            name=invoice.issuer_name,
            email=invoice.issuer_email,
            phone=invoice.issuer_phone,
            amount=invoice.total or 0,
            seen_at=now,
            confidence=invoice.confidence,
        )
        contact = self._registry.upsert(sighting)

        if not self._needs_revalidation(contact, now):
            logger.debug(f"Using cached blacklist status for {contact.tax_id}")
            return ReconciliationResult(contact=contact, blacklist_status=contact.blacklist_status)

        status = self._lookup(contact.tax_id)
        metrics.blacklist_lookups_total.labels(status=status.value).inc()

        previous = contact.blacklist_status
        if status != BlacklistStatus.UNKNOWN or previous is None:
            # A failed lookup never overwrites a known status
            contact = (
                self._registry.update_blacklist_status(tenant_id, contact.tax_id, status, now)
                or contact
            )
        if status.is_blacklisted and not (previous and previous.is_blacklisted):
            logger.warning(
                f"Contact {contact.tax_id} ({contact.name or 'unnamed'}) is listed as "
                f"{status.value} for tenant {tenant_id}"
            )

        if status == BlacklistStatus.UNKNOWN and previous is not None and previous.is_blacklisted:
            logger.warning(
                f"Revalidation of {contact.tax_id} failed, keeping listed status {previous.value}"
            )
            status = previous

        return ReconciliationResult(contact=contact, blacklist_status=status)

    def _needs_revalidation(self, contact: ContactRecord, now: datetime) -> bool:
        if contact.blacklist_status in (None, BlacklistStatus.UNKNOWN):
            return True
        if contact.blacklist_checked_at is None:
            return True
        return now - contact.blacklist_checked_at > self._revalidation_window

    def _lookup(self, tax_id: str) -> BlacklistStatus:
        """Query the blacklist, retrying a transient failure once."""
        retryer = Retrying(
            retry=retry_if_exception(is_transient),
            wait=wait_fixed(self.settings.external_retry_wait),
            stop=stop_after_attempt(2),
            reraise=True,
        )
        try:
            return retryer(self._blacklist.check, tax_id)
        except BlacklistLookupFailure as e:
            logger.warning(f"Blacklist lookup failed for {tax_id}: {e.message}")
            return BlacklistStatus.UNKNOWN
