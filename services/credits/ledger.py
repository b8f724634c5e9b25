"""Credit ledger capability, HTTP client and charging adapter.

Cloud tiers are billed per page from the tenant's prepaid balance; local
tiers are free. Charging never discards extraction work: a failed debit is
reported on the ChargeResult and the invoice is held for review.
"""

import logging
from typing import Protocol

import httpx
from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from services.extraction.schema import ExtractionAttempt
from services.pipeline import metrics
from services.shared.config import Settings
from services.shared.errors import (
    CreditLedgerUnavailable,
    InsufficientCreditsError,
    is_retryable_status,
    is_transient,
)

logger = logging.getLogger(__name__)


class CreditLedger(Protocol):
    """Prepaid credit balance, owned by an external billing service."""

    def debit(self, tenant_id: str, amount: int, reference: str) -> None:
        """Debit credits from the tenant's balance.

        Args:
            tenant_id: Tenant to charge
            amount: Credits to debit (> 0)
            reference: Idempotency key, one per processed document

        Raises:
            InsufficientCreditsError: If the balance cannot cover the amount
            CreditLedgerUnavailable: If the ledger could not be reached
        """
        ...


class HttpCreditLedger:
    """httpx client for the credit ledger service.

    ``POST {base}/debits`` with an ``Idempotency-Key`` header, so a retried
    debit is never charged twice. HTTP 402 means insufficient balance.
    """

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._base_url = settings.credit_ledger_base_url.rstrip("/")
        self._timeout = settings.credit_ledger_timeout_seconds
        self._client = client or httpx.Client()

    def debit(self, tenant_id: str, amount: int, reference: str) -> None:
        try:
            response = self._client.post(
                f"{self._base_url}/debits",
                headers={"Idempotency-Key": reference},
                json={"tenant_id": tenant_id, "amount": amount, "reference": reference},
                timeout=self._timeout,
            )
            if response.status_code == 402:
                raise InsufficientCreditsError(
                    f"Insufficient credits for tenant {tenant_id}: {amount} required",
                    required=amount,
                )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise CreditLedgerUnavailable(
                f"Credit debit timed out after {self._timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise CreditLedgerUnavailable(
                f"Credit debit returned HTTP {status_code}",
                retryable=is_retryable_status(status_code),
            ) from e
        except httpx.TransportError as e:
            raise CreditLedgerUnavailable(f"Credit debit transport error: {e}") from e
        except httpx.RequestError as e:
            raise CreditLedgerUnavailable(
                f"Credit debit request failed: {e}", retryable=False
            ) from e


class ChargeResult(BaseModel):
    """Outcome of charging the tiers used for one document.

    Attributes:
        success: Whether the debit went through (or nothing was owed)
        credits_charged: Credits actually debited
        credits_required: Credits owed for the executed tiers
        error: InsufficientCreditsError message when success is False
    """

    success: bool
    credits_charged: int = 0
    credits_required: int = 0
    error: str | None = None


class CreditLedgerAdapter:
    """Computes the cost of executed tiers and debits it."""

    def __init__(self, settings: Settings, ledger: CreditLedger) -> None:
        self.settings = settings
        self._ledger = ledger

    def charge(
        self, tenant_id: str, attempts: list[ExtractionAttempt], reference: str
    ) -> ChargeResult:
        """Debit the summed cost of every executed tier.

        A transient ledger failure is retried once; if it fails again the
        debit is reported as insufficient credits rather than aborting.

        Args:
            tenant_id: Tenant to charge
            attempts: Attempts actually executed for the document
            reference: Idempotency key for the debit

        Returns:
            ChargeResult, never raises for ledger failures
        """
        amount = sum(attempt.cost for attempt in attempts)
        if amount == 0:
            return ChargeResult(success=True)

        retryer = Retrying(
            retry=retry_if_exception(is_transient),
            wait=wait_fixed(self.settings.external_retry_wait),
            stop=stop_after_attempt(2),
            reraise=True,
        )
        try:
            retryer(self._ledger.debit, tenant_id, amount, reference)
        except InsufficientCreditsError as e:
            return self._declined(tenant_id, amount, e)
        except CreditLedgerUnavailable as e:
            logger.error(f"Credit ledger unavailable for {reference}: {e.message}")
            return self._declined(
                tenant_id,
                amount,
                InsufficientCreditsError(
                    f"Credit debit could not be confirmed: {e.message}", required=amount
                ),
            )

        metrics.credits_charged_total.inc(amount)
        metrics.credit_debits_total.labels(status="success").inc()
        logger.info(f"Charged {amount} credits to tenant {tenant_id} for {reference}")
        return ChargeResult(success=True, credits_charged=amount, credits_required=amount)

    def _declined(
        self, tenant_id: str, amount: int, error: InsufficientCreditsError
    ) -> ChargeResult:
        metrics.credit_debits_total.labels(status="insufficient").inc()
        logger.warning(
            f"Debit of {amount} credits declined for tenant {tenant_id}: {error.message}"
        )
        return ChargeResult(success=False, credits_required=amount, error=error.message)
