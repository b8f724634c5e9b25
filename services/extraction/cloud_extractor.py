"""Cloud extractor delegating to the external parsing service.

Serves the two paid tiers: CLOUD_COST_EFFECTIVE for structured documents
and CLOUD_AGENTIC for scanned or complex ones. Field confidences are the
service's own scores, clamped to [0, 1].

Includes retry logic with exponential backoff for transient service errors
(timeouts, 5xx, rate limits). Client errors are never retried. A call that
still fails after the last retry yields a failed attempt, so the router can
escalate or report exhaustion.
"""

import logging
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.extraction.base import FieldExtractor
from services.extraction.cloud_service import CloudParseResponse, CloudParseService
from services.extraction.schema import (
    REQUIRED_FIELDS,
    ExtractionAttempt,
    FieldValue,
    InvoiceField,
    LineItem,
    RawDocument,
    Tier,
)
from services.extraction.validators import (
    clamp_confidence,
    normalize_currency,
    normalize_folio,
    normalize_tax_id,
    parse_amount,
    parse_issue_date,
)
from services.pipeline import metrics
from services.shared.config import Settings
from services.shared.errors import CloudServiceError, is_transient

logger = logging.getLogger(__name__)


def _text(raw: Any) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip()
    return value or None


def _line_items(raw: Any) -> list[LineItem] | None:
    if not isinstance(raw, list):
        return None
    items = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        items.append(
            LineItem(
                description=_text(entry.get("description")) or "",
                quantity=parse_amount(entry.get("quantity")) or Decimal("1"),
                unit_value=parse_amount(entry.get("unit_value")),
                amount=parse_amount(entry.get("amount")),
                product_key=_text(entry.get("product_key")),
                unit_key=_text(entry.get("unit_key")),
            )
        )
    return items or None


_FIELD_PARSERS: dict[InvoiceField, Callable[[Any], Any]] = {
    InvoiceField.ISSUER_TAX_ID: normalize_tax_id,
    InvoiceField.RECEIVER_TAX_ID: normalize_tax_id,
    InvoiceField.UUID: normalize_folio,
    InvoiceField.ISSUE_DATE: parse_issue_date,
    InvoiceField.SUBTOTAL: parse_amount,
    InvoiceField.TAX: parse_amount,
    InvoiceField.TOTAL: parse_amount,
    InvoiceField.CURRENCY: normalize_currency,
    InvoiceField.LINE_ITEMS: _line_items,
    InvoiceField.ISSUER_NAME: _text,
    InvoiceField.RECEIVER_NAME: _text,
    InvoiceField.ISSUER_EMAIL: _text,
    InvoiceField.ISSUER_PHONE: _text,
    InvoiceField.PAYMENT_METHOD: _text,
    InvoiceField.INVOICE_TYPE: _text,
}


class CloudExtractor(FieldExtractor):
    """Extractor for one of the two paid cloud tiers."""

    def __init__(self, settings: Settings, service: CloudParseService, tier: Tier) -> None:
        """Initialize cloud extractor.

        Args:
            settings: Application settings
            service: Parsing service client
            tier: CLOUD_COST_EFFECTIVE or CLOUD_AGENTIC

        Raises:
            ValueError: If tier is a local tier
        """
        if tier.is_local:
            raise ValueError(f"CloudExtractor cannot serve local tier {tier.name}")
        super().__init__(settings)
        self._service = service
        self._tier = tier
        self._credits_per_page = (
            settings.cloud_cost_effective_credits_per_page
            if tier == Tier.CLOUD_COST_EFFECTIVE
            else settings.cloud_agentic_credits_per_page
        )

    @property
    def tier(self) -> Tier:
        return self._tier

    def is_available(self) -> bool:
        return self._service.is_configured()

    def extract(self, document: RawDocument) -> ExtractionAttempt:
        """Parse the document with the cloud service.

        Returns:
            Successful attempt with service-scored fields and the credits it
            cost, or a failed attempt (cost 0) if the service kept failing
        """
        if not self.is_available():
            return ExtractionAttempt.failed(self._tier, "Cloud parse service is not configured")

        start = time.time()
        try:
            response = self._parse_with_retry(document)
        except CloudServiceError as e:
            logger.error(f"{self._tier.name} extraction failed for {document.document_id}: {e}")
            return ExtractionAttempt.failed(self._tier, f"Cloud parse failed: {e.message}")
        finally:
            metrics.cloud_parse_duration_seconds.labels(tier=self._tier.name).observe(
                time.time() - start
            )

        fields, auxiliary = self._map_fields(response)
        pages = max(response.pages, 1)
        return ExtractionAttempt(
            tier=self._tier,
            fields=fields,
            success=True,
            cost=self._credits_per_page * pages,
            pages=pages,
            auxiliary=auxiliary,
        )

    def _parse_with_retry(self, document: RawDocument) -> CloudParseResponse:
        """Call the service, retrying transient failures with exponential backoff.

        Raises:
            CloudServiceError: On a non-retryable failure, or after all attempts
        """
        retryer = Retrying(
            retry=retry_if_exception(is_transient),
            wait=wait_exponential_jitter(
                initial=self.settings.cloud_retry_initial_wait,
                max=self.settings.cloud_retry_max_wait,
                jitter=self.settings.cloud_retry_jitter,
            ),
            stop=stop_after_attempt(self.settings.cloud_max_attempts),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retryer(self._service.parse, document, self._tier)

    def _map_fields(
        self, response: CloudParseResponse
    ) -> tuple[dict[InvoiceField, FieldValue], dict[str, str]]:
        """Map service fields onto the closed field set.

        Unknown field names go to auxiliary data. Values that fail to parse
        keep the field but drop its confidence to 0.
        """
        fields: dict[InvoiceField, FieldValue] = {}
        auxiliary: dict[str, str] = {}

        for name, reported in response.fields.items():
            try:
                field = InvoiceField(name)
            except ValueError:
                if reported.value is not None:
                    auxiliary[name] = str(reported.value)
                continue

            value = _FIELD_PARSERS[field](reported.value)
            confidence = clamp_confidence(reported.confidence) if value is not None else 0.0
            fields[field] = FieldValue(value=value, confidence=confidence)

        for field in REQUIRED_FIELDS:
            fields.setdefault(field, FieldValue(value=None, confidence=0.0))

        return fields, auxiliary
