"""Aggregate confidence scoring for extraction attempts.

The aggregate is a weighted average of per-field confidences. Legally
required fields (issuer and receiver RFC, UUID, total) weigh more than
descriptive ones, and a missing required field caps the aggregate so that
confident optional fields cannot mask it.

Internal consistency lowers a field's contribution: an RFC or UUID with an
invalid format, or a negative amount, counts at half its reported confidence.
"""

import logging

from services.extraction.schema import (
    REQUIRED_FIELDS,
    ExtractionAttempt,
    FieldValue,
    InvoiceField,
)
from services.extraction.validators import is_valid_folio, is_valid_tax_id
from services.shared.config import Settings

logger = logging.getLogger(__name__)

FIELD_WEIGHTS: dict[InvoiceField, float] = {
    InvoiceField.ISSUER_TAX_ID: 3.0,
    InvoiceField.RECEIVER_TAX_ID: 3.0,
    InvoiceField.UUID: 3.0,
    InvoiceField.TOTAL: 3.0,
    InvoiceField.ISSUE_DATE: 1.0,
    InvoiceField.SUBTOTAL: 1.0,
    InvoiceField.TAX: 1.0,
    InvoiceField.CURRENCY: 0.5,
    InvoiceField.PAYMENT_METHOD: 0.5,
    InvoiceField.INVOICE_TYPE: 0.5,
    InvoiceField.ISSUER_NAME: 0.5,
    InvoiceField.RECEIVER_NAME: 0.5,
    InvoiceField.LINE_ITEMS: 0.25,
    InvoiceField.ISSUER_EMAIL: 0.25,
    InvoiceField.ISSUER_PHONE: 0.25,
}

_INCONSISTENCY_FACTOR = 0.5


class ConfidenceScorer:
    """Computes aggregate confidence and picks the winning attempt."""

    def __init__(self, settings: Settings) -> None:
        self._required_field_cap = settings.required_field_cap

    def score(self, attempts: list[ExtractionAttempt]) -> float:
        """Aggregate confidence of the winning attempt, 0.0 if none succeeded."""
        winner = self.select(attempts)
        return self.score_attempt(winner) if winner is not None else 0.0

    def select(self, attempts: list[ExtractionAttempt]) -> ExtractionAttempt | None:
        """Winning attempt: highest aggregate confidence, later tier on ties."""
        successful = [attempt for attempt in attempts if attempt.success]
        if not successful:
            return None
        return max(successful, key=lambda a: (self.score_attempt(a), a.tier))

    def score_attempt(self, attempt: ExtractionAttempt) -> float:
        """Weighted average of field confidences for a single attempt."""
        if not attempt.success:
            return 0.0

        entries = dict(attempt.fields)
        for field in REQUIRED_FIELDS:
            entries.setdefault(field, FieldValue(value=None, confidence=0.0))

        weighted_sum = 0.0
        total_weight = 0.0
        for field, entry in entries.items():
            weight = FIELD_WEIGHTS[field]
            weighted_sum += weight * self._field_confidence(field, entry)
            total_weight += weight

        aggregate = weighted_sum / total_weight
        missing = [f.value for f in REQUIRED_FIELDS if not entries[f].present]
        if missing:
            logger.debug(f"{attempt.tier.name} attempt missing required fields {sorted(missing)}")
            aggregate = min(aggregate, self._required_field_cap)

        return round(aggregate, 4)

    def _field_confidence(self, field: InvoiceField, entry: FieldValue) -> float:
        if not entry.present:
            return 0.0

        consistent = True
        if field in (InvoiceField.ISSUER_TAX_ID, InvoiceField.RECEIVER_TAX_ID):
            consistent = is_valid_tax_id(entry.value)
        elif field == InvoiceField.UUID:
            consistent = is_valid_folio(entry.value)
        elif field in (InvoiceField.SUBTOTAL, InvoiceField.TAX, InvoiceField.TOTAL):
            consistent = entry.value >= 0

        return entry.confidence if consistent else entry.confidence * _INCONSISTENCY_FACTOR
