"""Heuristic extractor for text-layer PDF invoices (tier PDF_REGEX, free).

Runs pattern rules over the PDF text layer. Per-field confidence depends on:
- pattern specificity: a labeled exact-format match scores higher than an
  unlabeled or loosely formatted one
- uniqueness: several distinct candidates lower confidence; the candidate
  nearest after its label wins

A scanned PDF without a text layer is not an error, it simply yields
zero-confidence fields so the router escalates to a cloud tier.
"""

import io
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pdfminer.high_level import extract_text

from services.extraction.base import FieldExtractor
from services.extraction.schema import (
    ExtractionAttempt,
    FieldValue,
    InvoiceField,
    LineItem,
    RawDocument,
    Tier,
)
from services.extraction.validators import (
    FOLIO_PATTERN,
    TAX_ID_PATTERN,
    normalize_currency,
    normalize_folio,
    normalize_tax_id,
    parse_amount,
    parse_issue_date,
)
from services.shared.errors import MalformedInputError

logger = logging.getLogger(__name__)

_AMOUNT = r"(?<![\w.%])\$?\s?((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?)(?![\d%])"
_EXACT_AMOUNT = r"(?<![\w.%])\$?\s?((?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2})(?![\d%])"
_ISO_DATETIME = r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
_NUMERIC_DATE = r"(\d{2}[/-]\d{2}[/-]\d{4})"

_ISSUER_LABELS = [r"\bemisor\b"]
_RECEIVER_LABELS = [r"\breceptor\b", r"\bcliente\b"]
_FOLIO_LABELS = [r"folio\s+fiscal", r"\buuid\b"]
_DATE_LABELS = [r"\bfecha\b"]
_SUBTOTAL_LABELS = [r"\bsub\s*-?\s*total\b"]
_TAX_LABELS = [r"\bI\.?V\.?A\b", r"impuestos\s+trasladados"]
_TOTAL_LABELS = [r"(?<!sub)(?<!sub )(?<!sub-)\btotal\b"]
_CURRENCY_LABELS = [r"\bmoneda\b"]

_LABEL_WINDOW = 120
_AMOUNT_WINDOW = 40
_AMBIGUITY_PENALTY = 0.1
_MAX_AMBIGUITY_PENALTY = 0.3


@dataclass
class _Match:
    """Best candidate for one field plus what it was chosen from."""

    value: Any
    labeled: bool
    alternatives: int


def _best_match(
    text: str,
    pattern: str,
    labels: list[str],
    normalize: Callable[[str], Any],
    window: int = _LABEL_WINDOW,
    flags: int = 0,
) -> _Match | None:
    """Find the candidate nearest after any of the labels.

    Falls back to the first candidate in the document when no label is
    followed by a candidate within the window.
    """
    candidates = [
        (m.start(), value)
        for m in re.finditer(pattern, text, flags)
        if (value := normalize(m.group(1) if m.groups() else m.group(0))) is not None
    ]
    if not candidates:
        return None

    nearest_per_label: list[tuple[int, int, Any]] = []
    for label in labels:
        for label_match in re.finditer(label, text, re.IGNORECASE):
            following = [
                (start - label_match.end(), start, value)
                for start, value in candidates
                if 0 <= start - label_match.end() <= window
            ]
            if following:
                nearest_per_label.append(min(following, key=lambda c: (c[0], c[1])))

    if nearest_per_label:
        _, _, value = min(nearest_per_label, key=lambda c: (c[0], c[1]))
        distinct = {str(v) for _, _, v in nearest_per_label}
        return _Match(value=value, labeled=True, alternatives=len(distinct))

    distinct = {str(v) for _, v in candidates}
    return _Match(value=candidates[0][1], labeled=False, alternatives=len(distinct))


def _confidence(match: _Match, exact: bool) -> float:
    """Score a match by label proximity, format specificity and uniqueness."""
    if match.labeled:
        score = 0.95 if exact else 0.75
    else:
        score = 0.6 if exact else 0.4
    penalty = min(_AMBIGUITY_PENALTY * (match.alternatives - 1), _MAX_AMBIGUITY_PENALTY)
    return round(max(score - penalty, 0.05), 2)


class HeuristicExtractor(FieldExtractor):
    """Regex-based extractor over the PDF text layer."""

    @property
    def tier(self) -> Tier:
        return Tier.PDF_REGEX

    def is_available(self) -> bool:
        return True

    def extract(self, document: RawDocument) -> ExtractionAttempt:
        """Extract invoice fields from the PDF text layer.

        Raises:
            MalformedInputError: If the content is not a readable PDF
        """
        text = self._read_text(document)
        if not text.strip():
            logger.info(f"PDF {document.document_id} has no text layer")

        return ExtractionAttempt(
            tier=self.tier,
            fields=self._extract_fields(text),
            success=True,
        )

    def _read_text(self, document: RawDocument) -> str:
        if document.content.lstrip()[:5] != b"%PDF-":
            raise MalformedInputError("Content is not a PDF (missing %PDF- header)")
        try:
            return extract_text(io.BytesIO(document.content))
        except Exception as e:
            raise MalformedInputError(f"PDF text layer could not be read: {e}") from e

    def _extract_fields(self, text: str) -> dict[InvoiceField, FieldValue]:
        fields: dict[InvoiceField, FieldValue] = {}

        def put(field: InvoiceField, match: _Match | None, exact: bool = True) -> None:
            if match is None:
                fields[field] = FieldValue(value=None, confidence=0.0)
            else:
                fields[field] = FieldValue(value=match.value, confidence=_confidence(match, exact))

        put(
            InvoiceField.UUID,
            _best_match(text, FOLIO_PATTERN, _FOLIO_LABELS, normalize_folio, flags=re.IGNORECASE),
        )

        issuer = _best_match(text, TAX_ID_PATTERN, _ISSUER_LABELS, normalize_tax_id)
        put(InvoiceField.ISSUER_TAX_ID, issuer)
        put(InvoiceField.RECEIVER_TAX_ID, self._receiver_tax_id(text, issuer))

        issue_date = _best_match(text, _ISO_DATETIME, _DATE_LABELS, parse_issue_date)
        exact_date = issue_date is not None
        if issue_date is None:
            issue_date = _best_match(text, _NUMERIC_DATE, _DATE_LABELS, parse_issue_date)
        put(InvoiceField.ISSUE_DATE, issue_date, exact=exact_date)

        for field, labels in (
            (InvoiceField.SUBTOTAL, _SUBTOTAL_LABELS),
            (InvoiceField.TAX, _TAX_LABELS),
            (InvoiceField.TOTAL, _TOTAL_LABELS),
        ):
            put(field, *self._amount(text, labels))

        # Descriptive fields are only reported when found
        currency = _best_match(
            text, r"\b(MXN|USD|EUR)\b", _CURRENCY_LABELS, normalize_currency
        )
        if currency is not None:
            put(InvoiceField.CURRENCY, currency)

        payment_method = _best_match(text, r"\b(PUE|PPD)\b", [r"m[eé]todo\s+de\s+pago"], str)
        if payment_method is not None:
            put(InvoiceField.PAYMENT_METHOD, payment_method)

        email = _best_match(
            text, r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+", [r"correo", r"e-?mail"], str.lower
        )
        if email is not None:
            put(InvoiceField.ISSUER_EMAIL, email)

        phone = _best_match(
            text,
            r"(?:tel[eé]fono|tel\.?)\s*[:\-]?\s*(\+?[\d\s()\-]{10,18}\d)",
            [],
            lambda raw: re.sub(r"[^\d+]", "", raw) or None,
            flags=re.IGNORECASE,
        )
        if phone is not None:
            put(InvoiceField.ISSUER_PHONE, phone, exact=False)

        if issuer is not None:
            name = self._issuer_name(text, issuer.value)
            if name:
                fields[InvoiceField.ISSUER_NAME] = FieldValue(value=name, confidence=0.5)

        concept = self._concept(text)
        if concept:
            item = LineItem(description=concept, amount=fields[InvoiceField.SUBTOTAL].value)
            fields[InvoiceField.LINE_ITEMS] = FieldValue(value=[item], confidence=0.4)

        return fields

    def _receiver_tax_id(self, text: str, issuer: _Match | None) -> _Match | None:
        """Receiver RFC near its label, else the first RFC that is not the issuer's."""
        receiver = _best_match(text, TAX_ID_PATTERN, _RECEIVER_LABELS, normalize_tax_id)
        if receiver is None or issuer is None:
            return receiver
        if receiver.labeled and receiver.value != issuer.value:
            return receiver

        others = [
            value
            for m in re.finditer(TAX_ID_PATTERN, text)
            if (value := normalize_tax_id(m.group(0))) != issuer.value
        ]
        if not others:
            return None
        return _Match(value=others[0], labeled=False, alternatives=len(set(others)))

    def _amount(self, text: str, labels: list[str]) -> tuple[_Match | None, bool]:
        match = _best_match(text, _EXACT_AMOUNT, labels, parse_amount, window=_AMOUNT_WINDOW)
        if match is not None and match.labeled:
            return match, True
        loose = _best_match(text, _AMOUNT, labels, parse_amount, window=_AMOUNT_WINDOW)
        if loose is not None and loose.labeled:
            return loose, False
        # Unlabeled numbers are too ambiguous to be an amount
        return None, False

    def _issuer_name(self, text: str, issuer_tax_id: str) -> str | None:
        """Issuer legal name: text before the RFC on its line, else the previous line."""
        lines = [line.strip() for line in text.splitlines()]
        for index, line in enumerate(lines):
            if issuer_tax_id not in line:
                continue
            before = re.sub(r"(?i)\b(emisor|rfc)\b\s*:?", "", line.split(issuer_tax_id)[0])
            before = before.strip(" :-,")
            if len(before) >= 3:
                return before
            previous = next((prev for prev in reversed(lines[:index]) if prev), "")
            previous = re.sub(r"(?i)^\s*(emisor|raz[oó]n\s+social)\s*:?", "", previous).strip()
            return previous if len(previous) >= 3 else None
        return None

    def _concept(self, text: str) -> str | None:
        match = re.search(r"(?:PRODUCTO|DESCRIPCI[OÓ]N)\s+([^\n]{10,100})", text, re.IGNORECASE)
        if match:
            return match.group(1).strip()
        match = re.search(r"DESCRIPCI[OÓ]N[^\n]*\n\s*([^\n]{10,100})", text, re.IGNORECASE)
        return match.group(1).strip() if match else None
