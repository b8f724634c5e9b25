"""Invoice data models for tiered extraction.

Fields follow the CFDI (3.3 / 4.0) fiscal invoice: issuer and receiver RFC,
stamp UUID (folio fiscal), issue date, amounts and line items. The field set
is closed; anything else a source reports is kept as opaque auxiliary data
and never feeds confidence or anomaly logic.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MediaType(str, Enum):
    """Declared media type of an incoming document."""

    XML = "xml"
    PDF = "pdf"

    @classmethod
    def from_upload(cls, content_type: str | None, content: bytes) -> "MediaType":
        """Resolve the media type from the upload's content type, sniffing as fallback.

        Raises:
            ValueError: If the document is neither a CFDI XML nor a PDF
        """
        if content_type in ("application/xml", "text/xml"):
            return cls.XML
        if content_type == "application/pdf":
            return cls.PDF

        head = content[:512].lstrip()
        if head.startswith(b"%PDF-"):
            return cls.PDF
        if head.startswith(b"<") and b"Comprobante" in content[:4096]:
            return cls.XML
        raise ValueError(f"Unsupported document type: {content_type or 'unknown'}")


class RawDocument(BaseModel):
    """Document submitted for extraction. Never mutated by the pipeline."""

    model_config = ConfigDict(frozen=True)

    content: bytes
    media_type: MediaType
    tenant_id: str = Field(..., description="Owning chatbot/tenant identifier")
    document_id: str
    filename: str | None = None
    uploaded_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Tier(IntEnum):
    """Extraction tiers in increasing cost order."""

    XML_LOCAL = 0
    PDF_REGEX = 1
    CLOUD_COST_EFFECTIVE = 2
    CLOUD_AGENTIC = 3

    @property
    def is_local(self) -> bool:
        return self in (Tier.XML_LOCAL, Tier.PDF_REGEX)


class InvoiceField(str, Enum):
    """Closed set of invoice fields an extractor may report."""

    ISSUER_TAX_ID = "issuer_tax_id"
    RECEIVER_TAX_ID = "receiver_tax_id"
    UUID = "uuid"
    ISSUE_DATE = "issue_date"
    SUBTOTAL = "subtotal"
    TAX = "tax"
    TOTAL = "total"
    CURRENCY = "currency"
    LINE_ITEMS = "line_items"
    ISSUER_NAME = "issuer_name"
    RECEIVER_NAME = "receiver_name"
    ISSUER_EMAIL = "issuer_email"
    ISSUER_PHONE = "issuer_phone"
    PAYMENT_METHOD = "payment_method"
    INVOICE_TYPE = "invoice_type"


REQUIRED_FIELDS: frozenset[InvoiceField] = frozenset(
    {
        InvoiceField.ISSUER_TAX_ID,
        InvoiceField.RECEIVER_TAX_ID,
        InvoiceField.UUID,
        InvoiceField.TOTAL,
    }
)


class LineItem(BaseModel):
    """One concept line of the invoice."""

    model_config = ConfigDict(frozen=True)

    description: str = ""
    quantity: Decimal = Decimal("1")
    unit_value: Decimal | None = None
    amount: Decimal | None = None
    product_key: str | None = None
    unit_key: str | None = None


class FieldValue(BaseModel):
    """Extracted value with the extractor's own confidence in it."""

    model_config = ConfigDict(frozen=True)

    value: Any = None
    confidence: float = Field(0.0, ge=0, le=1)

    @property
    def present(self) -> bool:
        return self.value not in (None, "", [], ())


class ExtractionAttempt(BaseModel):
    """Output of one extractor run.

    Attributes:
        tier: Tier that produced this attempt
        fields: Per-field values and confidences
        success: False when the tier could not process the document at all
        error: Failure description when success is False
        cost: Credits incurred (0 for local tiers and failed cloud calls)
        pages: Pages billed by the cloud service
        auxiliary: Unknown fields reported by the source, kept verbatim
    """

    model_config = ConfigDict(frozen=True)

    tier: Tier
    fields: dict[InvoiceField, FieldValue] = Field(default_factory=dict)
    success: bool = True
    error: str | None = None
    cost: int = Field(0, ge=0)
    pages: int = Field(0, ge=0)
    auxiliary: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def failed(cls, tier: Tier, error: str) -> "ExtractionAttempt":
        return cls(tier=tier, success=False, error=error)

    def value(self, field: InvoiceField) -> Any:
        entry = self.fields.get(field)
        return entry.value if entry is not None else None


class ParsedInvoice(BaseModel):
    """Finalized structured invoice. Immutable once created.

    Values are taken as extracted; an inconsistent total is reported as an
    anomaly, never corrected here.
    """

    model_config = ConfigDict(frozen=True)

    issuer_tax_id: str | None = None
    receiver_tax_id: str | None = None
    uuid: str | None = None
    issue_date: datetime | None = None
    subtotal: Decimal | None = None
    tax: Decimal | None = None
    total: Decimal | None = None
    currency: str = "MXN"
    line_items: tuple[LineItem, ...] = ()

    issuer_name: str | None = None
    receiver_name: str | None = None
    issuer_email: str | None = None
    issuer_phone: str | None = None
    payment_method: str | None = None
    invoice_type: str | None = None

    tier: Tier
    confidence: float = Field(..., ge=0, le=1)
    auxiliary: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_attempt(cls, attempt: ExtractionAttempt, confidence: float) -> "ParsedInvoice":
        """Build the invoice record from the winning attempt."""
        values: dict[str, Any] = {
            field.value: entry.value for field, entry in attempt.fields.items() if entry.present
        }
        if "line_items" in values:
            values["line_items"] = tuple(values["line_items"])
        if values.get("currency") is None:
            values.pop("currency", None)
        return cls(
            **values,
            tier=attempt.tier,
            confidence=confidence,
            auxiliary=dict(attempt.auxiliary),
        )
