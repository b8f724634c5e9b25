"""Contact (counterparty) data models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BlacklistStatus(str, Enum):
    """Result of a tax authority blacklist lookup (list 69-B).

    EFOS: issuer of invoices for simulated operations
    EDOS: deducts invoices from an EFOS
    UNKNOWN: lookup could not be completed; never treated as NONE
    """

    NONE = "NONE"
    EFOS = "EFOS"
    EDOS = "EDOS"
    UNKNOWN = "UNKNOWN"

    @property
    def is_blacklisted(self) -> bool:
        return self in (BlacklistStatus.EFOS, BlacklistStatus.EDOS)


class ContactSighting(BaseModel):
    """Counterparty identity as observed on one invoice."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    tax_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    amount: Decimal = Decimal("0")
    seen_at: datetime
    confidence: float = Field(0.0, ge=0, le=1)


class ContactRecord(BaseModel):
    """Registry entry for one counterparty, keyed by tenant and tax ID.

    Attributes:
        identity_confidence: Confidence of the extraction that set the name
        blacklist_status: Last known status, None if never checked
        blacklist_checked_at: When blacklist_status was last refreshed
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    tax_id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    identity_confidence: float = Field(0.0, ge=0, le=1)
    total_invoices: int = Field(0, ge=0)
    total_amount: Decimal = Decimal("0")
    first_seen_at: datetime
    last_seen_at: datetime
    blacklist_status: BlacklistStatus | None = None
    blacklist_checked_at: datetime | None = None
