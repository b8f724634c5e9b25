"""HTTP client for the external document parsing service.

The service parses a document in one of two modes and answers with the
invoice fields it found, each with its own confidence score, plus the
number of pages it billed:

    {"fields": {"uuid": {"value": "...", "confidence": 0.97}, ...}, "pages": 1}

Failures are mapped onto CloudServiceError with a ``retryable`` flag:
timeouts, transport errors, 429 and 5xx are transient; any other 4xx is not.
Retrying is the caller's job (see CloudExtractor).
"""

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from services.extraction.schema import MediaType, RawDocument, Tier
from services.shared.config import Settings
from services.shared.errors import CloudServiceError, is_retryable_status

logger = logging.getLogger(__name__)

_MODES = {
    Tier.CLOUD_COST_EFFECTIVE: "cost_effective",
    Tier.CLOUD_AGENTIC: "agentic",
}
_MIME_TYPES = {
    MediaType.XML: "application/xml",
    MediaType.PDF: "application/pdf",
}


class CloudField(BaseModel):
    """One field as reported by the service, score not yet clamped."""

    value: Any = None
    confidence: float | None = None


class CloudParseResponse(BaseModel):
    """Parsed service response."""

    fields: dict[str, CloudField] = Field(default_factory=dict)
    pages: int = Field(1, ge=0)


class CloudParseService(Protocol):
    """Capability consumed by CloudExtractor."""

    def parse(self, document: RawDocument, tier: Tier) -> CloudParseResponse: ...

    def is_configured(self) -> bool: ...


class HttpCloudParseService:
    """httpx-based client for the parsing service."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        """Initialize the client.

        Args:
            settings: Application settings
            client: Optional preconfigured httpx client
        """
        self._base_url = settings.cloud_parse_base_url.rstrip("/")
        self._api_key = settings.cloud_parse_api_key
        self._timeouts = {
            Tier.CLOUD_COST_EFFECTIVE: settings.cloud_cost_effective_timeout_seconds,
            Tier.CLOUD_AGENTIC: settings.cloud_agentic_timeout_seconds,
        }
        self._client = client or httpx.Client()

    def is_configured(self) -> bool:
        return bool(self._api_key)

    def parse(self, document: RawDocument, tier: Tier) -> CloudParseResponse:
        """Send one document to the service in the tier's mode.

        Raises:
            CloudServiceError: On timeout, transport, HTTP or payload errors
        """
        if tier not in _MODES:
            raise ValueError(f"Tier {tier.name} is not a cloud tier")

        filename = document.filename or f"{document.document_id}.{document.media_type.value}"
        try:
            response = self._client.post(
                f"{self._base_url}/extract",
                headers={"Authorization": f"Bearer {self._api_key}"},
                data={"mode": _MODES[tier], "schema": "cfdi"},
                files={"file": (filename, document.content, _MIME_TYPES[document.media_type])},
                timeout=self._timeouts[tier],
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise CloudServiceError(
                f"{tier.name} parse timed out after {self._timeouts[tier]}s", retryable=True
            ) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise CloudServiceError(
                f"{tier.name} parse returned HTTP {status_code}",
                status_code=status_code,
                retryable=is_retryable_status(status_code),
            ) from e
        except httpx.TransportError as e:
            raise CloudServiceError(
                f"{tier.name} parse transport error: {e}", retryable=True
            ) from e
        except httpx.RequestError as e:
            raise CloudServiceError(f"{tier.name} parse request failed: {e}") from e

        try:
            return CloudParseResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise CloudServiceError(f"{tier.name} parse returned an invalid payload: {e}") from e
