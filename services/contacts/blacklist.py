"""Blacklist (EFOS/EDOS) lookup capability and its HTTP client."""

import logging
from typing import Protocol

import httpx

from services.contacts.models import BlacklistStatus
from services.shared.config import Settings
from services.shared.errors import BlacklistLookupFailure, is_retryable_status

logger = logging.getLogger(__name__)


class BlacklistLookup(Protocol):
    """Capability consumed by ContactReconciler."""

    def check(self, tax_id: str) -> BlacklistStatus:
        """Current status of the tax ID.

        Raises:
            BlacklistLookupFailure: If the lookup could not be completed
        """
        ...


class HttpBlacklistLookup:
    """httpx client for the blacklist service.

    ``GET {base}/blacklist/{tax_id}`` answers ``{"status": "NONE|EFOS|EDOS"}``;
    a 404 means the tax ID is not listed.
    """

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._base_url = settings.blacklist_base_url.rstrip("/")
        self._timeout = settings.blacklist_timeout_seconds
        self._client = client or httpx.Client()

    def check(self, tax_id: str) -> BlacklistStatus:
        try:
            response = self._client.get(
                f"{self._base_url}/blacklist/{tax_id}", timeout=self._timeout
            )
            if response.status_code == 404:
                return BlacklistStatus.NONE
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise BlacklistLookupFailure(
                f"Blacklist lookup for {tax_id} timed out after {self._timeout}s"
            ) from e
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            raise BlacklistLookupFailure(
                f"Blacklist lookup for {tax_id} returned HTTP {status_code}",
                retryable=is_retryable_status(status_code),
            ) from e
        except httpx.TransportError as e:
            raise BlacklistLookupFailure(f"Blacklist lookup transport error: {e}") from e
        except httpx.RequestError as e:
            raise BlacklistLookupFailure(
                f"Blacklist lookup for {tax_id} failed: {e}", retryable=False
            ) from e

        try:
            status = BlacklistStatus(response.json()["status"])
        except (ValueError, KeyError, TypeError) as e:
            raise BlacklistLookupFailure(
                f"Blacklist lookup for {tax_id} returned an invalid payload", retryable=False
            ) from e

        if status == BlacklistStatus.UNKNOWN:
            raise BlacklistLookupFailure(
                f"Blacklist service could not resolve {tax_id}", retryable=False
            )
        return status
