"""Error taxonomy for the invoice pipeline.

Per-tier failures are absorbed by tier escalation and transient network
failures by bounded retries. Only exhausted extraction and invalid review
transitions reach the caller as exceptions; insufficient credits and
blacklist lookup failures are reported on the returned result instead.
"""

from typing import Any


class InvoicePipelineError(Exception):
    """Base exception for invoice pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for job results and logs."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class MalformedInputError(InvoicePipelineError):
    """Document cannot be parsed at all by the attempted tier."""


class ExtractionExhaustedError(InvoicePipelineError):
    """Every applicable tier was tried and none produced a usable extraction."""

    def __init__(self, message: str, attempts: list[Any] | None = None) -> None:
        self.attempts = list(attempts or [])
        super().__init__(
            message,
            details={"tiers": [attempt.tier.name for attempt in self.attempts]},
        )


class InsufficientCreditsError(InvoicePipelineError):
    """Prepaid credit balance could not cover the extraction cost."""

    def __init__(self, message: str, required: int = 0) -> None:
        self.required = required
        super().__init__(message, details={"required": required})


class CreditLedgerUnavailable(InvoicePipelineError):
    """Credit ledger could not complete the debit.

    Attributes:
        retryable: Whether the failure is transient (timeout, 5xx, rate limit)
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message, details={"retryable": retryable})


class BlacklistLookupFailure(InvoicePipelineError):
    """Blacklist lookup could not be completed.

    Attributes:
        retryable: Whether the failure is transient (timeout, 5xx, rate limit)
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        self.retryable = retryable
        super().__init__(message, details={"retryable": retryable})


class InvalidTransitionError(InvoicePipelineError):
    """Review attempted on an invoice that is not pending review."""


class InvoiceNotFoundError(InvoicePipelineError):
    """Invoice id is unknown to the invoice store."""


class CloudServiceError(InvoicePipelineError):
    """Cloud parse service call failed.

    Attributes:
        status_code: HTTP status returned by the service, if any
        retryable: Whether the failure is transient (timeout, 5xx, rate limit)
    """

    def __init__(
        self, message: str, status_code: int | None = None, retryable: bool = False
    ) -> None:
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message, details={"status_code": status_code, "retryable": retryable})


def is_retryable_status(status_code: int) -> bool:
    """Rate limits and server errors are transient; other 4xx are not."""
    return status_code == 429 or status_code >= 500


def is_transient(exc: BaseException) -> bool:
    """Retry predicate shared by the HTTP clients."""
    return isinstance(exc, InvoicePipelineError) and getattr(exc, "retryable", False)
