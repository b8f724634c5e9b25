"""Shared configuration management for the invoice pipeline.

Based on Pydantic Settings v2 best practices:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_APPROVAL_THRESHOLD=0.95
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="cfdi-invoice-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Confidence and approval policy
    approval_threshold: float = Field(
        default=0.9,
        ge=0,
        le=1,
        description="Aggregate confidence at or above which an invoice may be auto-approved",
    )
    reject_floor: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Confidence below which an extraction is considered unusable",
    )
    pdf_cheap_tier_threshold: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="PDF_REGEX confidence at or above which cloud tiers are not tried",
    )
    required_field_cap: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Maximum aggregate confidence when a required field is missing",
    )

    # Anomaly rules
    amount_tolerance: Decimal = Field(
        default=Decimal("0.005"),
        description="Allowed rounding difference between total and subtotal + tax",
    )
    amount_hard_tolerance: Decimal = Field(
        default=Decimal("1.00"),
        description="Total mismatch above which the invoice is rejected outright",
    )
    high_amount_threshold: Decimal = Field(
        default=Decimal("100000"),
        description="Totals above this amount are flagged for manual verification",
    )
    retention_days: int = Field(
        default=1825,
        gt=0,
        description="Invoices issued longer ago than this are out of range",
    )
    blacklist_revalidation_days: int = Field(
        default=7,
        ge=0,
        description="Days before a contact's blacklist status is queried again",
    )

    # Credit costs per tier (local tiers are free)
    cloud_cost_effective_credits_per_page: int = Field(
        default=1,
        ge=0,
        description="Credits charged per page parsed by the cost-effective cloud tier",
    )
    cloud_agentic_credits_per_page: int = Field(
        default=3,
        ge=0,
        description="Credits charged per page parsed by the agentic cloud tier",
    )

    # Cloud parse service
    cloud_parse_base_url: str = Field(
        default="https://api.cloud.llamaindex.ai/api/parsing",
        description="Base URL of the document parsing service",
    )
    cloud_parse_api_key: str = Field(
        default="",
        description="Parsing service API key (use env var APP_CLOUD_PARSE_API_KEY)",
    )
    cloud_cost_effective_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Per-call timeout for the cost-effective tier",
    )
    cloud_agentic_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-call timeout for the agentic tier",
    )
    cloud_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per cloud call, including the first one",
    )
    cloud_retry_initial_wait: float = Field(
        default=0.5,
        ge=0,
        description="Initial exponential backoff wait in seconds",
    )
    cloud_retry_max_wait: float = Field(
        default=8.0,
        ge=0,
        description="Upper bound for a single backoff wait in seconds",
    )
    cloud_retry_jitter: float = Field(
        default=1.0,
        ge=0,
        description="Maximum random jitter added to each backoff wait",
    )

    # Blacklist (EFOS/EDOS) lookup service
    blacklist_base_url: str = Field(
        default="http://localhost:8081",
        description="Base URL of the blacklist lookup service",
    )
    blacklist_timeout_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Per-call timeout for blacklist lookups",
    )

    # Prepaid credit ledger service
    credit_ledger_base_url: str = Field(
        default="http://localhost:8082",
        description="Base URL of the prepaid credit ledger service",
    )
    credit_ledger_timeout_seconds: float = Field(
        default=3.0,
        gt=0,
        description="Per-call timeout for credit debits",
    )

    external_retry_wait: float = Field(
        default=0.2,
        ge=0,
        description="Wait before the single retry of a blacklist lookup or credit debit",
    )

    # Queue configuration
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for the job queue",
    )
    queue_max_jobs: int = Field(
        default=10,
        ge=1,
        description="Documents processed concurrently by one worker",
    )
    queue_job_timeout: int = Field(
        default=300,
        gt=0,
        description="Job timeout in seconds",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
