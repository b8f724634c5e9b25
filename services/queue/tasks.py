"""Async task definitions for invoice processing.

Uses arq (async Redis queue) for background task processing.
Each uploaded document is processed as an independent job; many jobs run
concurrently in one worker (``max_jobs``).

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from services.approval.review import ReviewService
from services.approval.state_machine import ApprovalStateMachine, ApprovalStatus
from services.extraction.schema import MediaType, RawDocument
from services.invoices.store import InMemoryInvoiceStore
from services.pipeline.service import InvoicePipeline, create_invoice_pipeline
from services.shared.config import Settings, get_settings
from services.shared.errors import InvoicePipelineError

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400  # 24h


class JobResult(BaseModel):
    """Result of a background job.

    Attributes:
        job_id: Unique job identifier
        status: Job status (processing, completed, failed)
        document_id: Document ID being processed
        invoice_id: Stored invoice id (if completed)
        approval_status: Decision status (if completed)
        result: Full pipeline result as JSON-compatible dict (if completed)
        error: Error details (if failed)
        created_at: Job creation timestamp
        completed_at: Job completion timestamp
    """

    job_id: str
    status: str
    document_id: str
    invoice_id: str | None = None
    approval_status: str | None = None
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    created_at: str
    completed_at: str | None = None


def _now() -> str:
    return datetime.now(UTC).isoformat()


async def _store_job(redis: Any, result: JobResult) -> None:
    await redis.set(f"job:{result.job_id}", result.model_dump_json(), ex=JOB_TTL_SECONDS)


async def process_invoice(
    ctx: dict[str, Any],
    job_id: str,
    tenant_id: str,
    document_id: str,
    file_content: bytes,
    filename: str | None = None,
    content_type: str | None = None,
) -> dict[str, Any]:
    """Run the invoice pipeline for one uploaded document.

    The pipeline is synchronous (blocking HTTP calls to the cloud tiers), so
    it runs in a thread to keep the worker's event loop free.

    Args:
        ctx: arq context (contains redis connection)
        job_id: Unique job identifier
        tenant_id: Owning tenant
        document_id: Document ID
        file_content: Raw file bytes
        filename: Original filename
        content_type: MIME type declared by the uploader

    Returns:
        JobResult as dict
    """
    logger.info(f"Processing invoice job {job_id} for document {document_id}")

    settings: Settings = ctx.get("settings") or get_settings()
    pipeline: InvoicePipeline = ctx.get("pipeline") or create_invoice_pipeline(settings)
    redis = ctx["redis"]

    result = JobResult(
        job_id=job_id,
        status="processing",
        document_id=document_id,
        created_at=_now(),
    )
    await _store_job(redis, result)

    try:
        document = RawDocument(
            content=file_content,
            media_type=MediaType.from_upload(content_type, file_content),
            tenant_id=tenant_id,
            document_id=document_id,
            filename=filename,
        )
        outcome = await asyncio.to_thread(pipeline.process, document)

        result.status = "completed"
        result.invoice_id = outcome.invoice_id
        result.approval_status = outcome.decision.status.value
        result.result = json.loads(outcome.model_dump_json())
    except InvoicePipelineError as e:
        logger.error(f"Job {job_id} failed: {e.message}")
        result.status = "failed"
        result.error = e.to_dict()
    except ValueError as e:
        logger.error(f"Job {job_id} rejected: {e}")
        result.status = "failed"
        result.error = {"error_type": "UnsupportedDocument", "message": str(e), "details": {}}

    result.completed_at = _now()
    await _store_job(redis, result)
    logger.info(f"Job {job_id} completed with status: {result.status}")

    return result.model_dump()


async def review_invoice(
    ctx: dict[str, Any],
    invoice_id: str,
    decision: str,
    reviewer: str | None = None,
) -> dict[str, Any]:
    """Apply a human review decision to a PENDING_REVIEW invoice.

    Returns:
        Dict with ``success`` and either the decision or the error details
    """
    review_service: ReviewService = ctx["review_service"]
    try:
        updated = review_service.review_invoice(invoice_id, ApprovalStatus(decision), reviewer)
    except InvoicePipelineError as e:
        logger.warning(f"Review of invoice {invoice_id} refused: {e.message}")
        return {"success": False, "error": e.to_dict()}
    except ValueError:
        return {
            "success": False,
            "error": {
                "error_type": "InvalidTransitionError",
                "message": f"Unknown review decision: {decision}",
                "details": {},
            },
        }

    return {"success": True, "decision": json.loads(updated.model_dump_json())}


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize services.

    Called once when worker starts. The pipeline and the review service
    share one invoice store.
    """
    logger.info("Initializing worker services...")
    settings = get_settings()
    store = InMemoryInvoiceStore()
    ctx["settings"] = settings
    ctx["invoice_store"] = store
    ctx["pipeline"] = create_invoice_pipeline(settings, store=store)
    ctx["review_service"] = ReviewService(store, ApprovalStateMachine(settings))
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cleanup resources."""
    logger.info("Worker shutting down...")


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Job timeout settings
    """

    functions = [process_invoice, review_invoice]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> Any:
        """Get Redis settings from configuration."""
        from arq.connections import RedisSettings as ArqRedisSettings

        return ArqRedisSettings.from_dsn(get_settings().redis_url)
