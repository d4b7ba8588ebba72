"""
Status Aggregator: one coarse pipeline status per book, derived from the
book's own status field and its independently written processing steps.
"""

import logging
from typing import Any, Dict, Iterable, NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app import crud
from app.exceptions import BookNotFoundError
from app.models import ProcessingStatus, ProcessingStep

logger = logging.getLogger("storybook-admin")

ACTIVE = {ProcessingStatus.IN_PROGRESS.value, ProcessingStatus.PROCESSING.value}
CANCELLED_BOOK_STATUS = ProcessingStatus.CANCELLED.value


class PipelineStatus(NamedTuple):
    overall_status: str
    is_processing: bool


def _normalize(status: Optional[str]) -> str:
    return (status or "").strip().lower()


def derive_pipeline_status(
    book_status: Optional[str], step_statuses: Iterable[Optional[str]]
) -> PipelineStatus:
    """
    The book's own status wins when it is active or terminal; the worker
    writes it with stronger guarantees than the individual steps. It is
    matched exactly, as the worker writes it. Otherwise infer from the steps
    (case-insensitively), treating anything ambiguous as still running.
    """
    book = book_status or ""
    if book in ACTIVE:
        return PipelineStatus("processing", True)
    if book == ProcessingStatus.COMPLETED.value:
        return PipelineStatus("completed", False)
    if book == ProcessingStatus.FAILED.value:
        return PipelineStatus("failed", False)

    statuses = [_normalize(s) for s in step_statuses]
    if any(s in ACTIVE for s in statuses):
        return PipelineStatus("processing", True)
    if any(s == ProcessingStatus.FAILED.value for s in statuses):
        return PipelineStatus("failed", False)
    if statuses and all(s == ProcessingStatus.COMPLETED.value for s in statuses):
        return PipelineStatus("completed", False)
    if not statuses:
        return PipelineStatus("pending", False)
    # mixed or unrecognised step statuses
    return PipelineStatus("processing", True)


def step_to_dict(step: ProcessingStep) -> Dict[str, Any]:
    return {
        "id": step.id,
        "step_name": step.step_name,
        "status": step.status,
        "error_message": step.error_message,
        "updated_at": step.updated_at.isoformat() if step.updated_at else None,
        "created_at": step.created_at.isoformat() if step.created_at else None,
    }


async def get_pipeline_status(session: AsyncSession, safe_title: str) -> Dict[str, Any]:
    """
    Status payload for one book. A missing book is a normal state here
    ("no pipeline yet"), so it yields a not_found payload, not an error.
    """
    book = await crud.fetch_book_by_safe_title(session, safe_title)
    if not book:
        logger.info(f"Book not found for safe_title: {safe_title}")
        return {
            "bookSafeTitle": safe_title,
            "bookStatus": "not_found",
            "overallStatus": "unknown",
            "isProcessing": False,
            "steps": [],
        }

    steps = await crud.fetch_processing_steps_by_book_id(session, book.id)
    book_status = book.status or "unknown"
    status = derive_pipeline_status(book.status, [s.status for s in steps])
    logger.info(
        f"Pipeline status for {safe_title}: book_id={book.id}, status={book_status}, "
        f"steps={len(steps)}, overall={status.overall_status}"
    )
    return {
        "bookSafeTitle": safe_title,
        "bookStatus": book_status,
        "overallStatus": status.overall_status,
        "isProcessing": status.is_processing,
        "steps": [step_to_dict(s) for s in steps],
    }


async def stop_pipeline(session: AsyncSession, safe_title: str) -> int:
    """
    Mark the book cancelled and cancel its active steps. Advisory only: the
    worker is not interrupted and may still write a later completion.
    """
    book = await crud.fetch_book_by_safe_title(session, safe_title)
    if not book:
        raise BookNotFoundError(safe_title)
    book_id = book.id
    await crud.update_book(session, book_id, status=CANCELLED_BOOK_STATUS)
    cancelled = await crud.cancel_processing_steps_by_book_id(session, book_id)
    logger.info(f"Stopped pipeline for {safe_title}: {cancelled} step(s) cancelled")
    return cancelled


async def remove_pipeline_history(session: AsyncSession, safe_title: str) -> int:
    """Forget processing history, keep content."""
    book = await crud.fetch_book_by_safe_title(session, safe_title)
    if not book:
        raise BookNotFoundError(safe_title)
    removed = await crud.delete_processing_steps_by_book_id(session, book.id)
    logger.info(f"Removed {removed} processing step(s) for {safe_title}")
    return removed
