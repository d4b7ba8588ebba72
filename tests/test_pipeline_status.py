import pytest

from app import crud
from app.exceptions import BookNotFoundError
from app.models import ProcessingStep
from app.pipeline_status import (
    derive_pipeline_status,
    get_pipeline_status,
    remove_pipeline_history,
    stop_pipeline,
)


@pytest.mark.parametrize(
    "book_status, steps, expected",
    [
        ("completed", ["in_progress", "failed"], ("completed", False)),
        ("failed", ["completed"], ("failed", False)),
        ("in_progress", [], ("processing", True)),
        ("processing", ["completed"], ("processing", True)),
        # book status is matched exactly; other spellings fall through to the steps
        ("COMPLETED", ["failed"], ("failed", False)),
        ("In_Progress", [], ("pending", False)),
        (None, ["COMPLETED", "Completed"], ("completed", False)),
        (None, ["completed", "completed"], ("completed", False)),
        (None, ["completed", "failed"], ("failed", False)),
        (None, ["failed", "processing"], ("processing", True)),
        (None, [], ("pending", False)),
        ("pending", ["completed", "pending"], ("processing", True)),
        ("cancelled", ["cancelled"], ("processing", True)),
    ],
)
def test_derive_pipeline_status(book_status, steps, expected) -> None:
    status = derive_pipeline_status(book_status, steps)

    assert (status.overall_status, status.is_processing) == expected


@pytest.mark.anyio
async def test_status_for_missing_book(session) -> None:
    payload = await get_pipeline_status(session, "Nobody")

    assert payload == {
        "bookSafeTitle": "Nobody",
        "bookStatus": "not_found",
        "overallStatus": "unknown",
        "isProcessing": False,
        "steps": [],
    }


@pytest.mark.anyio
async def test_stop_running_pipeline(session) -> None:
    book = await crud.upsert_book(session, "Harry_Potter")
    await crud.update_book(session, book.id, status=None)
    session.add(ProcessingStep(book_id=book.id, step_name="illustrate", status="in_progress"))
    await session.commit()

    before = await get_pipeline_status(session, "Harry_Potter")
    cancelled = await stop_pipeline(session, "Harry_Potter")
    after = await get_pipeline_status(session, "Harry_Potter")

    assert before["bookStatus"] == "unknown"
    assert before["overallStatus"] == "processing"
    assert before["isProcessing"] is True
    assert cancelled == 1
    assert after["bookStatus"] == "cancelled"
    assert after["steps"][0]["status"] == "cancelled"
    assert after["steps"][0]["error_message"] == "Pipeline stopped by user"
    # "cancelled" is neither active nor terminal, so the derivation stays conservative
    assert after["overallStatus"] == "processing"
    assert after["isProcessing"] is True


@pytest.mark.anyio
async def test_stop_missing_book_raises(session) -> None:
    with pytest.raises(BookNotFoundError):
        await stop_pipeline(session, "Nobody")


@pytest.mark.anyio
async def test_remove_history_keeps_content(session) -> None:
    book = await crud.upsert_book(session, "Owl_Night", status="completed")
    await crud.upsert_chapter(session, book.id, "Dusk")
    session.add(ProcessingStep(book_id=book.id, step_name="outline", status="completed"))
    session.add(ProcessingStep(book_id=book.id, step_name="narrate", status="failed"))
    await session.commit()

    removed = await remove_pipeline_history(session, "Owl_Night")
    payload = await get_pipeline_status(session, "Owl_Night")

    assert removed == 2
    assert payload["steps"] == []
    assert payload["overallStatus"] == "completed"
    assert len(await crud.fetch_chapters_by_book_id(session, book.id)) == 1
