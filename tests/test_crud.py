"""Tests for the entity store adapter: natural-key upserts, cancellation and cascade delete."""

import pytest
from sqlalchemy import func, select

from app import crud
from app.exceptions import BookNotFoundError
from app.models import Book, Chapter, Page, ProcessingStep, SubStory

pytestmark = pytest.mark.anyio


async def _count(session, model) -> int:
    q = await session.execute(select(func.count()).select_from(model))
    return q.scalar_one()


async def test_upsert_book_twice_keeps_one_row(session) -> None:
    first = await crud.upsert_book(session, "The_Little_Fox", chapter_count=2)
    second = await crud.upsert_book(session, "The_Little_Fox", title="The Little Fox!")

    assert first.id == second.id
    assert second.title == "The Little Fox!"
    assert second.safe_title == "The_Little_Fox"
    assert await _count(session, Book) == 1


async def test_upsert_book_defaults_title_from_slug(session) -> None:
    book = await crud.upsert_book(session, "Harry_Potter")

    assert book.title == "Harry Potter"
    assert book.status == "pending"


async def test_update_book_never_rewrites_safe_title(session) -> None:
    book = await crud.create_book(session, "Moon_Boat", title="Moon Boat")

    updated = await crud.update_book(session, book.id, title="Sun Boat", safe_title="Sun_Boat")

    assert updated.title == "Sun Boat"
    assert updated.safe_title == "Moon_Boat"


async def test_chapter_order_index_assigned_once(session) -> None:
    book = await crud.upsert_book(session, "Three_Bears")

    first = await crud.upsert_chapter(session, book.id, "Porridge")
    second = await crud.upsert_chapter(session, book.id, "Chairs")
    third = await crud.upsert_chapter(session, book.id, "Beds")
    again = await crud.upsert_chapter(
        session, book.id, "Porridge", narration_version="Too hot.", order_index=7
    )

    assert [first.order_index, second.order_index, third.order_index] == [0, 1, 2]
    assert again.id == first.id
    assert again.order_index == 0
    assert again.narration_version == "Too hot."

    chapters = await crud.fetch_chapters_by_book_id(session, book.id)
    assert [c.title for c in chapters] == ["Porridge", "Chairs", "Beds"]


async def test_upsert_sub_story_keeps_empty_content_as_string(session) -> None:
    book = await crud.upsert_book(session, "Tide_Pools")
    chapter = await crud.upsert_chapter(session, book.id, "Low Tide")

    created = await crud.upsert_sub_story(session, chapter.id, 1, title="Crab", content=None)
    updated = await crud.upsert_sub_story(session, chapter.id, 1, title="Crab", content="")

    assert created.id == updated.id
    assert updated.content == ""
    assert await _count(session, SubStory) == 1


async def test_upsert_sub_story_rejects_missing_chapter_id(session) -> None:
    with pytest.raises(ValueError):
        await crud.upsert_sub_story(session, "", 1, title="Nobody")


async def test_upsert_page_by_owner_and_number(session) -> None:
    book = await crud.upsert_book(session, "Garden")
    chapter = await crud.upsert_chapter(session, book.id, "Seeds")
    sub_story = await crud.upsert_sub_story(session, chapter.id, 1, title="Sprout")

    flat = await crud.upsert_page(session, 1, chapter_id=chapter.id, dialogue="Dig.")
    grouped = await crud.upsert_page(session, 1, sub_story_id=sub_story.id, dialogue="Grow.")
    flat_again = await crud.upsert_page(session, 1, chapter_id=chapter.id, dialogue="Dig deeper.")

    assert flat.id == flat_again.id
    assert flat.id != grouped.id
    assert flat_again.dialogue == "Dig deeper."
    assert [p.dialogue for p in await crud.fetch_pages_by_chapter_id(session, chapter.id)] == ["Dig deeper."]
    assert [p.dialogue for p in await crud.fetch_pages_by_sub_story_id(session, sub_story.id)] == ["Grow."]


async def test_upsert_page_requires_exactly_one_owner(session) -> None:
    with pytest.raises(ValueError):
        await crud.upsert_page(session, 1)
    with pytest.raises(ValueError):
        await crud.upsert_page(session, 1, chapter_id="a", sub_story_id="b")


async def test_pages_sorted_by_page_number(session) -> None:
    book = await crud.upsert_book(session, "Counting")
    chapter = await crud.upsert_chapter(session, book.id, "Numbers")
    for number in (3, 1, 2):
        await crud.upsert_page(session, number, chapter_id=chapter.id, dialogue=str(number))

    pages = await crud.fetch_pages_by_chapter_id(session, chapter.id)

    assert [p.page_number for p in pages] == [1, 2, 3]


async def test_insert_collision_patches_existing_row(session) -> None:
    existing = await crud.create_book(session, "Race", title="Race")
    existing_id = existing.id
    loser = Book(safe_title="Race", title="Race (late)")

    winner = await crud._insert_or_patch(
        session,
        loser,
        {"title": "Race (patched)"},
        lambda: crud.fetch_book_by_safe_title(session, "Race"),
        protected=("id", "safe_title"),
    )

    assert winner.id == existing_id
    assert winner.title == "Race (patched)"
    assert await _count(session, Book) == 1


async def test_cancel_only_touches_active_steps(session) -> None:
    book = await crud.upsert_book(session, "Owl_Night")
    for name, status in [
        ("outline", "completed"),
        ("illustrate", "IN_PROGRESS"),
        ("narrate", "processing"),
        ("review", "failed"),
        ("publish", "pending"),
    ]:
        session.add(ProcessingStep(book_id=book.id, step_name=name, status=status))
    await session.commit()

    cancelled = await crud.cancel_processing_steps_by_book_id(session, book.id)

    assert cancelled == 2
    steps = {s.step_name: s for s in await crud.fetch_processing_steps_by_book_id(session, book.id)}
    assert steps["illustrate"].status == "cancelled"
    assert steps["narrate"].status == "cancelled"
    assert steps["narrate"].error_message == crud.CANCELLED_STEP_MESSAGE
    assert steps["outline"].status == "completed"
    assert steps["review"].status == "failed"
    assert steps["publish"].status == "pending"


async def test_delete_book_cascades(session) -> None:
    book = await crud.upsert_book(session, "Cascade")
    keep = await crud.upsert_book(session, "Keep")
    legacy = await crud.upsert_chapter(session, book.id, "Legacy")
    grouped = await crud.upsert_chapter(session, book.id, "Grouped")
    other = await crud.upsert_chapter(session, keep.id, "Other")
    sub_story = await crud.upsert_sub_story(session, grouped.id, 1, title="One")
    await crud.upsert_page(session, 1, chapter_id=legacy.id)
    await crud.upsert_page(session, 1, sub_story_id=sub_story.id)
    await crud.upsert_page(session, 1, chapter_id=other.id)
    session.add(ProcessingStep(book_id=book.id, step_name="outline", status="completed"))
    await session.commit()

    await crud.delete_book(session, "Cascade")

    assert await crud.fetch_book_by_safe_title(session, "Cascade") is None
    assert await _count(session, Book) == 1
    assert await _count(session, Chapter) == 1
    assert await _count(session, SubStory) == 0
    assert await _count(session, Page) == 1
    assert await _count(session, ProcessingStep) == 0


async def test_delete_missing_book_raises(session) -> None:
    with pytest.raises(BookNotFoundError):
        await crud.delete_book(session, "Nope")


async def test_fetch_entities_unknown_collection(session) -> None:
    with pytest.raises(KeyError):
        await crud.fetch_entities(session, "authors")


async def test_create_and_update_chapter_keeps_order_index(session) -> None:
    book = await crud.upsert_book(session, "Three_Bears")
    chapter = await crud.create_chapter(session, book.id, "Porridge", order_index=4)

    updated = await crud.update_chapter(
        session, chapter.id, order_index=9, book_id="other", narration_version="Just right."
    )

    assert updated.order_index == 4
    assert updated.book_id == book.id
    assert updated.narration_version == "Just right."
    assert (await crud.fetch_chapter_by_id(session, chapter.id)).order_index == 4
    assert await crud.update_chapter(session, "missing", title="x") is None


async def test_create_and_update_page_keeps_owner(session) -> None:
    book = await crud.upsert_book(session, "Garden")
    chapter = await crud.upsert_chapter(session, book.id, "Seeds")
    sub_story = await crud.upsert_sub_story(session, chapter.id, 1, title="Sprout")
    page = await crud.create_page(session, 1, chapter_id=chapter.id, dialogue="Dig.")

    updated = await crud.update_page(
        session, page.id, sub_story_id=sub_story.id, chapter_id=None, image_url="https://a/b.png"
    )

    assert updated.chapter_id == chapter.id
    assert updated.sub_story_id is None
    assert updated.image_url == "https://a/b.png"
    assert (await crud.fetch_page_by_id(session, page.id)).dialogue == "Dig."
    assert await crud.fetch_pages_by_sub_story_id(session, sub_story.id) == []
    assert await crud.update_page(session, "missing", dialogue="x") is None
    with pytest.raises(ValueError):
        await crud.create_page(session, 2)


async def test_update_processing_step_and_fetch_by_safe_title(session) -> None:
    book = await crud.upsert_book(session, "Owl_Night")
    step = ProcessingStep(book_id=book.id, step_name="narrate", status="in_progress")
    session.add(step)
    await session.commit()

    updated = await crud.update_processing_step(
        session, step.id, status="failed", error_message="voice timeout", book_id="other"
    )
    steps = await crud.fetch_processing_steps_by_safe_title(session, "Owl_Night")

    assert updated.book_id == book.id
    assert [(s.step_name, s.status, s.error_message) for s in steps] == [
        ("narrate", "failed", "voice timeout")
    ]
    assert await crud.fetch_processing_steps_by_safe_title(session, "Nobody") == []
    assert await crud.update_processing_step(session, "missing", status="failed") is None
