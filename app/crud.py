import logging
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import BookNotFoundError
from app.models import Book, Chapter, Page, ProcessingStatus, ProcessingStep, SubStory

logger = logging.getLogger("storybook-admin")

ACTIVE_STEP_STATUSES = {ProcessingStatus.IN_PROGRESS.value, ProcessingStatus.PROCESSING.value}
CANCELLED_STEP_MESSAGE = "Pipeline stopped by user"


def _apply(obj, updates: dict, protected=("id",)):
    for key, value in updates.items():
        if key in protected:
            continue
        setattr(obj, key, value)
    return obj


async def _insert_or_patch(
    session: AsyncSession,
    obj,
    updates: dict,
    find_existing: Callable[[], Awaitable[Optional[object]]],
    protected=("id",),
):
    """
    Insert a freshly built row. If a concurrent writer inserted the same
    natural key first, the unique constraint rejects ours and the winner is
    patched instead.
    """
    session.add(obj)
    try:
        await session.commit()
        return obj
    except IntegrityError as e:
        logger.warning(f"Natural key collision on {type(obj).__name__}, patching existing row: {e}")
        await session.rollback()
        existing = await find_existing()
        if existing is None:
            raise
        _apply(existing, updates, protected)
        await session.commit()
        return existing


# ---- Books ----
async def fetch_all_books(session: AsyncSession) -> List[Book]:
    q = await session.execute(select(Book))
    return list(q.scalars().all())


async def fetch_book_by_id(session: AsyncSession, book_id: str):
    q = await session.execute(select(Book).where(Book.id == book_id))
    return q.scalar_one_or_none()


async def fetch_book_by_safe_title(session: AsyncSession, safe_title: str):
    q = await session.execute(select(Book).where(Book.safe_title == safe_title).limit(1))
    return q.scalar_one_or_none()


async def create_book(
    session: AsyncSession,
    safe_title: str,
    title: str = None,
    chapter_count: int = 0,
    status: str = "pending",
    gcs_base_url: str = None,
):
    book = Book(
        safe_title=safe_title,
        title=title or safe_title.replace("_", " "),
        chapter_count=chapter_count or 0,
        status=status or "pending",
        gcs_base_url=gcs_base_url,
    )
    session.add(book)
    await session.commit()
    return book


async def update_book(session: AsyncSession, book_id: str, **updates):
    book = await fetch_book_by_id(session, book_id)
    if not book:
        return None
    # safe_title is the natural key children hang off; never rewrite it
    _apply(book, updates, protected=("id", "safe_title"))
    await session.commit()
    return book


async def upsert_book(session: AsyncSession, safe_title: str, **fields):
    existing = await fetch_book_by_safe_title(session, safe_title)
    if existing:
        _apply(existing, fields, protected=("id", "safe_title"))
        await session.commit()
        return existing

    book = Book(
        safe_title=safe_title,
        title=fields.get("title") or safe_title.replace("_", " "),
        chapter_count=fields.get("chapter_count") or 0,
        status=fields.get("status") or "pending",
        gcs_base_url=fields.get("gcs_base_url"),
    )
    return await _insert_or_patch(
        session,
        book,
        fields,
        lambda: fetch_book_by_safe_title(session, safe_title),
        protected=("id", "safe_title"),
    )


# ---- Chapters ----
async def fetch_chapters_by_book_id(session: AsyncSession, book_id: str) -> List[Chapter]:
    """Chapters of a book, sorted in memory by order_index."""
    q = await session.execute(select(Chapter).where(Chapter.book_id == book_id))
    chapters = list(q.scalars().all())
    chapters.sort(key=lambda c: c.order_index or 0)
    return chapters


async def fetch_chapter_by_id(session: AsyncSession, chapter_id: str):
    q = await session.execute(select(Chapter).where(Chapter.id == chapter_id))
    return q.scalar_one_or_none()


async def create_chapter(
    session: AsyncSession,
    book_id: str,
    title: str,
    order_index: int = 0,
    narration_version: str = "",
    processing_status: str = "pending",
):
    chapter = Chapter(
        book_id=book_id,
        title=title,
        order_index=order_index,
        narration_version=narration_version or "",
        processing_status=processing_status or "pending",
    )
    session.add(chapter)
    await session.commit()
    return chapter


async def update_chapter(session: AsyncSession, chapter_id: str, **updates):
    chapter = await fetch_chapter_by_id(session, chapter_id)
    if not chapter:
        return None
    _apply(chapter, updates, protected=("id", "book_id", "order_index"))
    await session.commit()
    return chapter


async def upsert_chapter(session: AsyncSession, book_id: str, title: str, **fields):
    """
    Find a chapter by (book_id, title) and patch it, or create it with
    order_index set to the book's current chapter count.
    """
    chapters = await fetch_chapters_by_book_id(session, book_id)
    existing = next((c for c in chapters if c.title == title), None)
    protected = ("id", "book_id", "title", "order_index")
    if existing:
        _apply(existing, fields, protected)
        await session.commit()
        return existing

    chapter = Chapter(
        book_id=book_id,
        title=title,
        order_index=len(chapters),
        narration_version=fields.get("narration_version") or "",
        processing_status=fields.get("processing_status") or "pending",
    )

    async def find_existing():
        q = await session.execute(
            select(Chapter).where(Chapter.book_id == book_id, Chapter.title == title)
        )
        return q.scalar_one_or_none()

    return await _insert_or_patch(session, chapter, fields, find_existing, protected)


# ---- Sub-stories ----
async def fetch_sub_stories_by_chapter_id(
    session: AsyncSession, chapter_id: str
) -> List[SubStory]:
    q = await session.execute(select(SubStory).where(SubStory.chapter_id == chapter_id))
    sub_stories = list(q.scalars().all())
    sub_stories.sort(key=lambda s: s.sub_story_number or 0)
    return sub_stories


async def fetch_sub_story(session: AsyncSession, chapter_id: str, sub_story_number: int):
    q = await session.execute(
        select(SubStory).where(
            SubStory.chapter_id == chapter_id,
            SubStory.sub_story_number == sub_story_number,
        )
    )
    return q.scalar_one_or_none()


async def upsert_sub_story(
    session: AsyncSession,
    chapter_id: str,
    sub_story_number: int,
    title: str = None,
    content: str = None,
):
    if not chapter_id or not isinstance(chapter_id, str):
        raise ValueError(f"Invalid chapter_id: {chapter_id!r}")

    # content is always stored as a string, empty included
    fields = {
        "title": title or "",
        "content": "" if content is None else str(content),
    }
    logger.info(
        f"Upserting sub-story chapter={chapter_id} number={sub_story_number} "
        f"content_length={len(fields['content'])}"
    )
    existing = await fetch_sub_story(session, chapter_id, sub_story_number)
    if existing:
        _apply(existing, fields)
        await session.commit()
        return existing

    sub_story = SubStory(chapter_id=chapter_id, sub_story_number=sub_story_number, **fields)
    return await _insert_or_patch(
        session,
        sub_story,
        fields,
        lambda: fetch_sub_story(session, chapter_id, sub_story_number),
    )


# ---- Pages ----
async def _fetch_pages(session: AsyncSession, criteria) -> List[Page]:
    q = await session.execute(select(Page).where(criteria))
    pages = list(q.scalars().all())
    pages.sort(key=lambda p: p.page_number or 0)
    return pages


async def fetch_pages_by_chapter_id(session: AsyncSession, chapter_id: str) -> List[Page]:
    """Pages owned directly by a chapter (legacy flat schema)."""
    return await _fetch_pages(session, Page.chapter_id == chapter_id)


async def fetch_pages_by_sub_story_id(session: AsyncSession, sub_story_id: str) -> List[Page]:
    return await _fetch_pages(session, Page.sub_story_id == sub_story_id)


async def fetch_page_by_id(session: AsyncSession, page_id: str):
    q = await session.execute(select(Page).where(Page.id == page_id))
    return q.scalar_one_or_none()


async def create_page(
    session: AsyncSession,
    page_number: int,
    chapter_id: str = None,
    sub_story_id: str = None,
    dialogue: str = "",
    illustration_prompt: str = "",
    image_url: str = None,
    image_gcs_key: str = None,
):
    if bool(chapter_id) == bool(sub_story_id):
        raise ValueError("A page is owned by exactly one of chapter_id or sub_story_id")
    page = Page(
        chapter_id=chapter_id,
        sub_story_id=sub_story_id,
        page_number=page_number,
        dialogue=dialogue or "",
        illustration_prompt=illustration_prompt or "",
        image_url=image_url,
        image_gcs_key=image_gcs_key,
    )
    session.add(page)
    await session.commit()
    return page


async def update_page(session: AsyncSession, page_id: str, **updates):
    page = await fetch_page_by_id(session, page_id)
    if not page:
        return None
    _apply(page, updates, protected=("id", "chapter_id", "sub_story_id"))
    await session.commit()
    return page


async def upsert_page(
    session: AsyncSession,
    page_number: int,
    chapter_id: str = None,
    sub_story_id: str = None,
    **fields,
):
    """Upsert by (owner_id, page_number); the owner is a chapter or a sub-story."""
    if bool(chapter_id) == bool(sub_story_id):
        raise ValueError("A page is owned by exactly one of chapter_id or sub_story_id")
    if sub_story_id:
        pages = await fetch_pages_by_sub_story_id(session, sub_story_id)
    else:
        pages = await fetch_pages_by_chapter_id(session, chapter_id)
    protected = ("id", "chapter_id", "sub_story_id", "page_number")
    existing = next((p for p in pages if p.page_number == page_number), None)
    if existing:
        _apply(existing, fields, protected)
        await session.commit()
        return existing

    page = Page(
        chapter_id=chapter_id,
        sub_story_id=sub_story_id,
        page_number=page_number,
        dialogue=fields.get("dialogue") or "",
        illustration_prompt=fields.get("illustration_prompt") or "",
        image_url=fields.get("image_url"),
        image_gcs_key=fields.get("image_gcs_key"),
    )

    async def find_existing():
        owner = Page.sub_story_id == sub_story_id if sub_story_id else Page.chapter_id == chapter_id
        q = await session.execute(select(Page).where(owner, Page.page_number == page_number))
        return q.scalar_one_or_none()

    return await _insert_or_patch(session, page, fields, find_existing, protected)


# ---- Processing steps ----
async def fetch_processing_steps_by_book_id(
    session: AsyncSession, book_id: str
) -> List[ProcessingStep]:
    q = await session.execute(select(ProcessingStep).where(ProcessingStep.book_id == book_id))
    return list(q.scalars().all())


async def fetch_processing_steps_by_safe_title(session: AsyncSession, safe_title: str):
    book = await fetch_book_by_safe_title(session, safe_title)
    if not book:
        return []
    return await fetch_processing_steps_by_book_id(session, book.id)


async def update_processing_step(session: AsyncSession, step_id: str, **updates):
    q = await session.execute(select(ProcessingStep).where(ProcessingStep.id == step_id))
    step = q.scalar_one_or_none()
    if not step:
        return None
    _apply(step, updates, protected=("id", "book_id"))
    await session.commit()
    return step


async def cancel_processing_steps_by_book_id(session: AsyncSession, book_id: str) -> int:
    """Move every active step to cancelled; terminal steps are left alone."""
    steps = await fetch_processing_steps_by_book_id(session, book_id)
    active = [s for s in steps if (s.status or "").lower() in ACTIVE_STEP_STATUSES]
    for step in active:
        step.status = ProcessingStatus.CANCELLED.value
        step.error_message = CANCELLED_STEP_MESSAGE
    if active:
        await session.commit()
    return len(active)


async def delete_processing_steps_by_book_id(session: AsyncSession, book_id: str) -> int:
    result = await session.execute(
        delete(ProcessingStep).where(ProcessingStep.book_id == book_id)
    )
    await session.commit()
    return result.rowcount or 0


# ---- Cascade delete ----
async def delete_pages_by_chapter_id(session: AsyncSession, chapter_id: str) -> None:
    """Delete a chapter's pages, including those owned by its sub-stories."""
    sub_story_ids = [s.id for s in await fetch_sub_stories_by_chapter_id(session, chapter_id)]
    if sub_story_ids:
        await session.execute(delete(Page).where(Page.sub_story_id.in_(sub_story_ids)))
        await session.execute(delete(SubStory).where(SubStory.id.in_(sub_story_ids)))
    await session.execute(delete(Page).where(Page.chapter_id == chapter_id))
    await session.commit()


async def delete_chapters_by_book_id(session: AsyncSession, book_id: str) -> None:
    for chapter in await fetch_chapters_by_book_id(session, book_id):
        chapter_id = chapter.id
        await delete_pages_by_chapter_id(session, chapter_id)
        await session.execute(delete(Chapter).where(Chapter.id == chapter_id))
        await session.commit()


async def delete_book(session: AsyncSession, safe_title: str) -> None:
    """
    Cascade: processing steps, then each chapter's pages and the chapter,
    then the book. Nothing here is transactional across steps; a crash midway
    leaves orphans that must be cleaned up by hand.
    """
    book = await fetch_book_by_safe_title(session, safe_title)
    if not book:
        raise BookNotFoundError(safe_title)
    book_id = book.id

    await delete_processing_steps_by_book_id(session, book_id)
    await delete_chapters_by_book_id(session, book_id)
    await session.execute(delete(Book).where(Book.id == book_id))
    await session.commit()
    logger.info(f"Deleted book {safe_title} (id={book_id}) and its children")


# ---- Raw entity browser ----
ENTITY_COLLECTIONS = {
    "books": Book,
    "chapters": Chapter,
    "pages": Page,
    "sub_stories": SubStory,
    "processing_steps": ProcessingStep,
}


async def fetch_entities(session: AsyncSession, collection: str, limit: int = 100):
    model = ENTITY_COLLECTIONS.get(collection)
    if model is None:
        raise KeyError(collection)
    q = await session.execute(select(model).limit(limit))
    return list(q.scalars().all())
