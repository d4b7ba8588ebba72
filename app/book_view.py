"""
Book View Resolver.

Read path: one canonical StoryBook per slug. The pipeline's snapshot wins
whenever it exists; otherwise the book is rebuilt from the entity graph. The
two sources are never merged field by field.

Write path: upsert the entity graph from an edited StoryBook. Page writes are
fault isolated; a failed sub-story write drops that sub-story only.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app import crud
from app.exceptions import SubStorySaveError
from app.models import Chapter, Page, SubStory
from app.schemas import (
    ChapterView,
    FlatReadingVersion,
    GroupedReadingVersion,
    PageSection,
    StoryBook,
    SubStoryView,
)
from app.snapshot import SnapshotLoader
from app.utils import is_absolute_url, title_from_safe_title

logger = logging.getLogger("storybook-admin")


class SaveReport:
    """Outcome of an edit-save: which rows could not be written"""

    def __init__(self, safe_title: str):
        self.safe_title = safe_title
        self.page_failures: List[str] = []
        self.sub_story_failures: List[str] = []
        self.snapshot_invalidated = False

    @property
    def success(self) -> bool:
        return not self.sub_story_failures

    @property
    def failures(self) -> List[str]:
        return self.sub_story_failures + self.page_failures

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            message = "Book updated successfully"
        else:
            message = f"Book updated with {len(self.sub_story_failures)} sub-story failure(s)"
        return {"success": self.success, "message": message, "failures": self.failures}


# ---- Page shape shared by both schema generations ----
def section_from_record(record: Dict[str, Any]) -> PageSection:
    image = record.get("image_url") or record.get("image_gcs_key") or record.get("illustration_image") or ""
    return PageSection(
        page_number=record.get("page_number") or 0,
        illustration_prompt=record.get("illustration_prompt") or "",
        dialogue=record.get("dialogue") or "",
        illustration_image=image,
    )


def section_from_page(page: Page) -> PageSection:
    return PageSection(
        page_number=page.page_number or 0,
        illustration_prompt=page.illustration_prompt or "",
        dialogue=page.dialogue or "",
        illustration_image=page.image_url or page.image_gcs_key or "",
    )


def image_fields(illustration_image: str) -> Dict[str, Optional[str]]:
    """Split the single image slot back into url / blob key columns."""
    if not illustration_image:
        return {"image_url": None, "image_gcs_key": None}
    if is_absolute_url(illustration_image):
        return {"image_url": illustration_image, "image_gcs_key": None}
    return {"image_url": None, "image_gcs_key": illustration_image}


# ---- Snapshot path ----
def book_from_snapshot(data: Dict[str, Any], safe_title: str) -> StoryBook:
    book_title = data.get("book_title") or safe_title
    chapters = []
    for chapter in data.get("chapters") or []:
        reading = chapter.get("reading_version") or {}
        narration = chapter.get("narration_version") or chapter.get("content") or ""
        if isinstance(reading.get("sub_stories"), list):
            reading_version = GroupedReadingVersion(
                sub_stories=[
                    SubStoryView(
                        sub_story_number=sub_story.get("sub_story_number") or 0,
                        title=sub_story.get("title") or "",
                        content=sub_story.get("content") or "",
                        sections=[section_from_record(s) for s in sub_story.get("sections") or []],
                    )
                    for sub_story in reading["sub_stories"]
                ]
            )
        else:
            reading_version = FlatReadingVersion(
                sections=[section_from_record(s) for s in reading.get("sections") or []]
            )
        chapters.append(
            ChapterView(
                id=chapter.get("id") or "",
                title=chapter.get("title") or "",
                book_title=book_title,
                narration_version=narration,
                content=narration,
                reading_version=reading_version,
            )
        )
    return StoryBook(
        book_title=book_title,
        chapter_count=data.get("chapter_count") or 0,
        chapters=chapters,
    )


# ---- Entity graph path ----
async def _sub_story_view(session: AsyncSession, sub_story: SubStory) -> SubStoryView:
    pages = await crud.fetch_pages_by_sub_story_id(session, sub_story.id)
    if pages:
        sections = [section_from_page(p) for p in pages]
    else:
        sections = [section_from_record(s) for s in sub_story.sections or []]
    return SubStoryView(
        sub_story_number=sub_story.sub_story_number or 0,
        title=sub_story.title or "",
        content=sub_story.content or "",
        sections=sections,
    )


async def _chapter_view(session: AsyncSession, chapter: Chapter, book_title: str) -> ChapterView:
    sub_stories = await crud.fetch_sub_stories_by_chapter_id(session, chapter.id)
    if sub_stories:
        reading_version = GroupedReadingVersion(
            sub_stories=[await _sub_story_view(session, s) for s in sub_stories]
        )
    else:
        # no sub-story rows: legacy flat schema, pages hang off the chapter
        pages = await crud.fetch_pages_by_chapter_id(session, chapter.id)
        reading_version = FlatReadingVersion(sections=[section_from_page(p) for p in pages])
    logger.debug(f"Chapter {chapter.id} resolved as {reading_version.kind}")
    return ChapterView(
        id=chapter.id,
        title=chapter.title,
        book_title=book_title,
        narration_version=chapter.narration_version or "",
        content=chapter.narration_version or "",
        reading_version=reading_version,
    )


async def book_from_entities(session: AsyncSession, safe_title: str) -> Optional[StoryBook]:
    book = await crud.fetch_book_by_safe_title(session, safe_title)
    if not book:
        logger.info(f"Book not found: {safe_title}")
        return None
    chapters = await crud.fetch_chapters_by_book_id(session, book.id)
    logger.info(f"Found book {book.title} (id={book.id}) with {len(chapters)} chapters")
    return StoryBook(
        book_title=book.title,
        chapter_count=book.chapter_count or 0,
        chapters=[await _chapter_view(session, c, book.title) for c in chapters],
    )


async def resolve_book(
    session: AsyncSession, snapshot_loader: SnapshotLoader, safe_title: str
) -> Optional[StoryBook]:
    """Snapshot first, entity graph second; None when neither knows the book."""
    data = await snapshot_loader.load(safe_title)
    if data:
        book = book_from_snapshot(data, safe_title)
        logger.info(f"Returning book data from snapshot with {len(book.chapters)} chapters")
        return book
    return await book_from_entities(session, safe_title)


# ---- Write path ----
async def _save_page(
    session: AsyncSession,
    report: SaveReport,
    section: PageSection,
    chapter_id: str = None,
    sub_story_id: str = None,
) -> None:
    try:
        await crud.upsert_page(
            session,
            section.page_number,
            chapter_id=chapter_id,
            sub_story_id=sub_story_id,
            dialogue=section.dialogue,
            illustration_prompt=section.illustration_prompt,
            **image_fields(section.illustration_image),
        )
    except Exception as e:
        await session.rollback()
        owner = f"sub-story {sub_story_id}" if sub_story_id else f"chapter {chapter_id}"
        logger.warning(f"Failed to save page {section.page_number} for {owner}: {e}")
        report.page_failures.append(f"page {section.page_number} ({owner}): {e}")


async def _save_sub_story(
    session: AsyncSession, report: SaveReport, chapter_id: str, sub_story: SubStoryView
) -> None:
    number = sub_story.sub_story_number
    try:
        row = await crud.upsert_sub_story(
            session, chapter_id, number, title=sub_story.title, content=sub_story.content
        )
        sub_story_id = row.id
    except Exception as e:
        await session.rollback()
        error = SubStorySaveError(number, e)
        logger.error(f"{error} (chapter_id={chapter_id}, content_length={len(sub_story.content)})")
        report.sub_story_failures.append(str(error))
        return

    for section in sub_story.sections:
        await _save_page(session, report, section, sub_story_id=sub_story_id)


async def save_book(
    session: AsyncSession,
    safe_title: str,
    story: StoryBook,
    snapshot_loader: Optional[SnapshotLoader] = None,
) -> SaveReport:
    """
    Upsert book, chapters, sub-stories and pages from an edited StoryBook.
    Store errors on the book or a chapter propagate; sub-story and page
    errors are collected on the returned report. The snapshot is dropped
    only when every sub-story was written.
    """
    report = SaveReport(safe_title)
    logger.info(f"Saving book {safe_title}: {len(story.chapters)} chapters")

    book = await crud.fetch_book_by_safe_title(session, safe_title)
    if not book:
        book = await crud.upsert_book(
            session,
            safe_title,
            title=story.book_title or title_from_safe_title(safe_title),
            chapter_count=len(story.chapters) or story.chapter_count,
            status="pending",
        )
        logger.info(f"Created new book: {safe_title}")
    elif {"book_title", "chapter_count"} & story.model_fields_set:
        await crud.update_book(
            session,
            book.id,
            title=story.book_title or book.title,
            chapter_count=story.chapter_count or len(story.chapters) or book.chapter_count,
        )
    book_id = book.id

    for index, chapter_data in enumerate(story.chapters):
        chapter_title = chapter_data.title or f"Chapter {index + 1}"
        narration = chapter_data.narration_version or chapter_data.content or ""
        chapter = await crud.upsert_chapter(
            session, book_id, chapter_title, narration_version=narration
        )
        chapter_id = chapter.id
        reading = chapter_data.reading_version

        if isinstance(reading, GroupedReadingVersion):
            logger.info(f"  Chapter {chapter_title}: {len(reading.sub_stories)} sub-stories")
            for sub_story in reading.sub_stories:
                await _save_sub_story(session, report, chapter_id, sub_story)
        elif isinstance(reading, FlatReadingVersion):
            logger.info(f"  Chapter {chapter_title}: {len(reading.sections)} sections (flat)")
            for section in reading.sections:
                await _save_page(session, report, section, chapter_id=chapter_id)

    # a failed sub-story still lives only in the snapshot; keep it readable
    if snapshot_loader is not None and report.success:
        try:
            report.snapshot_invalidated = await snapshot_loader.invalidate(safe_title)
        except Exception as e:
            logger.warning(f"Failed to invalidate snapshot for {safe_title}: {e}")

    if report.failures:
        logger.warning(f"Saved {safe_title} with failures: {report.failures}")
    return report
