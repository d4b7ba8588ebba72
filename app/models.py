import enum
import uuid
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessingStatus(str, enum.Enum):
    """Step states written by the pipeline worker (compared case-insensitively)"""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PROCESSING = "processing"  # legacy alias of in_progress
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Book(Base):
    __tablename__ = "books"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(sa.String, nullable=False, default="")
    safe_title: Mapped[str] = mapped_column(sa.String, unique=True, nullable=False)
    chapter_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    # free-form, owned by the pipeline worker
    status: Mapped[str] = mapped_column(sa.String(32), nullable=True, default="pending")
    gcs_base_url: Mapped[str] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )


class Chapter(Base):
    __tablename__ = "chapters"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=new_id)
    book_id: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True)
    title: Mapped[str] = mapped_column(sa.String, nullable=False)
    order_index: Mapped[int] = mapped_column(
        sa.Integer, nullable=False, default=0
    )  # assigned once at creation, never renumbered
    narration_version: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    processing_status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, default="pending"
    )
    created_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        sa.UniqueConstraint("book_id", "title", name="unique_chapter_title_per_book"),
    )


class SubStory(Base):
    __tablename__ = "sub_stories"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=new_id)
    chapter_id: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True)
    sub_story_number: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    title: Mapped[str] = mapped_column(sa.String, nullable=False, default="")
    content: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    # inline page sections some pipeline runs write without Page rows
    sections: Mapped[list] = mapped_column(sa.JSON, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        sa.UniqueConstraint(
            "chapter_id", "sub_story_number", name="unique_sub_story_per_chapter"
        ),
    )


class Page(Base):
    __tablename__ = "pages"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=new_id)
    # exactly one of chapter_id (legacy flat schema) / sub_story_id is set
    chapter_id: Mapped[str] = mapped_column(sa.String(32), nullable=True, index=True)
    sub_story_id: Mapped[str] = mapped_column(sa.String(32), nullable=True, index=True)
    page_number: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    dialogue: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    illustration_prompt: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    image_url: Mapped[str] = mapped_column(sa.Text, nullable=True)  # absolute URL
    image_gcs_key: Mapped[str] = mapped_column(sa.Text, nullable=True)  # blob key
    created_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        sa.UniqueConstraint("chapter_id", "page_number", name="unique_page_per_chapter"),
        sa.UniqueConstraint(
            "sub_story_id", "page_number", name="unique_page_per_sub_story"
        ),
        sa.CheckConstraint(
            "(chapter_id IS NULL) != (sub_story_id IS NULL)", name="page_single_owner"
        ),
    )

    @property
    def owner_id(self) -> str:
        return self.sub_story_id or self.chapter_id


class ProcessingStep(Base):
    __tablename__ = "processing_steps"

    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True, default=new_id)
    book_id: Mapped[str] = mapped_column(sa.String(32), nullable=False, index=True)
    step_name: Mapped[str] = mapped_column(sa.String, nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, default=ProcessingStatus.PENDING.value
    )
    error_message: Mapped[str] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True), default=utcnow
    )
    updated_at: Mapped[sa.DateTime] = mapped_column(
        sa.DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )
