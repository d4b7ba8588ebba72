"""create_storybook_tables

Revision ID: 4c1e8f2a9d10
Revises:
Create Date: 2026-10-18 09:12:31.204117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c1e8f2a9d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    """Upgrade schema - Create book, chapter, sub-story, page and step tables."""
    op.create_table(
        'books',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('safe_title', sa.String(), nullable=False, unique=True),
        sa.Column('chapter_count', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=True),
        sa.Column('gcs_base_url', sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'chapters',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('book_id', sa.String(length=32), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('order_index', sa.Integer(), nullable=False),
        sa.Column('narration_version', sa.Text(), nullable=False),
        sa.Column('processing_status', sa.String(length=32), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('book_id', 'title', name='unique_chapter_title_per_book'),
    )
    op.create_index('ix_chapters_book_id', 'chapters', ['book_id'])

    op.create_table(
        'sub_stories',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('chapter_id', sa.String(length=32), nullable=False),
        sa.Column('sub_story_number', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('sections', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('chapter_id', 'sub_story_number', name='unique_sub_story_per_chapter'),
    )
    op.create_index('ix_sub_stories_chapter_id', 'sub_stories', ['chapter_id'])

    op.create_table(
        'pages',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('chapter_id', sa.String(length=32), nullable=True),
        sa.Column('sub_story_id', sa.String(length=32), nullable=True),
        sa.Column('page_number', sa.Integer(), nullable=False),
        sa.Column('dialogue', sa.Text(), nullable=False),
        sa.Column('illustration_prompt', sa.Text(), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('image_gcs_key', sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('chapter_id', 'page_number', name='unique_page_per_chapter'),
        sa.UniqueConstraint('sub_story_id', 'page_number', name='unique_page_per_sub_story'),
        sa.CheckConstraint('(chapter_id IS NULL) != (sub_story_id IS NULL)', name='page_single_owner'),
    )
    op.create_index('ix_pages_chapter_id', 'pages', ['chapter_id'])
    op.create_index('ix_pages_sub_story_id', 'pages', ['sub_story_id'])

    op.create_table(
        'processing_steps',
        sa.Column('id', sa.String(length=32), primary_key=True),
        sa.Column('book_id', sa.String(length=32), nullable=False),
        sa.Column('step_name', sa.String(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_processing_steps_book_id', 'processing_steps', ['book_id'])


def downgrade() -> None:
    """Downgrade schema - Drop all storybook tables."""
    op.drop_table('processing_steps')
    op.drop_table('pages')
    op.drop_table('sub_stories')
    op.drop_table('chapters')
    op.drop_table('books')
