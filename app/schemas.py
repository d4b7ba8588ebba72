"""
Canonical book structure returned to (and accepted from) editing clients.

Chapters come in two content generations: the legacy flat list of page
sections and the newer grouping of pages into sub-stories. The reading
version is a tagged union so every consumer handles both arms explicitly.
"""

from typing import Annotated, Any, List, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator


class _LenientModel(BaseModel):
    """Treats explicit nulls from clients and snapshots as missing fields."""

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


class PageSection(_LenientModel):
    page_number: int = 0
    illustration_prompt: str = ""
    dialogue: str = ""
    illustration_image: str = ""  # absolute URL or blob key, empty when none


class SubStoryView(_LenientModel):
    sub_story_number: int = 0
    title: str = ""
    content: str = ""
    sections: List[PageSection] = Field(default_factory=list)


class FlatReadingVersion(_LenientModel):
    kind: Literal["flat"] = "flat"
    sections: List[PageSection] = Field(default_factory=list)


class GroupedReadingVersion(_LenientModel):
    kind: Literal["grouped"] = "grouped"
    sub_stories: List[SubStoryView] = Field(default_factory=list)


ReadingVersion = Annotated[
    Union[FlatReadingVersion, GroupedReadingVersion], Field(discriminator="kind")
]


def infer_reading_version_kind(value: Any) -> Any:
    """Tag an untagged reading_version dict by the shape it carries."""
    if value is None:
        return {"kind": "flat"}
    if isinstance(value, dict) and "kind" not in value:
        kind = "grouped" if isinstance(value.get("sub_stories"), list) else "flat"
        return {**value, "kind": kind}
    return value


class ChapterView(_LenientModel):
    id: str = ""
    title: str = ""
    book_title: str = ""
    narration_version: str = ""
    content: str = ""
    reading_version: ReadingVersion = Field(default_factory=FlatReadingVersion)

    @field_validator("reading_version", mode="before")
    @classmethod
    def _tag_reading_version(cls, value: Any) -> Any:
        return infer_reading_version_kind(value)


class StoryBook(_LenientModel):
    book_title: str = ""
    chapter_count: int = 0
    chapters: List[ChapterView] = Field(default_factory=list)
