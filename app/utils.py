import re
import time
from typing import Optional

BOOKS_PREFIX = "books"

_IMAGE_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def make_safe_title(title: str) -> str:
    """
    Derive the book slug from a display title: drop anything that is not a
    letter, digit or whitespace, then collapse whitespace runs to underscores.
    Only call this once, when the book is created.
    """
    cleaned = re.sub(r"[^\w\s]|_", "", title or "")
    return re.sub(r"\s+", "_", cleaned.strip())


def title_from_safe_title(safe_title: str) -> str:
    return safe_title.replace("_", " ")


def sanitize_filename(filename: str) -> str:
    return re.sub(r"[^a-zA-Z0-9.-]", "_", filename or "")


def book_prefix(safe_title: str) -> str:
    return f"{BOOKS_PREFIX}/{safe_title}/"


def snapshot_key(safe_title: str) -> str:
    return f"{book_prefix(safe_title)}chapters_final.json"


def image_filename(original_name: str, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{timestamp_ms}_{sanitize_filename(original_name)}"


def image_key(safe_title: str, filename: str) -> str:
    return f"{book_prefix(safe_title)}images/{filename}"


def guess_image_content_type(filename: str, fallback: Optional[str] = None) -> str:
    # extension wins over whatever the browser sent
    lowered = (filename or "").lower()
    for extension, content_type in _IMAGE_CONTENT_TYPES.items():
        if lowered.endswith(extension):
            return content_type
    return fallback or "image/png"


def is_absolute_url(value: str) -> bool:
    return value.startswith("http://") or value.startswith("https://")
