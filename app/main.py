import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

from dotenv import load_dotenv

load_dotenv()

from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app import crud
from app.book_view import resolve_book, save_book
from app.db import SessionLocal
from app.exceptions import (
    BadRequestError,
    BookNotFoundError,
    ConfigurationError,
    StorybookError,
    upstream_call,
)
from app.pipeline_status import get_pipeline_status, remove_pipeline_history, stop_pipeline
from app.schemas import StoryBook
from app.settings import AppConfig
from app.snapshot import SnapshotLoader
from app.storage import BlobStore
from app.triggers import TriggerDispatcher
from app.utils import book_prefix, image_filename, is_absolute_url, make_safe_title

logger = logging.getLogger("storybook-admin")

app = FastAPI(title="Storybook Admin")


async def get_db():
    async with SessionLocal() as session:
        yield session


# --- Service handles, built lazily once per application ---
def get_blob_store(request: Request) -> BlobStore:
    store = getattr(request.app.state, "blob_store", None)
    if store is None:
        store = BlobStore()
        request.app.state.blob_store = store
    return store


def get_optional_blob_store(request: Request) -> Optional[BlobStore]:
    """The blob store when a bucket is configured, otherwise None."""
    try:
        return get_blob_store(request)
    except ConfigurationError:
        return None


def get_snapshot_loader(
    blob_store: Optional[BlobStore] = Depends(get_optional_blob_store),
) -> SnapshotLoader:
    return SnapshotLoader(blob_store)


def get_trigger_dispatcher(request: Request) -> TriggerDispatcher:
    dispatcher = getattr(request.app.state, "trigger_dispatcher", None)
    if dispatcher is None:
        dispatcher = TriggerDispatcher()
        request.app.state.trigger_dispatcher = dispatcher
    return dispatcher


@app.exception_handler(StorybookError)
async def storybook_error_handler(request: Request, exc: StorybookError):
    # raw upstream message on purpose: this is an internal admin tool
    return JSONResponse(
        status_code=exc.status_code, content={"success": False, "error": str(exc)}
    )


# --- Data models ---
class BookCreateRequest(BaseModel):
    title: str
    chapter_count: Optional[int] = 0


class BookSummary(BaseModel):
    filename: str
    book_title: str
    chapter_count: int = 0


class BookListResponse(BaseModel):
    books: List[BookSummary] = []


class TriggerRequest(BaseModel):
    bookSafeTitle: Optional[str] = None
    action: Optional[str] = None
    chapterTitle: Optional[str] = None


class StopRequest(BaseModel):
    bookSafeTitle: Optional[str] = None


# --- Books ---
@app.get("/books", response_model=BookListResponse)
async def list_books_endpoint(db: AsyncSession = Depends(get_db)):
    with upstream_call("list_books"):
        books = await crud.fetch_all_books(db)
    return BookListResponse(
        books=[
            BookSummary(
                filename=b.safe_title,
                book_title=b.title or "",
                chapter_count=b.chapter_count or 0,
            )
            for b in books
        ]
    )


@app.post("/books", status_code=201)
async def create_book_endpoint(req: BookCreateRequest, db: AsyncSession = Depends(get_db)):
    safe_title = make_safe_title(req.title)
    if not safe_title:
        raise BadRequestError("Title must contain letters or digits")
    with upstream_call("create_book", safe_title=safe_title):
        # idempotent on the slug: an existing book is returned untouched
        existing = await crud.fetch_book_by_safe_title(db, safe_title)
        book = existing or await crud.upsert_book(
            db, safe_title, title=req.title, chapter_count=req.chapter_count or 0
        )
    return {
        "id": book.id,
        "safe_title": book.safe_title,
        "title": book.title,
        "chapter_count": book.chapter_count,
        "status": book.status,
        "created": existing is None,
    }


@app.get("/books/{safe_title}", response_model=StoryBook)
async def get_book_endpoint(
    safe_title: str,
    db: AsyncSession = Depends(get_db),
    snapshot_loader: SnapshotLoader = Depends(get_snapshot_loader),
):
    with upstream_call("resolve_book", safe_title=safe_title):
        book = await resolve_book(db, snapshot_loader, safe_title)
    if book is None:
        raise BookNotFoundError(safe_title)
    return book


@app.put("/books/{safe_title}")
async def save_book_endpoint(
    safe_title: str,
    story: StoryBook,
    db: AsyncSession = Depends(get_db),
    snapshot_loader: SnapshotLoader = Depends(get_snapshot_loader),
):
    with upstream_call("save_book", safe_title=safe_title, chapters=len(story.chapters)):
        report = await save_book(db, safe_title, story, snapshot_loader)
    return report.to_dict()


@app.delete("/books/{safe_title}")
async def delete_book_endpoint(
    safe_title: str,
    db: AsyncSession = Depends(get_db),
    blob_store: Optional[BlobStore] = Depends(get_optional_blob_store),
):
    with upstream_call("delete_book", safe_title=safe_title):
        await crud.delete_book(db, safe_title)

    # blob cleanup is best effort; the entity rows are already gone
    if blob_store is None:
        logger.warning(f"No blob store configured, skipped blob cleanup for {safe_title}")
    else:
        try:
            deleted = await blob_store.delete_prefix(book_prefix(safe_title))
            logger.info(f"Deleted {deleted} blob(s) for book: {safe_title}")
        except Exception as e:
            logger.warning(f"Failed to delete blobs for {safe_title}: {e}")

    return {
        "success": True,
        "message": f'Book "{safe_title}" and all related data deleted successfully',
    }


# --- Images ---
@app.post("/upload")
async def upload_image_endpoint(
    file: Optional[UploadFile] = File(None),
    bookSafeTitle: Optional[str] = Form(None),
    blob_store: BlobStore = Depends(get_blob_store),
):
    if file is None:
        raise BadRequestError("No file provided")
    if not bookSafeTitle:
        raise BadRequestError("Book safe title is required")

    data = await file.read()
    filename = image_filename(file.filename or "upload")
    with upstream_call("upload_image", safe_title=bookSafeTitle, filename=filename):
        gcs_key, url = await blob_store.upload_image(
            data, filename, bookSafeTitle, file.content_type or None
        )
    return {"success": True, "filename": filename, "path": url, "gcsKey": gcs_key, "url": url}


@app.get("/images/{image_path:path}")
async def image_redirect_endpoint(
    image_path: str, blob_store: BlobStore = Depends(get_blob_store)
):
    if is_absolute_url(image_path):
        return RedirectResponse(image_path)
    key = image_path if image_path.startswith("books/") else f"books/{image_path}"
    return RedirectResponse(blob_store.public_url(key))


# --- Raw entity browser ---
@app.get("/entities")
async def list_entities_endpoint(
    collection: str = "books", limit: int = 100, db: AsyncSession = Depends(get_db)
):
    if collection not in crud.ENTITY_COLLECTIONS:
        raise BadRequestError(f"Unknown collection: {collection}")
    with upstream_call("list_entities", collection=collection):
        rows = await crud.fetch_entities(db, collection, limit)
    data = []
    for row in rows:
        item = {}
        for column in row.__table__.columns:
            value = getattr(row, column.key)
            item[column.key] = value.isoformat() if hasattr(value, "isoformat") else value
        data.append(item)
    return {"collection": collection, "count": len(data), "data": data}


# --- Pipeline ---
@app.post("/pipeline/trigger")
async def trigger_pipeline_endpoint(
    req: TriggerRequest,
    dispatcher: TriggerDispatcher = Depends(get_trigger_dispatcher),
):
    with upstream_call("trigger_pipeline", safe_title=req.bookSafeTitle, action=req.action):
        return await dispatcher.dispatch(req.bookSafeTitle, req.action, req.chapterTitle)


@app.get("/pipeline/status")
async def pipeline_status_endpoint(
    bookSafeTitle: Optional[str] = None, db: AsyncSession = Depends(get_db)
):
    if not bookSafeTitle:
        raise BadRequestError("bookSafeTitle is required")
    with upstream_call("pipeline_status", safe_title=bookSafeTitle):
        return await get_pipeline_status(db, bookSafeTitle)


@app.post("/pipeline/stop")
async def stop_pipeline_endpoint(req: StopRequest, db: AsyncSession = Depends(get_db)):
    if not req.bookSafeTitle:
        raise BadRequestError("bookSafeTitle is required")
    with upstream_call("stop_pipeline", safe_title=req.bookSafeTitle):
        cancelled = await stop_pipeline(db, req.bookSafeTitle)
    return {
        "success": True,
        "message": f'Pipeline for "{req.bookSafeTitle}" stopped successfully',
        "cancelledSteps": cancelled,
    }


@app.delete("/pipeline/{safe_title}")
async def remove_pipeline_history_endpoint(safe_title: str, db: AsyncSession = Depends(get_db)):
    with upstream_call("remove_pipeline_history", safe_title=safe_title):
        await remove_pipeline_history(db, safe_title)
    return {
        "success": True,
        "message": f'All processing steps for "{safe_title}" deleted successfully',
    }


@app.get("/")
def read_root():
    return {
        "message": "Storybook admin API is running!",
        "pipeline_topic": AppConfig.get_value("pipeline_topic"),
    }
