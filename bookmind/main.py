from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from bookmind.core.bulk_scraper import BulkScraper, JobStatus, scrape_bookmark
from bookmind.core.chunking import get_chunking_info
from bookmind.core.content_processor import ContentProcessor
from bookmind.core.embedding_providers import EmbeddingProvider, get_provider
from bookmind.core.errors import (
    BookmindError,
    DuplicateKeyError,
    JobStateError,
    NotFoundError,
    ProviderError,
    TransientStoreError,
    ValidationError,
)
from bookmind.core.models import BookmarkStatus, ImportBookmark, ImportFolder
from bookmind.core.scraper import HTMLScraper, Scraper, ScrapeOptions
from bookmind.core.search import MAX_RESULTS, SearchEngine
from bookmind.core.settings import Settings
from bookmind.core.storage import DB, connect

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[BookmindError], int] = {
    NotFoundError: 404,
    DuplicateKeyError: 409,
    ValidationError: 400,
    JobStateError: 409,
    ProviderError: 502,
    TransientStoreError: 503,
}

app = FastAPI(title="bookmind")


def init_services(
    app: FastAPI,
    settings: Settings,
    db: DB | None = None,
    provider: EmbeddingProvider | None = None,
    scraper: Scraper | None = None,
) -> None:
    """Build the store, search engine, pipeline and scraping job onto app.state."""
    db = db or connect(settings.db_path)

    if provider is None:
        try:
            provider = get_provider(settings.embedding_provider, settings.embedding_model)
        except ValueError as e:
            logger.warning(f"Embedding disabled: {e}")

    scraper = scraper or HTMLScraper(rate_limit_rps=settings.scraper_rate_limit_rps)
    processor = ContentProcessor(db, provider, settings.chunk_max_tokens) if provider else None

    app.state.settings = settings
    app.state.db = db
    app.state.provider = provider
    app.state.scraper = scraper
    app.state.processor = processor
    app.state.scrape_options = ScrapeOptions.from_settings(settings)
    app.state.search_engine = SearchEngine(db, provider)
    app.state.bulk_scraper = BulkScraper(db, scraper, processor, app.state.scrape_options)


@app.on_event("startup")
def _startup() -> None:
    s = Settings.from_env()
    logging.basicConfig(
        level=s.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if getattr(app.state, "db", None) is None:
        init_services(app, s)
    logger.info(f"bookmind started (env={s.app_env}, db={s.db_path})")


@app.on_event("shutdown")
def _shutdown() -> None:
    bulk: BulkScraper | None = getattr(app.state, "bulk_scraper", None)
    if bulk is not None and bulk.get_status()["status"] in (JobStatus.RUNNING.value, JobStatus.PAUSED.value):
        bulk.stop()
        bulk.wait(timeout=5)


@app.exception_handler(BookmindError)
async def _bookmind_error(request: Request, exc: BookmindError) -> JSONResponse:
    status = 500
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            status = ERROR_STATUS[cls]
            break
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status, content={"error": str(exc), "type": type(exc).__name__})


# ==================== Request bodies ====================


class ImportFolderIn(BaseModel):
    name: str
    path: list[str]
    subfolders: list[ImportFolderIn] = Field(default_factory=list)

    def to_import(self) -> ImportFolder:
        return ImportFolder(name=self.name, path=list(self.path), subfolders=[f.to_import() for f in self.subfolders])


ImportFolderIn.model_rebuild()


class ImportBookmarkIn(BaseModel):
    url: str
    title: str = ""
    folder_path: list[str] = Field(default_factory=list)
    date_added: datetime | None = None
    icon: str = ""
    tags: list[str] = Field(default_factory=list)


class ImportRequest(BaseModel):
    folders: list[ImportFolderIn] = Field(default_factory=list)
    bookmarks: list[ImportBookmarkIn] = Field(default_factory=list)


class BookmarkCreate(BaseModel):
    url: str
    title: str = ""
    description: str = ""
    folder_path: str = ""
    tags: list[str] = Field(default_factory=list)


class BookmarkUpdate(BaseModel):
    url: str | None = None
    title: str | None = None
    description: str | None = None
    status: str | None = None
    favicon_url: str | None = None
    tags: list[str] | None = None
    folder_id: str | None = None


class SearchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    limit: int = MAX_RESULTS
    search_type: str | None = Field(default=None, alias="searchType")


class ScrapeStartRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bookmark_ids: list[str] | None = Field(default=None, alias="bookmarkIds")


# ==================== Bookmarks ====================


@app.post("/api/bookmarks/import")
def api_import(body: ImportRequest, request: Request):
    """Import a parsed bookmark tree. Duplicates are counted, not rejected."""
    db: DB = request.app.state.db
    result = db.import_batch(
        [f.to_import() for f in body.folders],
        [
            ImportBookmark(
                url=b.url,
                title=b.title,
                folder_path=list(b.folder_path),
                date_added=b.date_added,
                icon=b.icon,
                tags=list(b.tags),
            )
            for b in body.bookmarks
        ],
    )
    return result.to_dict()


@app.get("/api/bookmarks")
def api_list_bookmarks(
    request: Request,
    status: str | None = None,
    folder: str | None = None,
    limit: int = 50,
    offset: int = 0,
):
    db: DB = request.app.state.db
    bookmarks = db.list_bookmarks(status=status, folder_path=folder, limit=limit, offset=offset)
    return {
        "bookmarks": [b.to_dict() for b in bookmarks],
        "total": db.count_bookmarks(status=status, folder_path=folder),
        "limit": limit,
        "offset": offset,
    }


@app.post("/api/bookmarks", status_code=201)
def api_add_bookmark(body: BookmarkCreate, request: Request):
    db: DB = request.app.state.db
    bookmark = db.add_bookmark(
        body.url,
        title=body.title,
        description=body.description,
        folder_path=body.folder_path,
        tags=body.tags,
    )
    return bookmark.to_dict()


@app.get("/api/bookmarks/{bookmark_id}")
def api_get_bookmark(bookmark_id: str, request: Request):
    """Bookmark with its content (without the raw body) when scraped."""
    db: DB = request.app.state.db
    bookmark = db.get_bookmark(bookmark_id)
    try:
        content = db.get_content(bookmark_id)
    except NotFoundError:
        return {"bookmark": bookmark.to_dict(), "content": None, "chunks": 0}
    return {
        "bookmark": bookmark.to_dict(),
        "content": content.to_dict(),
        "chunks": len(db.get_embedding_chunks(content.id)),
    }


@app.patch("/api/bookmarks/{bookmark_id}")
def api_update_bookmark(bookmark_id: str, body: BookmarkUpdate, request: Request):
    db: DB = request.app.state.db
    bookmark = db.update_bookmark(bookmark_id, **body.model_dump(exclude_unset=True))
    return bookmark.to_dict()


@app.delete("/api/bookmarks/{bookmark_id}")
def api_delete_bookmark(bookmark_id: str, request: Request):
    db: DB = request.app.state.db
    db.delete_bookmark(bookmark_id)
    return {"deleted": bookmark_id}


@app.post("/api/bookmarks/{bookmark_id}/rescrape")
async def api_rescrape_bookmark(bookmark_id: str, request: Request):
    """Scrape one bookmark now, outside the bulk job."""
    state = request.app.state
    bookmark = state.db.get_bookmark(bookmark_id)
    result = await scrape_bookmark(state.db, state.scraper, state.processor, bookmark, state.scrape_options)
    return {"bookmark": state.db.get_bookmark(bookmark_id).to_dict(), "scrape": result.to_dict()}


@app.post("/api/bookmarks/{bookmark_id}/process")
async def api_process_bookmark(bookmark_id: str, request: Request):
    """Re-chunk and re-embed stored content."""
    processor: ContentProcessor | None = request.app.state.processor
    if processor is None:
        raise ProviderError("No embedding provider configured", provider="none")
    count = await processor.process_content(bookmark_id)
    return {"bookmark_id": bookmark_id, "chunks": count}


@app.get("/api/folders")
def api_folders(request: Request):
    db: DB = request.app.state.db
    return db.get_folder_tree()


# ==================== Search ====================


@app.post("/api/search")
async def api_search(body: SearchRequest, request: Request):
    """Hybrid search. Falls back to keyword ranking if embedding fails."""
    engine: SearchEngine = request.app.state.search_engine
    results = await engine.search(body.query, limit=body.limit, search_type=body.search_type)
    return {"results": [r.to_dict() for r in results], "totalResults": len(results)}


# ==================== Bulk scraping ====================


@app.post("/api/scraping/start")
def api_scraping_start(request: Request, body: ScrapeStartRequest | None = None):
    """Start scraping the given bookmarks, or every pending one."""
    state = request.app.state
    ids = body.bookmark_ids if body is not None else None
    if not ids:
        ids = [b.id for b in state.db.list_bookmarks(status=BookmarkStatus.PENDING.value, limit=None)]
    return state.bulk_scraper.start(ids)


@app.post("/api/scraping/pause")
def api_scraping_pause(request: Request):
    return request.app.state.bulk_scraper.pause()


@app.post("/api/scraping/resume")
def api_scraping_resume(request: Request):
    return request.app.state.bulk_scraper.resume()


@app.post("/api/scraping/stop")
def api_scraping_stop(request: Request):
    return request.app.state.bulk_scraper.stop()


@app.get("/api/scraping/status")
def api_scraping_status(request: Request):
    return request.app.state.bulk_scraper.get_status()


# ==================== Admin ====================


@app.get("/api/stats")
def api_stats(request: Request):
    state = request.app.state
    stats: dict[str, Any] = state.db.get_stats()
    stats["chunking"] = get_chunking_info(state.settings.chunk_max_tokens)
    return stats


@app.get("/api/health")
async def api_health(request: Request, check_provider: bool = False):
    """Liveness plus embedding provider info. check_provider makes a test embedding call."""
    state = request.app.state
    provider: EmbeddingProvider | None = state.provider
    result: dict[str, Any] = {
        "status": "ok",
        "env": state.settings.app_env,
        "provider": None,
    }
    if provider is not None:
        result["provider"] = {"name": provider.name, "model": provider.model_id, "dimensions": provider.dimensions}
        if check_provider:
            health = await provider.health_check()
            result["provider"]["health"] = health.to_dict()
    return result
