"""Bulk scraping job: sequential fetches in a background thread.

Provides:
- ScrapeJob for in-memory job state
- BulkScraper with start/pause/resume/stop control and status snapshots
- scrape_bookmark(), the per-bookmark routine shared with single rescrapes
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from bookmind.core.content_processor import ContentProcessor
from bookmind.core.errors import BookmindError, JobStateError, ProviderError, ValidationError
from bookmind.core.models import Bookmark, BookmarkStatus
from bookmind.core.scraper import ScrapedContent, ScrapeOptions, Scraper
from bookmind.core.storage import DB

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Status of the bulk scraping job."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


class ItemStatus(str, Enum):
    """Status of one bookmark within the job."""

    NOT_SCRAPED = "not-scraped"
    IN_PROGRESS = "in-progress"
    SCRAPED = "scraped"
    ERROR = "error"


@dataclass
class ItemProgress:
    url: str
    status: ItemStatus = ItemStatus.NOT_SCRAPED
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value, "url": self.url}
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ScrapeJob:
    """Tracks state of one bulk scraping run."""

    id: str
    bookmark_ids: list[str]
    items: dict[str, ItemProgress]
    status: JobStatus = JobStatus.RUNNING
    current_index: int = 0
    current_url: str = ""
    stop_requested: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def total(self) -> int:
        return len(self.bookmark_ids)

    @property
    def processed(self) -> int:
        return sum(1 for item in self.items.values() if item.status in (ItemStatus.SCRAPED, ItemStatus.ERROR))

    @property
    def progress_percent(self) -> float:
        """Calculate progress percentage."""
        if not self.total:
            return 0.0
        return (self.processed / self.total) * 100

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "jobId": self.id,
            "status": self.status.value,
            "current": self.current_index,
            "total": self.total,
            "progressPct": round(self.progress_percent, 1),
            "currentUrl": self.current_url,
            "scraped": sum(1 for item in self.items.values() if item.status == ItemStatus.SCRAPED),
            "errors": sum(1 for item in self.items.values() if item.status == ItemStatus.ERROR),
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "perItemStatus": {bookmark_id: self.items[bookmark_id].to_dict() for bookmark_id in self.bookmark_ids},
        }


IDLE_STATUS: dict[str, Any] = {
    "jobId": None,
    "status": JobStatus.IDLE.value,
    "current": 0,
    "total": 0,
    "progressPct": 0.0,
    "currentUrl": "",
    "scraped": 0,
    "errors": 0,
    "startedAt": None,
    "finishedAt": None,
    "perItemStatus": {},
}


async def scrape_bookmark(
    db: DB,
    scraper: Scraper,
    processor: ContentProcessor | None,
    bookmark: Bookmark,
    options: ScrapeOptions | None = None,
) -> ScrapedContent:
    """Scrape one bookmark, store its content and (optionally) embed it.

    Raises:
        ProviderError: The scrape failed (bookmark marked failed) or the
            embedding step failed.
    """
    result = await scraper.scrape(bookmark.url, options)
    if not result.success:
        db.update_bookmark_status(bookmark.id, BookmarkStatus.FAILED)
        raise ProviderError(result.error or "Scrape failed", provider="scraper", retriable=result.retriable)

    scraped_at = result.scraped_at or datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    fields: dict[str, Any] = {"scraped_at": scraped_at}
    if result.title:
        fields["title"] = result.title
    if result.description:
        fields["description"] = result.description
    if result.favicon_url:
        fields["favicon_url"] = result.favicon_url
    db.update_bookmark(bookmark.id, **fields)

    db.store_content(bookmark.id, result.raw_content, result.clean_text, content_type=result.content_type)

    if processor is not None:
        await processor.process_content(bookmark.id)
    else:
        db.update_bookmark_status(bookmark.id, BookmarkStatus.COMPLETED)
    return result


class BulkScraper:
    """Owns the single scraping job.

    Items run strictly in the supplied order on one daemon thread with its
    own event loop. Job state is guarded by one lock; pause blocks the
    worker on a condition variable between items.
    """

    def __init__(
        self,
        db: DB,
        scraper: Scraper,
        processor: ContentProcessor | None = None,
        options: ScrapeOptions | None = None,
    ):
        self.db = db
        self.scraper = scraper
        self.processor = processor
        self.options = options or ScrapeOptions()

        self._lock = threading.Lock()
        self._resume = threading.Condition(self._lock)
        # Serializes control calls so start() can join a finishing worker
        self._control = threading.Lock()
        self._job: ScrapeJob | None = None
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Future[Any] | None = None

    # ==================== Control ====================

    def start(self, bookmark_ids: list[str]) -> dict[str, Any]:
        """Start a fresh job over bookmark_ids, replacing a finished one.

        Raises:
            JobStateError: A job is running or paused.
            ValidationError: No bookmark ids given.
            NotFoundError: An id does not exist.
        """
        with self._control:
            with self._lock:
                if self._job is not None and self._job.status in (JobStatus.RUNNING, JobStatus.PAUSED):
                    raise JobStateError(f"A scraping job is already {self._job.status.value}")
                previous = self._thread

            if previous is not None and previous.is_alive():
                previous.join(timeout=self.options.timeout)
                if previous.is_alive():
                    raise JobStateError("Previous scraping job is still shutting down")

            ids = list(dict.fromkeys(bookmark_ids))
            if not ids:
                raise ValidationError("No bookmarks to scrape")
            bookmarks = self.db.get_bookmarks(ids)
            for bookmark_id in ids:
                if bookmark_id not in bookmarks:
                    self.db.get_bookmark(bookmark_id)  # raises NotFoundError

            job = ScrapeJob(
                id=str(uuid.uuid4()),
                bookmark_ids=ids,
                items={bookmark_id: ItemProgress(url=bookmarks[bookmark_id].url) for bookmark_id in ids},
            )
            thread = threading.Thread(target=self._run, args=(job,), name=f"bulk-scrape-{job.id[:8]}", daemon=True)
            with self._lock:
                self._job = job
                self._thread = thread
            thread.start()
            logger.info(f"Started scraping job {job.id} with {job.total} bookmarks")
            return self.get_status()

    def pause(self) -> dict[str, Any]:
        with self._control, self._lock:
            if self._job is None or self._job.status != JobStatus.RUNNING:
                raise JobStateError(f"Cannot pause: job is {self._status_name()}")
            self._job.status = JobStatus.PAUSED
            logger.info(f"Paused scraping job {self._job.id}")
            return self._job.to_dict()

    def resume(self) -> dict[str, Any]:
        with self._control, self._lock:
            if self._job is None or self._job.status != JobStatus.PAUSED:
                raise JobStateError(f"Cannot resume: job is {self._status_name()}")
            self._job.status = JobStatus.RUNNING
            self._resume.notify_all()
            logger.info(f"Resumed scraping job {self._job.id}")
            return self._job.to_dict()

    def stop(self) -> dict[str, Any]:
        """Stop the job. The in-flight scrape is cancelled; later items stay untouched."""
        with self._control, self._lock:
            if self._job is None or self._job.status not in (JobStatus.RUNNING, JobStatus.PAUSED):
                raise JobStateError(f"Cannot stop: job is {self._status_name()}")
            self._job.status = JobStatus.STOPPED
            self._job.stop_requested = True
            self._job.finished_at = datetime.now(timezone.utc)
            self._resume.notify_all()
            if self._task is not None and self._loop is not None and not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._task.cancel)
            logger.info(f"Stopped scraping job {self._job.id}")
            return self._job.to_dict()

    def get_status(self) -> dict[str, Any]:
        """Snapshot of the current (or last) job."""
        with self._lock:
            if self._job is None:
                return dict(IDLE_STATUS)
            return self._job.to_dict()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the worker thread exits. Returns False on timeout."""
        with self._lock:
            thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def _status_name(self) -> str:
        return self._job.status.value if self._job is not None else JobStatus.IDLE.value

    # ==================== Worker ====================

    def _run(self, job: ScrapeJob) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        with self._lock:
            self._loop = loop
        try:
            loop.run_until_complete(self._process(job))
        except Exception:
            logger.exception(f"Scraping job {job.id} crashed")
            with self._lock:
                if not job.stop_requested:
                    job.status = JobStatus.STOPPED
                    job.finished_at = datetime.now(timezone.utc)
        finally:
            with self._lock:
                self._loop = None
                self._task = None
            loop.close()

    def _wait_while_paused(self, job: ScrapeJob) -> bool:
        """Block while paused. Returns False once stop was requested."""
        with self._resume:
            while job.status == JobStatus.PAUSED and not job.stop_requested:
                self._resume.wait()
            return not job.stop_requested

    async def _process(self, job: ScrapeJob) -> None:
        for index, bookmark_id in enumerate(job.bookmark_ids):
            if not self._wait_while_paused(job):
                break

            with self._lock:
                item = job.items[bookmark_id]
                job.current_index = index
                job.current_url = item.url
                item.status = ItemStatus.IN_PROGRESS

            try:
                bookmark = self.db.get_bookmark(bookmark_id)
                task = asyncio.ensure_future(
                    scrape_bookmark(self.db, self.scraper, self.processor, bookmark, self.options)
                )
                with self._lock:
                    self._task = task
                    if job.stop_requested:
                        task.cancel()
                await task
            except asyncio.CancelledError:
                with self._lock:
                    item.status = ItemStatus.NOT_SCRAPED
                logger.info(f"Scrape of {item.url} cancelled by stop")
                break
            except BookmindError as e:
                self._record_error(item, str(e))
            except Exception as e:
                logger.exception(f"Unexpected error scraping {item.url}")
                self._record_error(item, f"{type(e).__name__}: {e}")
            else:
                with self._lock:
                    item.status = ItemStatus.SCRAPED
            finally:
                with self._lock:
                    self._task = None

        with self._lock:
            job.current_url = ""
            if not job.stop_requested:
                job.status = JobStatus.COMPLETED
                job.current_index = job.total
                job.finished_at = datetime.now(timezone.utc)
        logger.info(f"Scraping job {job.id} finished: {job.status.value}")

    def _record_error(self, item: ItemProgress, message: str) -> None:
        logger.warning(f"Scrape of {item.url} failed: {message}")
        with self._lock:
            item.status = ItemStatus.ERROR
            item.error = message or "Unknown error"
