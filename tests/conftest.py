"""Shared fixtures: in-memory store, fake embedding provider, fake scraper."""

import asyncio
import threading
import time

import pytest

from bookmind.core.embedding_providers import EmbeddingError, EmbeddingProvider
from bookmind.core.scraper import ScrapedContent, ScrapeErrorType, ScrapeOptions, Scraper
from bookmind.core.storage import DB, connect


class FakeProvider(EmbeddingProvider):
    """Deterministic provider: known texts map to fixed vectors."""

    def __init__(self, vectors=None, default=None, dimensions=4, batch=True, max_batch=2048, fail=False):
        self.vectors = vectors or {}
        self.default = default or [0.0, 0.0, 0.0, 1.0]
        self._dimensions = dimensions
        self._batch = batch
        self._max_batch = max_batch
        self.fail = fail
        self.calls: list[list[str]] = []

    @property
    def name(self) -> str:
        return "Fake"

    @property
    def model_id(self) -> str:
        return "fake-embed"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def supports_batch(self) -> bool:
        return self._batch

    @property
    def max_batch_size(self) -> int:
        return self._max_batch

    async def embed(self, texts):
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("provider down", provider=self.name, retriable=True)
        return [list(self.vectors.get(text, self.default)) for text in texts]


class FakeScraper(Scraper):
    """Returns canned results per URL. Failing URLs get success=False.

    With a gate, each scrape waits until the gate is set.
    """

    def __init__(self, pages=None, failing=(), gate: threading.Event | None = None):
        self.pages = pages or {}
        self.failing = set(failing)
        self.gate = gate
        self.calls: list[str] = []
        self.rate = None

    def set_rate_limit(self, requests_per_second: float) -> None:
        self.rate = requests_per_second

    async def scrape(self, url, options=None):
        self.calls.append(url)
        if self.gate is not None:
            while not self.gate.is_set():
                await asyncio.sleep(0.01)
        if url in self.failing:
            return ScrapedContent(
                url=url,
                success=False,
                error=f"Client error: 404 for {url}",
                error_type=ScrapeErrorType.HTTP_4XX,
                http_status=404,
            )
        title, text = self.pages.get(url, (f"Page {url}", f"Body text of {url}."))
        return ScrapedContent(
            url=url,
            success=True,
            title=title,
            description=f"About {title}",
            raw_content=f"<html><body><p>{text}</p></body></html>",
            clean_text=text,
            favicon_url=f"{url.rstrip('/')}/favicon.ico",
            scraped_at="2024-01-01 00:00:00",
        )


@pytest.fixture
def db():
    """Create an in-memory database for testing."""
    database: DB = connect(":memory:")
    yield database
    database.conn.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def fast_options():
    return ScrapeOptions(timeout=1.0, max_retries=0, retry_delay=0.0)


def wait_for(predicate, timeout=5.0, interval=0.01):
    """Poll until predicate() is truthy. Returns its final value."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    return predicate()
