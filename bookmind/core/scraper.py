"""Page scraping: fetch a bookmark URL and extract title, description and clean text.

Uses trafilatura for content extraction and lxml for the favicon link.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from urllib.parse import urljoin, urlparse

import httpx
import lxml.html
import trafilatura
from lxml.etree import ParserError
from trafilatura.settings import use_config

from bookmind.core.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; bookmind/1.0)"

# Maximum body size read per page (10MB), with or without content-length
MAX_CONTENT_SIZE = 10 * 1024 * 1024

HTML_TYPES = ("text/html", "application/xhtml+xml")
TEXT_TYPES = ("text/plain", "text/markdown")


@dataclass
class ScrapeOptions:
    user_agent: str = DEFAULT_USER_AGENT
    timeout: float = 30.0
    follow_redirects: bool = True
    max_retries: int = 3
    retry_delay: float = 2.0  # fixed, between attempts

    @classmethod
    def from_settings(cls, settings: Settings) -> ScrapeOptions:
        return cls(
            timeout=settings.scrape_timeout,
            max_retries=settings.scrape_max_retries,
            retry_delay=settings.scrape_retry_delay,
        )


class ScrapeErrorType(str, Enum):
    """Classification of scrape errors for retry strategy."""

    TIMEOUT = "timeout"  # Retriable
    HTTP_4XX = "http_4xx"  # Not retriable (404, 403, etc.)
    HTTP_5XX = "http_5xx"  # Retriable (server error)
    CONNECTION_ERROR = "connection_error"  # Retriable
    UNSUPPORTED_TYPE = "unsupported_type"  # Not retriable (PDF, images, ...)
    EXTRACTION_FAILED = "extraction_failed"  # Not retriable
    NO_CONTENT = "no_content"  # Not retriable


# Error types that can be retried
RETRIABLE_ERRORS = {ScrapeErrorType.TIMEOUT, ScrapeErrorType.HTTP_5XX, ScrapeErrorType.CONNECTION_ERROR}


@dataclass
class ScrapedContent:
    """Result of a scrape. Failures are reported here, not raised."""

    url: str
    success: bool
    title: str = ""
    description: str = ""
    raw_content: str = ""
    clean_text: str = ""
    favicon_url: str = ""
    content_type: str = "text/html"
    headers: dict[str, str] = field(default_factory=dict)
    scraped_at: str | None = None
    error: str | None = None
    error_type: ScrapeErrorType | None = None
    http_status: int | None = None

    @property
    def retriable(self) -> bool:
        """Whether this error can be retried."""
        return self.error_type in RETRIABLE_ERRORS if self.error_type else False

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "success": self.success,
            "title": self.title,
            "description": self.description,
            "favicon_url": self.favicon_url,
            "content_type": self.content_type,
            "scraped_at": self.scraped_at,
            "error": self.error,
            "error_type": self.error_type.value if self.error_type else None,
            "http_status": self.http_status,
        }


class Scraper(ABC):
    """Fetches one URL at a time. Implementations own their rate limiting."""

    @abstractmethod
    async def scrape(self, url: str, options: ScrapeOptions | None = None) -> ScrapedContent:
        """Fetch and extract a page. Never raises for HTTP or extraction failures."""
        ...

    @abstractmethod
    def set_rate_limit(self, requests_per_second: float) -> None:
        ...


def _get_domain(url: str) -> str:
    domain = urlparse(url).netloc.lower()
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


class DomainRateLimiter:
    """Per-domain rate limiting with adaptive delays.

    - min_delay: Base delay between requests to same domain (1 / rps)
    - MAX_DELAY: Maximum delay after repeated failures
    - Delays increase on failures, reset on success
    """

    MAX_DELAY = 10.0  # Maximum delay after failures
    FAILURE_MULTIPLIER = 1.5  # How much to increase delay on failure

    def __init__(self, requests_per_second: float = 2.0) -> None:
        self.min_delay = 0.0
        self._last_request: dict[str, float] = defaultdict(float)
        self._delays: dict[str, float] = {}
        self._lock = threading.Lock()
        self.set_rate(requests_per_second)

    def set_rate(self, requests_per_second: float) -> None:
        """Change the base rate. 0 or less disables the limit."""
        with self._lock:
            self.min_delay = 1.0 / requests_per_second if requests_per_second > 0 else 0.0
            self._delays.clear()

    def current_delay(self, url: str) -> float:
        with self._lock:
            return self._delays.get(_get_domain(url), self.min_delay)

    async def wait_for_domain(self, url: str) -> None:
        """Wait if needed before making request to this domain."""
        domain = _get_domain(url)

        with self._lock:
            last = self._last_request[domain]
            delay = self._delays.get(domain, self.min_delay)

        wait_time = delay - (time.monotonic() - last)
        if wait_time > 0:
            logger.debug(f"Rate limit: waiting {wait_time:.1f}s for {domain}")
            await asyncio.sleep(wait_time)

        with self._lock:
            self._last_request[domain] = time.monotonic()

    def record_success(self, url: str) -> None:
        """Record successful request - reset delay to minimum."""
        with self._lock:
            self._delays.pop(_get_domain(url), None)

    def record_failure(self, url: str) -> None:
        """Record failed request - increase delay."""
        domain = _get_domain(url)
        with self._lock:
            current = self._delays.get(domain, self.min_delay)
            new_delay = min(max(current, 0.1) * self.FAILURE_MULTIPLIER, self.MAX_DELAY)
            self._delays[domain] = new_delay
            logger.debug(f"Rate limit: increased delay for {domain} to {new_delay:.1f}s")


def extract_favicon(html: str, base_url: str) -> str:
    """Absolute favicon URL from <link rel="icon">, else /favicon.ico."""
    parsed = urlparse(base_url)
    fallback = f"{parsed.scheme}://{parsed.netloc}/favicon.ico" if parsed.netloc else ""
    try:
        doc = lxml.html.fromstring(html)
    except (ParserError, ValueError):
        return fallback

    for link in doc.iter("link"):
        rel = (link.get("rel") or "").lower().split()
        href = (link.get("href") or "").strip()
        if href and "icon" in rel:
            return urljoin(base_url, href)
    return fallback


def _too_large(url: str, status: int) -> ScrapedContent:
    return ScrapedContent(
        url=url,
        success=False,
        error=f"Content larger than {MAX_CONTENT_SIZE} bytes",
        error_type=ScrapeErrorType.EXTRACTION_FAILED,
        http_status=status,
    )


class HTMLScraper(Scraper):
    """Scrapes HTML pages with httpx and trafilatura.

    Designed for:
    - Sequential, polite crawling (per-domain rate limiter)
    - Proper error classification
    - Retries only for transient failures, with a fixed delay
    """

    def __init__(self, rate_limit_rps: float = 2.0) -> None:
        self.rate_limiter = DomainRateLimiter(rate_limit_rps)

        # Configure trafilatura for better extraction
        self._config = use_config()
        self._config.set("DEFAULT", "EXTRACTION_TIMEOUT", "30")

    def set_rate_limit(self, requests_per_second: float) -> None:
        self.rate_limiter.set_rate(requests_per_second)

    def _new_client(self, options: ScrapeOptions) -> httpx.AsyncClient:
        # One client per scrape() call: the scraper is shared between the
        # job worker's event loop and the API's loop.
        return httpx.AsyncClient(
            timeout=httpx.Timeout(options.timeout),
            follow_redirects=options.follow_redirects,
            headers={
                "User-Agent": options.user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
        )

    async def scrape(self, url: str, options: ScrapeOptions | None = None) -> ScrapedContent:
        """Fetch and extract a page, retrying transient failures.

        Args:
            url: Page URL
            options: Timeout, retry count and delay; defaults if omitted

        Returns:
            ScrapedContent with success=False and an error on failure
        """
        options = options or ScrapeOptions()
        attempts = max(1, options.max_retries + 1)

        result = ScrapedContent(url=url, success=False, error="Not attempted")
        async with self._new_client(options) as client:
            for attempt in range(1, attempts + 1):
                await self.rate_limiter.wait_for_domain(url)
                result = await self._scrape_once(client, url, options)

                if result.success:
                    self.rate_limiter.record_success(url)
                    return result

                self.rate_limiter.record_failure(url)
                if not result.retriable or attempt == attempts:
                    break
                logger.info(f"Scrape of {url} failed ({result.error}), retry {attempt}/{attempts - 1}")
                await asyncio.sleep(options.retry_delay)

        return result

    async def _scrape_once(self, client: httpx.AsyncClient, url: str, options: ScrapeOptions) -> ScrapedContent:
        try:
            async with client.stream("GET", url) as response:
                if response.status_code >= 500:
                    return ScrapedContent(
                        url=url,
                        success=False,
                        error=f"Server error: {response.status_code}",
                        error_type=ScrapeErrorType.HTTP_5XX,
                        http_status=response.status_code,
                    )

                if response.status_code >= 400:
                    return ScrapedContent(
                        url=url,
                        success=False,
                        error=f"Client error: {response.status_code}",
                        error_type=ScrapeErrorType.HTTP_4XX,
                        http_status=response.status_code,
                    )

                content_length = response.headers.get("content-length")
                if content_length and content_length.isdigit() and int(content_length) > MAX_CONTENT_SIZE:
                    return _too_large(url, response.status_code)

                content_type = response.headers.get("content-type", "text/html").split(";")[0].strip().lower()
                headers = {k.lower(): v for k, v in response.headers.items()}
                final_url = str(response.url)

                # Chunked responses carry no length, so the cap is enforced while reading
                raw = bytearray()
                async for chunk in response.aiter_bytes():
                    raw.extend(chunk)
                    if len(raw) > MAX_CONTENT_SIZE:
                        return _too_large(url, response.status_code)
                body = raw.decode(response.encoding or "utf-8", errors="replace")
                status = response.status_code

            if content_type in TEXT_TYPES:
                return self._build_result(url, status, content_type, headers, body, body.strip())

            if content_type not in HTML_TYPES:
                return ScrapedContent(
                    url=url,
                    success=False,
                    error=f"Unsupported content type: {content_type}",
                    error_type=ScrapeErrorType.UNSUPPORTED_TYPE,
                    http_status=status,
                )

            # trafilatura is CPU-bound
            loop = asyncio.get_running_loop()
            clean_text, metadata = await loop.run_in_executor(None, self._extract, body, final_url)

            if not clean_text:
                return ScrapedContent(
                    url=url,
                    success=False,
                    error="No content could be extracted",
                    error_type=ScrapeErrorType.NO_CONTENT,
                    http_status=status,
                )

            result = self._build_result(url, status, content_type, headers, body, clean_text)
            if metadata is not None:
                result.title = (metadata.title or "").strip()
                result.description = (metadata.description or "").strip()
            result.favicon_url = extract_favicon(body, final_url)
            return result

        except httpx.TimeoutException:
            return ScrapedContent(
                url=url,
                success=False,
                error=f"Request timed out after {options.timeout}s",
                error_type=ScrapeErrorType.TIMEOUT,
            )

        except (httpx.ConnectError, httpx.RemoteProtocolError) as e:
            return ScrapedContent(
                url=url,
                success=False,
                error=f"Connection error: {e}",
                error_type=ScrapeErrorType.CONNECTION_ERROR,
            )

        except Exception as e:
            logger.exception(f"Unexpected error scraping {url}")
            return ScrapedContent(
                url=url,
                success=False,
                error=f"Unexpected error: {type(e).__name__}: {e}",
                error_type=ScrapeErrorType.EXTRACTION_FAILED,
            )

    def _extract(self, html: str, url: str) -> tuple[str | None, Any]:
        text = trafilatura.extract(
            html,
            url=url,
            config=self._config,
            include_comments=False,
            include_tables=True,
            favor_recall=True,
        )
        metadata = trafilatura.extract_metadata(html, default_url=url)
        return text, metadata

    @staticmethod
    def _build_result(
        url: str,
        status: int,
        content_type: str,
        headers: dict[str, str],
        raw: str,
        clean_text: str,
    ) -> ScrapedContent:
        return ScrapedContent(
            url=url,
            success=True,
            raw_content=raw,
            clean_text=clean_text,
            content_type=content_type,
            headers=headers,
            scraped_at=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            http_status=status,
        )
