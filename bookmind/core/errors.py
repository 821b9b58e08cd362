"""Error taxonomy shared by the store, the pipeline and the scraping jobs."""

from __future__ import annotations


class BookmindError(Exception):
    """Base class for all bookmind errors."""


class NotFoundError(BookmindError):
    """A bookmark, content row or chunk set does not exist."""


class DuplicateKeyError(BookmindError):
    """URL collision on a direct single insert."""


class ValidationError(BookmindError):
    """Malformed import batch or invalid field value."""


class TransientStoreError(BookmindError):
    """Database stayed locked after all retry attempts."""


class ProviderError(BookmindError):
    """Scraper or embedding provider failure."""

    def __init__(self, message: str, provider: str = "unknown", retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class JobStateError(BookmindError):
    """Control call that is not valid for the current scrape job state."""


class StoreError(BookmindError):
    """Unexpected database failure, wrapped with the failing operation's name."""
