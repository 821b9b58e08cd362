"""Chunk a bookmark's clean text and store one embedding per chunk."""

from __future__ import annotations

import logging

import httpx

from bookmind.core.chunking import MAX_CHUNK_TOKENS, chunk_text
from bookmind.core.embedding_providers import EmbeddingProvider
from bookmind.core.errors import ProviderError
from bookmind.core.models import BookmarkStatus
from bookmind.core.storage import DB

logger = logging.getLogger(__name__)

# Upper bound on texts per embedding request
EMBED_BATCH_SIZE = 2048


class ContentProcessor:
    """Turns stored content into a persisted chunk set.

    All-or-nothing per content row: chunks are written only after every
    chunk has a vector, and replace the previous set in one transaction.
    """

    def __init__(self, db: DB, provider: EmbeddingProvider, max_tokens: int = MAX_CHUNK_TOKENS):
        self.db = db
        self.provider = provider
        self.max_tokens = max_tokens

    async def process_content(self, bookmark_id: str) -> int:
        """Chunk and embed the bookmark's content.

        Returns:
            Number of chunks stored

        Raises:
            NotFoundError: No bookmark or no content for it.
            ProviderError: Embedding failed; bookmark is marked failed and
                the previous chunk set is left untouched.
        """
        content = self.db.get_content(bookmark_id)
        chunks = chunk_text(content.clean_text, self.max_tokens)

        try:
            vectors = await self._embed(chunks)
        except ProviderError as e:
            logger.warning(f"Embedding failed for bookmark {bookmark_id}: {e}")
            self.db.update_bookmark_status(bookmark_id, BookmarkStatus.FAILED)
            raise
        except httpx.HTTPError as e:
            logger.warning(f"Embedding request failed for bookmark {bookmark_id}: {e}")
            self.db.update_bookmark_status(bookmark_id, BookmarkStatus.FAILED)
            raise ProviderError(str(e), provider=self.provider.name, retriable=True) from e

        if len(vectors) != len(chunks):
            self.db.update_bookmark_status(bookmark_id, BookmarkStatus.FAILED)
            raise ProviderError(
                f"Expected {len(chunks)} embeddings, got {len(vectors)}",
                provider=self.provider.name,
            )

        count = self.db.store_chunks(content.id, list(zip(chunks, vectors)), self.provider.model_id)
        self.db.update_bookmark_status(bookmark_id, BookmarkStatus.COMPLETED)
        logger.info(f"Stored {count} chunks for bookmark {bookmark_id}")
        return count

    async def _embed(self, chunks: list[str]) -> list[list[float]]:
        if not chunks:
            return []

        if not self.provider.supports_batch:
            return [await self.provider.embed_single(chunk) for chunk in chunks]

        batch_size = max(1, min(EMBED_BATCH_SIZE, self.provider.max_batch_size))
        vectors: list[list[float]] = []
        for start in range(0, len(chunks), batch_size):
            vectors.extend(await self.provider.embed(chunks[start : start + batch_size]))
        return vectors
