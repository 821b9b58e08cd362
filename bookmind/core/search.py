"""Hybrid search: cosine-similarity chunk candidates fused with BM25 candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from bookmind.core.embedding_providers import EmbeddingProvider
from bookmind.core.errors import ProviderError, ValidationError
from bookmind.core.models import Bookmark, Content, SearchResult, SearchType
from bookmind.core.storage import DB

logger = logging.getLogger(__name__)

# Candidate sets
SEMANTIC_TOP_K = 50
SEMANTIC_THRESHOLD = 0.3  # noise floor on cosine similarity
SEMANTIC_WEIGHT = 0.4
LEXICAL_TOP_K = 50
LEXICAL_THRESHOLD = 0.15  # on max-normalized bm25
LEXICAL_WEIGHT = 0.6

MAX_RESULTS = 20
SNIPPET_CHARS = 300

# Substring boost, first match wins
TITLE_MATCH_BOOST = 1.5
DESCRIPTION_MATCH_BOOST = 1.3
CONTENT_MATCH_BOOST = 1.2

# Field boost
TITLE_PHRASE_BOOST = 3.0
URL_PHRASE_BOOST = 2.0
TITLE_WORDS_HIGH_BOOST = 2.0  # >= 50% of query words are title words
TITLE_WORDS_LOW_BOOST = 1.5  # >= 25%


@dataclass
class _Candidate:
    bookmark_id: str
    semantic: float | None = None
    lexical: float | None = None
    snippet: str | None = None


def _words(text: str) -> list[str]:
    """Lowercased whitespace-separated words, punctuation kept."""
    return text.lower().split()


def exact_match_boost(query_words: list[str], bookmark: Bookmark, content: Content | None) -> float:
    """Multiplier for a query word occurring in title, else description, else content."""
    title = bookmark.title.lower()
    if any(word in title for word in query_words):
        return TITLE_MATCH_BOOST
    description = bookmark.description.lower()
    if description and any(word in description for word in query_words):
        return DESCRIPTION_MATCH_BOOST
    if content is not None and content.clean_text:
        text = content.clean_text.lower()
        if any(word in text for word in query_words):
            return CONTENT_MATCH_BOOST
    return 1.0


def field_boost(query: str, query_words: list[str], bookmark: Bookmark) -> float:
    """Multiplier for the whole query in title or URL, else title word overlap."""
    phrase = query.strip().lower()
    title = bookmark.title.lower()
    if phrase and phrase in title:
        return TITLE_PHRASE_BOOST
    if phrase and phrase in bookmark.url.lower():
        return URL_PHRASE_BOOST

    if not query_words:
        return 1.0
    title_words = set(_words(title))
    ratio = sum(1 for word in query_words if word in title_words) / len(query_words)
    if ratio >= 0.5:
        return TITLE_WORDS_HIGH_BOOST
    if ratio >= 0.25:
        return TITLE_WORDS_LOW_BOOST
    return 1.0


def _snippet_from_chunk(text: str) -> str:
    text = " ".join(text.split())
    if len(text) <= SNIPPET_CHARS:
        return text
    return text[:SNIPPET_CHARS].rstrip() + "..."


def _parse_search_type(search_type: SearchType | str | None) -> SearchType:
    if search_type is None or search_type == "":
        return SearchType.HYBRID
    try:
        return SearchType(search_type)
    except ValueError as e:
        raise ValidationError(f"Unknown search type: {search_type}") from e


class SearchEngine:
    """Ranks bookmarks for a free-text query.

    Scores are relative ranking signals: boosts are applied after
    weighting and the result is never clipped to [0, 1].
    """

    def __init__(self, db: DB, provider: EmbeddingProvider | None = None):
        self.db = db
        self.provider = provider

    async def search(
        self,
        query: str,
        limit: int = MAX_RESULTS,
        search_type: SearchType | str | None = None,
    ) -> list[SearchResult]:
        """Embed the query, then rank.

        A provider failure degrades to keyword-only ranking instead of
        failing the request.
        """
        mode = _parse_search_type(search_type)
        if not query or not query.strip():
            return []

        query_vector: list[float] | None = None
        if mode != SearchType.KEYWORD and self.provider is not None:
            try:
                query_vector = await self.provider.embed_single(query)
            except (ProviderError, httpx.HTTPError) as e:
                logger.warning(f"Query embedding failed, using keyword search only: {e}")

        return self.search_with_vector(query, query_vector, limit=limit, search_type=mode)

    def search_with_vector(
        self,
        query: str,
        query_vector: list[float] | None,
        limit: int = MAX_RESULTS,
        search_type: SearchType | str | None = None,
    ) -> list[SearchResult]:
        """Rank bookmarks from store reads only.

        Args:
            query: Free-text query
            query_vector: Query embedding, or None for keyword-only ranking
            limit: Result cap (never more than MAX_RESULTS)
            search_type: "semantic", "keyword" or "hybrid" (default)
        """
        mode = _parse_search_type(search_type)
        if not query or not query.strip():
            return []

        usable_vector = bool(query_vector) and any(v != 0.0 for v in query_vector or [])
        use_semantic = mode in (SearchType.HYBRID, SearchType.SEMANTIC) and usable_vector
        # Semantic-only requests fall back to keyword ranking without a vector
        use_lexical = mode in (SearchType.HYBRID, SearchType.KEYWORD) or not use_semantic

        candidates: dict[str, _Candidate] = {}
        if use_semantic:
            self._collect_semantic(query_vector or [], candidates)
        if use_lexical:
            self._collect_lexical(query, candidates)
        if not candidates:
            return []

        ids = list(candidates)
        bookmarks = self.db.get_bookmarks(ids)
        contents = self.db.get_contents(ids)
        query_words = _words(query)

        results: list[SearchResult] = []
        for bookmark_id, cand in candidates.items():
            bookmark = bookmarks.get(bookmark_id)
            if bookmark is None:
                continue
            content = contents.get(bookmark_id)
            boost = exact_match_boost(query_words, bookmark, content) * field_boost(query, query_words, bookmark)

            score = 0.0
            if cand.semantic is not None:
                score += cand.semantic * SEMANTIC_WEIGHT * boost
            if cand.lexical is not None:
                score += cand.lexical * LEXICAL_WEIGHT * boost

            if cand.semantic is not None and cand.lexical is not None:
                kind = SearchType.HYBRID
            elif cand.semantic is not None:
                kind = SearchType.SEMANTIC
            else:
                kind = SearchType.KEYWORD

            results.append(
                SearchResult(
                    bookmark=bookmark,
                    relevance_score=score,
                    search_type=kind,
                    content=content,
                    snippet=cand.snippet,
                )
            )

        results.sort(key=lambda r: (-r.relevance_score, r.bookmark.id))
        return results[: max(0, min(limit, MAX_RESULTS))]

    def _collect_semantic(self, query_vector: list[float], candidates: dict[str, _Candidate]) -> None:
        # Rows arrive best-first, so the first row per bookmark is its best chunk
        for row in self.db.semantic_candidates(query_vector, limit=SEMANTIC_TOP_K):
            if row["bookmark_id"] in candidates:
                continue
            if row["similarity"] < SEMANTIC_THRESHOLD:
                continue
            candidates[row["bookmark_id"]] = _Candidate(
                bookmark_id=row["bookmark_id"],
                semantic=row["similarity"],
                snippet=_snippet_from_chunk(row["chunk_text"]),
            )

    def _collect_lexical(self, query: str, candidates: dict[str, _Candidate]) -> None:
        rows = self.db.lexical_candidates(query, limit=LEXICAL_TOP_K)
        if not rows:
            return

        best: dict[str, float] = {}
        snippets: dict[str, str] = {}
        for row in rows:
            bookmark_id = row["bookmark_id"]
            if row["score"] > best.get(bookmark_id, float("-inf")):
                best[bookmark_id] = row["score"]
            if row["snippet"] and bookmark_id not in snippets:
                snippets[bookmark_id] = row["snippet"]

        max_score = max(best.values())
        if max_score <= 0:
            return

        for bookmark_id, raw in best.items():
            normalized = raw / max_score
            if normalized < LEXICAL_THRESHOLD:
                continue
            cand = candidates.setdefault(bookmark_id, _Candidate(bookmark_id=bookmark_id))
            cand.lexical = normalized
            if bookmark_id in snippets:
                cand.snippet = snippets[bookmark_id]
