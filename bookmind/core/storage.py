from __future__ import annotations

import functools
import json
import logging
import os
import re
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar
from urllib.parse import urlparse

import sqlite_vec

from bookmind.core.embedding_providers import deserialize_f32, serialize_f32
from bookmind.core.errors import (
    BookmindError,
    DuplicateKeyError,
    NotFoundError,
    StoreError,
    TransientStoreError,
    ValidationError,
)
from bookmind.core.models import (
    Bookmark,
    BookmarkStatus,
    Content,
    EmbeddingChunk,
    Folder,
    ImportBookmark,
    ImportFolder,
    ImportResult,
)

logger = logging.getLogger(__name__)

# Lock contention retry: 100ms, 200ms, 400ms, 800ms
LOCK_RETRY_ATTEMPTS = 5
LOCK_RETRY_BASE_DELAY = 0.1  # seconds

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS folders (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  parent_id TEXT REFERENCES folders(id) ON DELETE CASCADE,
  path TEXT NOT NULL UNIQUE,
  created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS bookmarks (
  id TEXT PRIMARY KEY,
  url TEXT NOT NULL UNIQUE,
  title TEXT,
  description TEXT,
  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'completed', 'failed')),
  folder_id TEXT REFERENCES folders(id) ON DELETE SET NULL,
  folder_path TEXT,
  favicon_url TEXT,
  tags TEXT,
  imported_at TEXT,
  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now')),
  scraped_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_bookmarks_status ON bookmarks(status);
CREATE INDEX IF NOT EXISTS idx_bookmarks_folder_path ON bookmarks(folder_path);

-- One row per bookmark, replaced wholesale on re-scrape
CREATE TABLE IF NOT EXISTS content (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  bookmark_id TEXT NOT NULL UNIQUE REFERENCES bookmarks(id) ON DELETE CASCADE,
  raw_content TEXT,
  clean_text TEXT,
  content_type TEXT DEFAULT 'text/html',
  scraped_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS embedding_chunks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  content_id INTEGER NOT NULL REFERENCES content(id) ON DELETE CASCADE,
  chunk_index INTEGER NOT NULL,
  chunk_text TEXT NOT NULL,
  embedding BLOB NOT NULL,
  dimensions INTEGER NOT NULL,
  model TEXT NOT NULL,
  created_at TEXT DEFAULT (datetime('now')),
  UNIQUE(content_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_chunks_content_id ON embedding_chunks(content_id);
CREATE INDEX IF NOT EXISTS idx_chunks_dimensions ON embedding_chunks(dimensions);

-- Lexical indexes, synced explicitly by every write (no triggers)
CREATE VIRTUAL TABLE IF NOT EXISTS bookmarks_fts USING fts5(
  bookmark_id UNINDEXED, title, description,
  tokenize='porter unicode61'
);

CREATE VIRTUAL TABLE IF NOT EXISTS content_fts USING fts5(
  content_id UNINDEXED, bookmark_id UNINDEXED, clean_text,
  tokenize='porter unicode61'
);
"""

UPDATABLE_FIELDS = {
    "url",
    "title",
    "description",
    "status",
    "favicon_url",
    "tags",
    "scraped_at",
    "folder_id",
}

T = TypeVar("T")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _is_valid_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _is_locked(e: sqlite3.OperationalError) -> bool:
    msg = str(e).lower()
    return "database is locked" in msg or "database is busy" in msg


def _fts_query(text: str) -> str | None:
    """Build an FTS5 MATCH expression: quoted terms joined with OR.

    Quoting every term keeps user input from being parsed as FTS5 syntax.
    """
    terms: list[str] = []
    for term in re.findall(r"\w+", text.lower()):
        if term not in terms:
            terms.append(term)
    if not terms:
        return None
    return " OR ".join(f'"{t}"' for t in terms)


def _like_prefix(path: str) -> str:
    escaped = path.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return escaped + "/%"


def store_operation(name: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Serialize a DB method on the store lock and retry it while SQLite is locked.

    Lock contention is retried with exponential backoff and surfaces as
    TransientStoreError once the attempts are used up. bookmind errors pass
    through untouched; any other sqlite3 error is wrapped in StoreError
    carrying the operation name.
    """

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(self: DB, *args: Any, **kwargs: Any) -> T:
            delay = LOCK_RETRY_BASE_DELAY
            for attempt in range(1, LOCK_RETRY_ATTEMPTS + 1):
                try:
                    with self.lock:
                        return fn(self, *args, **kwargs)
                except BookmindError:
                    raise
                except sqlite3.OperationalError as e:
                    if not _is_locked(e):
                        raise StoreError(f"{name}: {e}") from e
                    if attempt == LOCK_RETRY_ATTEMPTS:
                        raise TransientStoreError(
                            f"{name}: database still locked after {LOCK_RETRY_ATTEMPTS} attempts"
                        ) from e
                    logger.warning(f"{name}: database locked, retry {attempt}/{LOCK_RETRY_ATTEMPTS} in {delay:.1f}s")
                    time.sleep(delay)
                    delay *= 2
                except sqlite3.Error as e:
                    raise StoreError(f"{name}: {e}") from e
            raise AssertionError("unreachable")

        return wrapper

    return decorator


@dataclass
class DB:
    conn: sqlite3.Connection
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def init(self) -> None:
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    # ==================== FTS sync ====================

    def _fts_put_bookmark(self, bookmark_id: str, title: str, description: str) -> None:
        self.conn.execute("DELETE FROM bookmarks_fts WHERE bookmark_id = ?", (bookmark_id,))
        self.conn.execute(
            "INSERT INTO bookmarks_fts (bookmark_id, title, description) VALUES (?, ?, ?)",
            (bookmark_id, title or "", description or ""),
        )

    def _delete_content_rows(self, bookmark_id: str) -> None:
        """Remove content, its chunks and its lexical row for a bookmark."""
        self.conn.execute(
            """
            DELETE FROM embedding_chunks
            WHERE content_id IN (SELECT id FROM content WHERE bookmark_id = ?)
            """,
            (bookmark_id,),
        )
        self.conn.execute("DELETE FROM content_fts WHERE bookmark_id = ?", (bookmark_id,))
        self.conn.execute("DELETE FROM content WHERE bookmark_id = ?", (bookmark_id,))

    # ==================== Import ====================

    def _validate_folders(self, folders: list[ImportFolder], parent_path: list[str]) -> None:
        for folder in folders:
            if not folder.name or not folder.name.strip():
                raise ValidationError(f"Folder without a name under '{'/'.join(parent_path)}'")
            if list(folder.path) != parent_path + [folder.name]:
                raise ValidationError(
                    f"Folder path '{'/'.join(folder.path)}' does not extend parent path "
                    f"'{'/'.join(parent_path)}'"
                )
            self._validate_folders(folder.subfolders, list(folder.path))

    def _ensure_folder(self, parts: list[str], folder_ids: dict[str, str], result: ImportResult | None) -> str | None:
        """Return the folder id for a path, creating missing ancestors."""
        parent_id: str | None = None
        for depth in range(1, len(parts) + 1):
            path = "/".join(parts[:depth])
            if path in folder_ids:
                parent_id = folder_ids[path]
                continue
            row = self.conn.execute("SELECT id FROM folders WHERE path = ?", (path,)).fetchone()
            if row:
                folder_id = row["id"]
            else:
                folder_id = str(uuid.uuid4())
                self.conn.execute(
                    "INSERT INTO folders (id, name, parent_id, path, created_at) VALUES (?, ?, ?, ?, ?)",
                    (folder_id, parts[depth - 1], parent_id, path, _now()),
                )
                if result is not None:
                    result.folders_created += 1
            folder_ids[path] = folder_id
            parent_id = folder_id
        return parent_id

    def _insert_folders(self, folders: list[ImportFolder], folder_ids: dict[str, str], result: ImportResult) -> None:
        for folder in folders:
            self._ensure_folder(list(folder.path), folder_ids, result)
            self._insert_folders(folder.subfolders, folder_ids, result)

    @store_operation("import_batch")
    def import_batch(self, folders: list[ImportFolder], bookmarks: list[ImportBookmark]) -> ImportResult:
        """Import a parsed folder tree and its bookmarks in one transaction.

        Duplicate URLs (already stored, or repeated within the batch) are
        counted and skipped. Bookmarks without a usable http(s) URL are
        counted as failed. A malformed folder tree raises ValidationError
        before anything is written.
        """
        self._validate_folders(folders, [])

        result = ImportResult(total_found=len(bookmarks))
        folder_ids: dict[str, str] = {}
        seen: set[str] = set()
        now = _now()

        with self.conn:
            self._insert_folders(folders, folder_ids, result)

            for item in bookmarks:
                url = (item.url or "").strip()
                if not url or not _is_valid_url(url):
                    result.failed += 1
                    result.errors.append(f"Invalid URL: {item.url!r}")
                    continue
                if url in seen:
                    result.duplicates += 1
                    continue
                seen.add(url)

                parts = [p for p in item.folder_path if p]
                folder_id = self._ensure_folder(parts, folder_ids, result) if parts else None
                bookmark_id = str(uuid.uuid4())
                title = item.title or url
                created_at = item.date_added.strftime("%Y-%m-%d %H:%M:%S") if item.date_added else now

                cur = self.conn.execute(
                    """
                    INSERT INTO bookmarks (id, url, title, description, status, folder_id, folder_path,
                                           favicon_url, tags, imported_at, created_at, updated_at)
                    VALUES (?, ?, ?, '', 'pending', ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(url) DO NOTHING
                    RETURNING id
                    """,
                    (
                        bookmark_id,
                        url,
                        title,
                        folder_id,
                        "/".join(parts),
                        item.icon or "",
                        json.dumps(item.tags or []),
                        now,
                        created_at,
                        now,
                    ),
                )
                if cur.fetchone() is None:
                    result.duplicates += 1
                    continue

                self._fts_put_bookmark(bookmark_id, title, "")
                result.imported += 1
                result.imported_ids.append(bookmark_id)

        logger.info(
            f"Import finished: {result.imported} imported, {result.duplicates} duplicates, "
            f"{result.failed} failed, {result.folders_created} folders created"
        )
        return result

    # ==================== Bookmarks ====================

    @store_operation("add_bookmark")
    def add_bookmark(
        self,
        url: str,
        title: str = "",
        description: str = "",
        folder_path: str = "",
        tags: list[str] | None = None,
    ) -> Bookmark:
        url = (url or "").strip()
        if not _is_valid_url(url):
            raise ValidationError(f"Invalid URL: {url!r}")

        bookmark_id = str(uuid.uuid4())
        now = _now()
        parts = [p for p in folder_path.split("/") if p]
        try:
            with self.conn:
                folder_id = self._ensure_folder(parts, {}, None) if parts else None
                self.conn.execute(
                    """
                    INSERT INTO bookmarks (id, url, title, description, status, folder_id, folder_path,
                                           favicon_url, tags, imported_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, 'pending', ?, ?, '', ?, ?, ?, ?)
                    """,
                    (bookmark_id, url, title or url, description, folder_id, "/".join(parts),
                     json.dumps(tags or []), now, now, now),
                )
                self._fts_put_bookmark(bookmark_id, title or url, description)
        except sqlite3.IntegrityError as e:
            if "bookmarks.url" in str(e):
                raise DuplicateKeyError(f"Bookmark with URL {url} already exists") from e
            raise
        return self._get_bookmark(bookmark_id)

    def _get_bookmark(self, bookmark_id: str) -> Bookmark:
        row = self.conn.execute("SELECT * FROM bookmarks WHERE id = ?", (bookmark_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Bookmark {bookmark_id} not found")
        return Bookmark.from_row(row)

    @store_operation("get_bookmark")
    def get_bookmark(self, bookmark_id: str) -> Bookmark:
        return self._get_bookmark(bookmark_id)

    @store_operation("get_bookmarks")
    def get_bookmarks(self, bookmark_ids: list[str]) -> dict[str, Bookmark]:
        """Fetch several bookmarks at once. Unknown ids are left out."""
        if not bookmark_ids:
            return {}
        placeholders = ",".join("?" * len(bookmark_ids))
        cur = self.conn.execute(f"SELECT * FROM bookmarks WHERE id IN ({placeholders})", list(bookmark_ids))
        return {row["id"]: Bookmark.from_row(row) for row in cur.fetchall()}

    def _filter_clause(self, status: str | None, folder_path: str | None) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if status:
            try:
                clauses.append("status = ?")
                params.append(BookmarkStatus(status).value)
            except ValueError as e:
                raise ValidationError(f"Unknown status: {status}") from e
        if folder_path:
            path = folder_path.strip("/")
            clauses.append("(folder_path = ? OR folder_path LIKE ? ESCAPE '\\')")
            params.extend([path, _like_prefix(path)])
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @store_operation("list_bookmarks")
    def list_bookmarks(
        self,
        status: str | None = None,
        folder_path: str | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[Bookmark]:
        """List bookmarks, newest first.

        folder_path matches the folder and all its sub-folders.
        limit=None returns everything.
        """
        where, params = self._filter_clause(status, folder_path)
        cur = self.conn.execute(
            f"SELECT * FROM bookmarks {where} ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
            params + [limit if limit is not None else -1, offset],
        )
        return [Bookmark.from_row(row) for row in cur.fetchall()]

    @store_operation("count_bookmarks")
    def count_bookmarks(self, status: str | None = None, folder_path: str | None = None) -> int:
        where, params = self._filter_clause(status, folder_path)
        return self.conn.execute(f"SELECT COUNT(*) FROM bookmarks {where}", params).fetchone()[0]

    def _update_fields(self, bookmark_id: str, fields: dict[str, Any]) -> Bookmark:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}")

        current = self._get_bookmark(bookmark_id)
        if not fields:
            return current

        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "status":
                try:
                    value = BookmarkStatus(value).value
                except ValueError as e:
                    raise ValidationError(f"Unknown status: {value}") from e
            elif key == "tags":
                value = json.dumps(list(value or []))
            elif key == "url":
                value = (value or "").strip()
                if not _is_valid_url(value):
                    raise ValidationError(f"Invalid URL: {value!r}")
            elif key == "folder_id" and value is not None:
                row = self.conn.execute("SELECT path FROM folders WHERE id = ?", (value,)).fetchone()
                if not row:
                    raise NotFoundError(f"Folder {value} not found")
                values["folder_path"] = row["path"]
            elif key == "folder_id":
                values["folder_path"] = ""
            values[key] = value
        values["updated_at"] = _now()

        assignments = ", ".join(f"{key} = ?" for key in values)
        try:
            with self.conn:
                self.conn.execute(
                    f"UPDATE bookmarks SET {assignments} WHERE id = ?",
                    list(values.values()) + [bookmark_id],
                )
                if "title" in fields or "description" in fields:
                    self._fts_put_bookmark(
                        bookmark_id,
                        fields.get("title", current.title),
                        fields.get("description", current.description),
                    )
        except sqlite3.IntegrityError as e:
            if "bookmarks.url" in str(e):
                raise DuplicateKeyError(f"Bookmark with URL {values['url']} already exists") from e
            raise
        return self._get_bookmark(bookmark_id)

    @store_operation("update_bookmark")
    def update_bookmark(self, bookmark_id: str, **fields: Any) -> Bookmark:
        """Update bookmark fields. Title/description changes resync the lexical index."""
        return self._update_fields(bookmark_id, fields)

    @store_operation("update_bookmark_status")
    def update_bookmark_status(self, bookmark_id: str, status: BookmarkStatus | str) -> Bookmark:
        return self._update_fields(bookmark_id, {"status": status})

    @store_operation("delete_bookmark")
    def delete_bookmark(self, bookmark_id: str) -> None:
        """Delete a bookmark with its content, chunks and lexical rows."""
        self._get_bookmark(bookmark_id)
        with self.conn:
            self._delete_content_rows(bookmark_id)
            self.conn.execute("DELETE FROM bookmarks_fts WHERE bookmark_id = ?", (bookmark_id,))
            self.conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))

    # ==================== Content ====================

    @store_operation("store_content")
    def store_content(
        self,
        bookmark_id: str,
        raw_content: str,
        clean_text: str,
        content_type: str = "text/html",
    ) -> int:
        """Replace the bookmark's content row (and drop its old chunks).

        Returns:
            The new content id
        """
        self._get_bookmark(bookmark_id)
        with self.conn:
            self._delete_content_rows(bookmark_id)
            cur = self.conn.execute(
                """
                INSERT INTO content (bookmark_id, raw_content, clean_text, content_type, scraped_at)
                VALUES (?, ?, ?, ?, ?)
                RETURNING id
                """,
                (bookmark_id, raw_content or "", clean_text or "", content_type, _now()),
            )
            content_id = cur.fetchone()[0]
            self.conn.execute(
                "INSERT INTO content_fts (content_id, bookmark_id, clean_text) VALUES (?, ?, ?)",
                (content_id, bookmark_id, clean_text or ""),
            )
        return content_id

    @store_operation("get_content")
    def get_content(self, bookmark_id: str) -> Content:
        row = self.conn.execute("SELECT * FROM content WHERE bookmark_id = ?", (bookmark_id,)).fetchone()
        if not row:
            raise NotFoundError(f"No content for bookmark {bookmark_id}")
        return Content.from_row(row)

    def _get_content_by_id(self, content_id: int) -> Content:
        row = self.conn.execute("SELECT * FROM content WHERE id = ?", (content_id,)).fetchone()
        if not row:
            raise NotFoundError(f"Content {content_id} not found")
        return Content.from_row(row)

    @store_operation("get_content_by_id")
    def get_content_by_id(self, content_id: int) -> Content:
        return self._get_content_by_id(content_id)

    @store_operation("get_contents")
    def get_contents(self, bookmark_ids: list[str]) -> dict[str, Content]:
        """Content rows keyed by bookmark id. Bookmarks without content are left out."""
        if not bookmark_ids:
            return {}
        placeholders = ",".join("?" * len(bookmark_ids))
        cur = self.conn.execute(
            f"SELECT * FROM content WHERE bookmark_id IN ({placeholders})",
            list(bookmark_ids),
        )
        return {row["bookmark_id"]: Content.from_row(row) for row in cur.fetchall()}

    # ==================== Embedding chunks ====================

    @store_operation("store_chunks")
    def store_chunks(self, content_id: int, chunks: list[tuple[str, list[float]]], model: str) -> int:
        """Replace the chunk set of a content row in one transaction.

        Args:
            content_id: Owning content row
            chunks: (chunk_text, vector) pairs in reading order
            model: Embedding model identifier

        Returns:
            Number of chunks stored
        """
        self._get_content_by_id(content_id)

        dims = {len(vector) for _, vector in chunks}
        if 0 in dims or len(dims) > 1:
            raise ValidationError(f"Chunk vectors must share one non-zero dimension, got {sorted(dims)}")

        now = _now()
        with self.conn:
            self.conn.execute("DELETE FROM embedding_chunks WHERE content_id = ?", (content_id,))
            self.conn.executemany(
                """
                INSERT INTO embedding_chunks
                    (content_id, chunk_index, chunk_text, embedding, dimensions, model, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (content_id, index, text, serialize_f32(vector), len(vector), model, now)
                    for index, (text, vector) in enumerate(chunks)
                ],
            )
        return len(chunks)

    @store_operation("get_embedding_chunks")
    def get_embedding_chunks(self, content_id: int) -> list[EmbeddingChunk]:
        self._get_content_by_id(content_id)
        cur = self.conn.execute(
            """
            SELECT id, content_id, chunk_index, chunk_text, embedding, model, created_at
            FROM embedding_chunks
            WHERE content_id = ?
            ORDER BY chunk_index
            """,
            (content_id,),
        )
        return [
            EmbeddingChunk(
                id=row["id"],
                content_id=row["content_id"],
                chunk_index=row["chunk_index"],
                chunk_text=row["chunk_text"],
                vector=deserialize_f32(row["embedding"]),
                model=row["model"],
                created_at=row["created_at"],
            )
            for row in cur.fetchall()
        ]

    @store_operation("get_bookmarks_without_embeddings")
    def get_bookmarks_without_embeddings(self, limit: int = 100) -> list[Bookmark]:
        """Bookmarks that have content but no chunk set yet."""
        cur = self.conn.execute(
            """
            SELECT b.* FROM bookmarks b
            JOIN content c ON c.bookmark_id = b.id
            WHERE NOT EXISTS (SELECT 1 FROM embedding_chunks e WHERE e.content_id = c.id)
            ORDER BY b.created_at DESC, b.id
            LIMIT ?
            """,
            (limit,),
        )
        return [Bookmark.from_row(row) for row in cur.fetchall()]

    # ==================== Search candidates ====================

    @store_operation("semantic_candidates")
    def semantic_candidates(self, query_vector: list[float], limit: int = 50) -> list[dict[str, Any]]:
        """Top chunks by cosine distance among chunks with the query's dimension.

        Returns:
            Dicts with bookmark_id, content_id, chunk_index, chunk_text, similarity
        """
        if not query_vector:
            return []
        cur = self.conn.execute(
            """
            SELECT * FROM (
                SELECT c.bookmark_id, e.content_id, e.chunk_index, e.chunk_text, e.id AS chunk_id,
                       vec_distance_cosine(e.embedding, ?) AS distance
                FROM embedding_chunks e
                JOIN content c ON c.id = e.content_id
                WHERE e.dimensions = ?
            )
            WHERE distance IS NOT NULL
            ORDER BY distance, chunk_id
            LIMIT ?
            """,
            (serialize_f32(query_vector), len(query_vector), limit),
        )
        return [
            {
                "bookmark_id": row["bookmark_id"],
                "content_id": row["content_id"],
                "chunk_index": row["chunk_index"],
                "chunk_text": row["chunk_text"],
                "similarity": 1.0 - row["distance"],
            }
            for row in cur.fetchall()
        ]

    @store_operation("lexical_candidates")
    def lexical_candidates(self, query: str, limit: int = 50) -> list[dict[str, Any]]:
        """BM25 matches over title/description and over content text, merged.

        FTS5's bm25() is negative with lower meaning better, so it is negated
        here: a higher score is a better match.

        Returns:
            Dicts with bookmark_id, score, snippet, source ("bookmark" or "content")
        """
        match = _fts_query(query or "")
        if match is None:
            return []
        cur = self.conn.execute(
            """
            SELECT bookmark_id, -bm25(bookmarks_fts) AS score, '' AS snippet, 'bookmark' AS source
            FROM bookmarks_fts
            WHERE bookmarks_fts MATCH ?
            UNION ALL
            SELECT bookmark_id, -bm25(content_fts) AS score,
                   snippet(content_fts, 2, '<mark>', '</mark>', '...', 32) AS snippet,
                   'content' AS source
            FROM content_fts
            WHERE content_fts MATCH ?
            ORDER BY score DESC, bookmark_id
            LIMIT ?
            """,
            (match, match, limit),
        )
        return [
            {
                "bookmark_id": row["bookmark_id"],
                "score": row["score"],
                "snippet": row["snippet"] or None,
                "source": row["source"],
            }
            for row in cur.fetchall()
        ]

    # ==================== Folders & stats ====================

    @store_operation("get_folder_tree")
    def get_folder_tree(self) -> dict[str, Any]:
        """Nested folders with their bookmarks, plus bookmarks outside any folder."""
        folders = [
            Folder.from_row(row) for row in self.conn.execute("SELECT * FROM folders ORDER BY path").fetchall()
        ]
        nodes: dict[str, dict[str, Any]] = {}
        for folder in folders:
            node = folder.to_dict()
            node["children"] = []
            node["bookmarks"] = []
            nodes[folder.id] = node

        roots: list[dict[str, Any]] = []
        for folder in folders:
            node = nodes[folder.id]
            if folder.parent_id and folder.parent_id in nodes:
                nodes[folder.parent_id]["children"].append(node)
            else:
                roots.append(node)

        unfiled: list[dict[str, Any]] = []
        cur = self.conn.execute("SELECT * FROM bookmarks ORDER BY title COLLATE NOCASE, id")
        for row in cur.fetchall():
            bookmark = Bookmark.from_row(row)
            if bookmark.folder_id and bookmark.folder_id in nodes:
                nodes[bookmark.folder_id]["bookmarks"].append(bookmark.to_dict())
            else:
                unfiled.append(bookmark.to_dict())

        return {"folders": roots, "unfiled": unfiled}

    @store_operation("get_stats")
    def get_stats(self) -> dict[str, Any]:
        by_status = {status.value: 0 for status in BookmarkStatus}
        for row in self.conn.execute("SELECT status, COUNT(*) FROM bookmarks GROUP BY status").fetchall():
            by_status[row[0]] = row[1]

        def count(sql: str) -> int:
            return self.conn.execute(sql).fetchone()[0]

        return {
            "bookmarks": sum(by_status.values()),
            "by_status": by_status,
            "folders": count("SELECT COUNT(*) FROM folders"),
            "content": count("SELECT COUNT(*) FROM content"),
            "chunks": count("SELECT COUNT(*) FROM embedding_chunks"),
            "with_content": count("SELECT COUNT(DISTINCT bookmark_id) FROM content"),
            "with_embeddings": count(
                """
                SELECT COUNT(DISTINCT c.bookmark_id) FROM content c
                JOIN embedding_chunks e ON e.content_id = c.id
                """
            ),
        }


def connect(db_path: str) -> DB:
    """Open (and create) the database with sqlite-vec loaded."""
    if db_path != ":memory:":
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # sqlite-vec must be loaded into this connection
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)

    db = DB(conn=conn)
    db.init()
    return db
