"""Record types for bookmarks, folders, content, chunks and search results."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class BookmarkStatus(str, Enum):
    """Processing status of a bookmark."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SearchType(str, Enum):
    """Which candidate set(s) produced a search result."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


@dataclass
class Bookmark:
    id: str
    url: str
    title: str = ""
    description: str = ""
    status: BookmarkStatus = BookmarkStatus.PENDING
    folder_id: str | None = None
    folder_path: str = ""
    favicon_url: str = ""
    tags: list[str] = field(default_factory=list)
    imported_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    scraped_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "folder_id": self.folder_id,
            "folder_path": self.folder_path,
            "favicon_url": self.favicon_url,
            "tags": list(self.tags),
            "imported_at": self.imported_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "scraped_at": self.scraped_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Bookmark:
        """Create Bookmark from a bookmarks table row."""
        try:
            tags = json.loads(row["tags"]) if row["tags"] else []
        except json.JSONDecodeError:
            tags = []
        return cls(
            id=row["id"],
            url=row["url"],
            title=row["title"] or "",
            description=row["description"] or "",
            status=BookmarkStatus(row["status"]),
            folder_id=row["folder_id"],
            folder_path=row["folder_path"] or "",
            favicon_url=row["favicon_url"] or "",
            tags=tags,
            imported_at=row["imported_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            scraped_at=row["scraped_at"],
        )


@dataclass
class Folder:
    id: str
    name: str
    path: str
    parent_id: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "parent_id": self.parent_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Folder:
        return cls(
            id=row["id"],
            name=row["name"],
            path=row["path"],
            parent_id=row["parent_id"],
            created_at=row["created_at"],
        )


@dataclass
class Content:
    id: int
    bookmark_id: str
    raw_content: str = ""
    clean_text: str = ""
    content_type: str = "text/html"
    scraped_at: str | None = None

    def to_dict(self, include_raw: bool = False) -> dict[str, Any]:
        data = {
            "id": self.id,
            "bookmark_id": self.bookmark_id,
            "clean_text": self.clean_text,
            "content_type": self.content_type,
            "scraped_at": self.scraped_at,
        }
        if include_raw:
            data["raw_content"] = self.raw_content
        return data

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Content:
        return cls(
            id=row["id"],
            bookmark_id=row["bookmark_id"],
            raw_content=row["raw_content"] or "",
            clean_text=row["clean_text"] or "",
            content_type=row["content_type"] or "text/html",
            scraped_at=row["scraped_at"],
        )


@dataclass
class EmbeddingChunk:
    id: int
    content_id: int
    chunk_index: int
    chunk_text: str
    vector: list[float]
    model: str
    created_at: str | None = None

    @property
    def dimensions(self) -> int:
        return len(self.vector)


@dataclass
class SearchResult:
    """A ranked hit. The score is a relative ranking signal, not a probability."""

    bookmark: Bookmark
    relevance_score: float
    search_type: SearchType
    content: Content | None = None
    snippet: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "bookmark": self.bookmark.to_dict(),
            "relevanceScore": self.relevance_score,
            "searchType": self.search_type.value,
        }
        if self.snippet:
            data["snippet"] = self.snippet
        return data


# ==================== Import batch types ====================


@dataclass
class ImportBookmark:
    """A bookmark as produced by a bookmark-file parser."""

    url: str
    title: str = ""
    folder_path: list[str] = field(default_factory=list)  # e.g. ["Technology", "Databases"]
    date_added: datetime | None = None
    icon: str = ""
    tags: list[str] = field(default_factory=list)


@dataclass
class ImportFolder:
    """A folder node of the parsed tree. `path` includes the folder's own name."""

    name: str
    path: list[str]
    subfolders: list[ImportFolder] = field(default_factory=list)


@dataclass
class ImportResult:
    total_found: int = 0
    imported: int = 0
    duplicates: int = 0
    failed: int = 0
    folders_created: int = 0
    imported_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_found": self.total_found,
            "imported": self.imported,
            "duplicates": self.duplicates,
            "failed": self.failed,
            "folders_created": self.folders_created,
            "imported_ids": list(self.imported_ids),
            "errors": list(self.errors),
        }
