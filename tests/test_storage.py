"""Tests for storage.py"""

import sqlite3
import threading
from datetime import datetime
from unittest.mock import patch

import pytest

from bookmind.core.errors import (
    DuplicateKeyError,
    NotFoundError,
    StoreError,
    TransientStoreError,
    ValidationError,
)
from bookmind.core.models import BookmarkStatus, ImportBookmark, ImportFolder
from bookmind.core.storage import LOCK_RETRY_ATTEMPTS, store_operation


def _tree():
    databases = ImportFolder(name="Databases", path=["Technology", "Databases"])
    technology = ImportFolder(name="Technology", path=["Technology"], subfolders=[databases])
    return [technology]


def _count(db, sql, *params):
    return db.conn.execute(sql, params).fetchone()[0]


class TestInit:
    def test_init_is_idempotent(self, db):
        db.init()
        db.init()
        tables = {row[0] for row in db.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"bookmarks", "folders", "content", "embedding_chunks", "bookmarks_fts", "content_fts"} <= tables

    def test_foreign_keys_enabled(self, db):
        assert db.conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


class TestImportBatch:
    def test_import_counts(self, db):
        bookmarks = [
            ImportBookmark(url="https://sqlite.org/fts5.html", title="FTS5", folder_path=["Technology", "Databases"]),
            ImportBookmark(url="https://example.com/a", title="A", date_added=datetime(2023, 5, 1, 12, 0, 0)),
            ImportBookmark(url="https://example.com/a", title="A again"),
            ImportBookmark(url="javascript:void(0)", title="Bookmarklet"),
            ImportBookmark(url="", title="Empty"),
        ]

        result = db.import_batch(_tree(), bookmarks)

        assert result.total_found == 5
        assert result.imported == 2
        assert result.duplicates == 1
        assert result.failed == 2
        assert result.folders_created == 2
        assert len(result.imported_ids) == 2
        assert len(result.errors) == 2

        fts = db.get_bookmark(result.imported_ids[0])
        assert fts.folder_path == "Technology/Databases"
        assert fts.status == BookmarkStatus.PENDING
        dated = db.get_bookmark(result.imported_ids[1])
        assert dated.created_at == "2023-05-01 12:00:00"

    def test_reimport_counts_duplicates(self, db):
        bookmarks = [ImportBookmark(url="https://example.com/a", folder_path=["Technology"])]
        db.import_batch(_tree(), bookmarks)

        result = db.import_batch(_tree(), bookmarks)

        assert result.imported == 0
        assert result.duplicates == 1
        assert result.folders_created == 0

    def test_missing_folders_created_from_bookmark_path(self, db):
        result = db.import_batch([], [ImportBookmark(url="https://example.com/x", folder_path=["Reading", "Later"])])

        assert result.folders_created == 2
        assert db.get_bookmark(result.imported_ids[0]).folder_path == "Reading/Later"

    def test_folder_without_name_rejected(self, db):
        folders = [ImportFolder(name="", path=[""])]
        with pytest.raises(ValidationError):
            db.import_batch(folders, [ImportBookmark(url="https://example.com/a")])
        assert db.count_bookmarks() == 0

    def test_folder_path_must_extend_parent(self, db):
        child = ImportFolder(name="Databases", path=["Other", "Databases"])
        folders = [ImportFolder(name="Technology", path=["Technology"], subfolders=[child])]

        with pytest.raises(ValidationError):
            db.import_batch(folders, [ImportBookmark(url="https://example.com/a")])

        assert db.count_bookmarks() == 0
        assert _count(db, "SELECT COUNT(*) FROM folders") == 0

    def test_title_defaults_to_url(self, db):
        result = db.import_batch([], [ImportBookmark(url="https://example.com/untitled")])
        assert db.get_bookmark(result.imported_ids[0]).title == "https://example.com/untitled"


class TestBookmarks:
    def test_add_and_get(self, db):
        bookmark = db.add_bookmark("https://example.com", title="Example", tags=["web", "demo"])

        fetched = db.get_bookmark(bookmark.id)
        assert fetched.url == "https://example.com"
        assert fetched.title == "Example"
        assert fetched.tags == ["web", "demo"]

    def test_add_duplicate_raises(self, db):
        db.add_bookmark("https://example.com", title="Example")
        with pytest.raises(DuplicateKeyError):
            db.add_bookmark("https://example.com", title="Again")

    def test_add_invalid_url(self, db):
        with pytest.raises(ValidationError):
            db.add_bookmark("not a url")

    def test_get_missing(self, db):
        with pytest.raises(NotFoundError):
            db.get_bookmark("nope")

    def test_get_bookmarks_skips_unknown(self, db):
        a = db.add_bookmark("https://example.com/a")
        found = db.get_bookmarks([a.id, "nope"])
        assert list(found) == [a.id]

    def test_list_by_folder_prefix(self, db):
        db.add_bookmark("https://example.com/1", folder_path="Technology")
        db.add_bookmark("https://example.com/2", folder_path="Technology/Databases")
        db.add_bookmark("https://example.com/3", folder_path="Technology2")
        db.add_bookmark("https://example.com/4", folder_path="Cooking")

        urls = {b.url for b in db.list_bookmarks(folder_path="Technology")}

        assert urls == {"https://example.com/1", "https://example.com/2"}
        assert db.count_bookmarks(folder_path="Technology") == 2

    def test_list_by_status_and_paging(self, db):
        ids = [db.add_bookmark(f"https://example.com/{i}").id for i in range(5)]
        db.update_bookmark_status(ids[0], BookmarkStatus.COMPLETED)

        assert [b.id for b in db.list_bookmarks(status="completed")] == [ids[0]]
        assert len(db.list_bookmarks(status="pending")) == 4
        assert len(db.list_bookmarks(limit=2)) == 2
        assert len(db.list_bookmarks(limit=None)) == 5
        assert len(db.list_bookmarks(limit=2, offset=4)) == 1

    def test_list_unknown_status(self, db):
        with pytest.raises(ValidationError):
            db.list_bookmarks(status="archived")

    def test_update_fields(self, db):
        bookmark = db.add_bookmark("https://example.com", title="Old")

        updated = db.update_bookmark(bookmark.id, title="New", tags=["x"], favicon_url="https://example.com/f.ico")

        assert updated.title == "New"
        assert updated.tags == ["x"]
        assert updated.favicon_url == "https://example.com/f.ico"

    def test_update_resyncs_lexical_index(self, db):
        bookmark = db.add_bookmark("https://example.com", title="Postgres tuning notes")
        assert [r["bookmark_id"] for r in db.lexical_candidates("postgres")] == [bookmark.id]

        db.update_bookmark(bookmark.id, title="Kubernetes guide")

        assert db.lexical_candidates("postgres") == []
        assert [r["bookmark_id"] for r in db.lexical_candidates("kubernetes")] == [bookmark.id]
        assert _count(db, "SELECT COUNT(*) FROM bookmarks_fts WHERE bookmark_id = ?", bookmark.id) == 1

    def test_update_description_searchable(self, db):
        bookmark = db.add_bookmark("https://example.com", title="Example")
        db.update_bookmark(bookmark.id, description="A guide to vector indexes")
        assert [r["bookmark_id"] for r in db.lexical_candidates("vector")] == [bookmark.id]

    def test_update_unknown_field(self, db):
        bookmark = db.add_bookmark("https://example.com")
        with pytest.raises(ValidationError):
            db.update_bookmark(bookmark.id, id="other")

    def test_update_bad_status(self, db):
        bookmark = db.add_bookmark("https://example.com")
        with pytest.raises(ValidationError):
            db.update_bookmark_status(bookmark.id, "archived")

    def test_update_url_collision(self, db):
        db.add_bookmark("https://example.com/a")
        b = db.add_bookmark("https://example.com/b")
        with pytest.raises(DuplicateKeyError):
            db.update_bookmark(b.id, url="https://example.com/a")

    def test_update_missing(self, db):
        with pytest.raises(NotFoundError):
            db.update_bookmark("nope", title="x")

    def test_move_to_folder(self, db):
        db.add_bookmark("https://example.com/a", folder_path="Reading")
        b = db.add_bookmark("https://example.com/b")
        folder_id = db.conn.execute("SELECT id FROM folders WHERE path = 'Reading'").fetchone()[0]

        moved = db.update_bookmark(b.id, folder_id=folder_id)

        assert moved.folder_path == "Reading"


class TestContent:
    def test_store_and_get(self, db):
        bookmark = db.add_bookmark("https://example.com")

        content_id = db.store_content(bookmark.id, "<p>Hello</p>", "Hello")

        content = db.get_content(bookmark.id)
        assert content.id == content_id
        assert content.clean_text == "Hello"
        assert db.get_content_by_id(content_id).bookmark_id == bookmark.id

    def test_store_replaces_content_and_chunks(self, db):
        bookmark = db.add_bookmark("https://example.com")
        first = db.store_content(bookmark.id, "raw", "old text about llamas")
        db.store_chunks(first, [("old text", [1.0, 0.0])], "m")

        second = db.store_content(bookmark.id, "raw", "new text about alpacas")

        assert second != first
        assert db.get_content(bookmark.id).clean_text == "new text about alpacas"
        assert _count(db, "SELECT COUNT(*) FROM content WHERE bookmark_id = ?", bookmark.id) == 1
        assert _count(db, "SELECT COUNT(*) FROM embedding_chunks WHERE content_id = ?", first) == 0
        assert db.lexical_candidates("llamas") == []
        assert [r["bookmark_id"] for r in db.lexical_candidates("alpacas")] == [bookmark.id]

    def test_store_for_missing_bookmark(self, db):
        with pytest.raises(NotFoundError):
            db.store_content("nope", "raw", "clean")

    def test_get_missing_content(self, db):
        bookmark = db.add_bookmark("https://example.com")
        with pytest.raises(NotFoundError):
            db.get_content(bookmark.id)
        with pytest.raises(NotFoundError):
            db.get_content_by_id(12345)


class TestChunks:
    def test_store_and_read_in_order(self, db):
        bookmark = db.add_bookmark("https://example.com")
        content_id = db.store_content(bookmark.id, "raw", "one two three")

        count = db.store_chunks(content_id, [("one", [1.0, 0.0]), ("two", [0.0, 1.0]), ("three", [0.5, 0.5])], "m1")

        chunks = db.get_embedding_chunks(content_id)
        assert count == 3
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert [c.chunk_text for c in chunks] == ["one", "two", "three"]
        assert chunks[2].vector == pytest.approx([0.5, 0.5])
        assert chunks[0].model == "m1"
        assert chunks[0].dimensions == 2

    def test_replace_all(self, db):
        bookmark = db.add_bookmark("https://example.com")
        content_id = db.store_content(bookmark.id, "raw", "text")
        db.store_chunks(content_id, [("a", [1.0]), ("b", [1.0]), ("c", [1.0])], "m")

        db.store_chunks(content_id, [("d", [1.0]), ("e", [1.0])], "m")

        chunks = db.get_embedding_chunks(content_id)
        assert [c.chunk_text for c in chunks] == ["d", "e"]
        assert [c.chunk_index for c in chunks] == [0, 1]

    def test_mixed_dimensions_rejected(self, db):
        bookmark = db.add_bookmark("https://example.com")
        content_id = db.store_content(bookmark.id, "raw", "text")
        db.store_chunks(content_id, [("a", [1.0, 0.0])], "m")

        with pytest.raises(ValidationError):
            db.store_chunks(content_id, [("a", [1.0, 0.0]), ("b", [1.0])], "m")

        assert len(db.get_embedding_chunks(content_id)) == 1

    def test_empty_chunk_set(self, db):
        bookmark = db.add_bookmark("https://example.com")
        content_id = db.store_content(bookmark.id, "raw", "")
        db.store_chunks(content_id, [("a", [1.0])], "m")

        assert db.store_chunks(content_id, [], "m") == 0
        assert db.get_embedding_chunks(content_id) == []

    def test_chunks_for_missing_content(self, db):
        with pytest.raises(NotFoundError):
            db.store_chunks(999, [("a", [1.0])], "m")
        with pytest.raises(NotFoundError):
            db.get_embedding_chunks(999)

    def test_bookmarks_without_embeddings(self, db):
        a = db.add_bookmark("https://example.com/a")
        b = db.add_bookmark("https://example.com/b")
        db.add_bookmark("https://example.com/c")
        db.store_content(a.id, "raw", "text a")
        content_b = db.store_content(b.id, "raw", "text b")
        db.store_chunks(content_b, [("text b", [1.0])], "m")

        assert [bm.id for bm in db.get_bookmarks_without_embeddings()] == [a.id]


class TestDelete:
    def test_delete_leaves_no_rows(self, db):
        bookmark = db.add_bookmark("https://example.com", title="Doomed page")
        content_id = db.store_content(bookmark.id, "raw", "doomed content text")
        db.store_chunks(content_id, [("doomed", [1.0, 0.0])], "m")
        other = db.add_bookmark("https://example.com/other", title="Survivor")

        db.delete_bookmark(bookmark.id)

        with pytest.raises(NotFoundError):
            db.get_bookmark(bookmark.id)
        assert _count(db, "SELECT COUNT(*) FROM content WHERE bookmark_id = ?", bookmark.id) == 0
        assert _count(db, "SELECT COUNT(*) FROM embedding_chunks WHERE content_id = ?", content_id) == 0
        assert _count(db, "SELECT COUNT(*) FROM content_fts WHERE bookmark_id = ?", bookmark.id) == 0
        assert _count(db, "SELECT COUNT(*) FROM bookmarks_fts WHERE bookmark_id = ?", bookmark.id) == 0
        assert db.lexical_candidates("doomed") == []
        assert db.get_bookmark(other.id).title == "Survivor"

    def test_delete_missing(self, db):
        with pytest.raises(NotFoundError):
            db.delete_bookmark("nope")


class TestCandidates:
    def test_semantic_candidates(self, db):
        a = db.add_bookmark("https://example.com/a")
        b = db.add_bookmark("https://example.com/b")
        db.store_chunks(db.store_content(a.id, "", "a"), [("a", [1.0, 0.0, 0.0, 0.0])], "m")
        db.store_chunks(db.store_content(b.id, "", "b"), [("b", [0.0, 1.0, 0.0, 0.0])], "m")
        c = db.add_bookmark("https://example.com/c")
        db.store_chunks(db.store_content(c.id, "", "c"), [("c", [1.0, 0.0])], "m")

        rows = db.semantic_candidates([1.0, 0.0, 0.0, 0.0])

        assert [r["bookmark_id"] for r in rows] == [a.id, b.id]
        assert rows[0]["similarity"] == pytest.approx(1.0)
        assert rows[1]["similarity"] == pytest.approx(0.0, abs=1e-6)

    def test_lexical_scores_positive_higher_is_better(self, db):
        strong = db.add_bookmark("https://example.com/1", title="Python python python")
        weak = db.add_bookmark("https://example.com/2", title="Python and other things to know about")
        db.add_bookmark("https://example.com/3", title="Gardening")

        rows = db.lexical_candidates("python")

        assert [r["bookmark_id"] for r in rows] == [strong.id, weak.id]
        assert rows[0]["score"] > rows[1]["score"] > 0

    def test_lexical_content_snippet(self, db):
        bookmark = db.add_bookmark("https://example.com", title="Notes")
        db.store_content(bookmark.id, "", "Long text that mentions sqlite somewhere in the middle of it.")

        rows = db.lexical_candidates("sqlite")

        assert rows[0]["source"] == "content"
        assert "<mark>sqlite</mark>" in rows[0]["snippet"]

    def test_lexical_query_syntax_is_escaped(self, db):
        db.add_bookmark("https://example.com", title="C++ AND Rust")
        rows = db.lexical_candidates('C++ "AND" (NOT* -')
        assert len(rows) == 1

    def test_lexical_empty_query(self, db):
        assert db.lexical_candidates("   ") == []
        assert db.lexical_candidates("!!!") == []


class TestFoldersAndStats:
    def test_folder_tree(self, db):
        db.import_batch(
            _tree(),
            [
                ImportBookmark(url="https://sqlite.org", title="SQLite", folder_path=["Technology", "Databases"]),
                ImportBookmark(url="https://python.org", title="Python", folder_path=["Technology"]),
                ImportBookmark(url="https://example.com", title="Loose"),
            ],
        )

        tree = db.get_folder_tree()

        assert [f["name"] for f in tree["folders"]] == ["Technology"]
        technology = tree["folders"][0]
        assert [b["title"] for b in technology["bookmarks"]] == ["Python"]
        assert technology["children"][0]["path"] == "Technology/Databases"
        assert [b["title"] for b in technology["children"][0]["bookmarks"]] == ["SQLite"]
        assert [b["title"] for b in tree["unfiled"]] == ["Loose"]

    def test_stats(self, db):
        a = db.add_bookmark("https://example.com/a")
        db.add_bookmark("https://example.com/b")
        db.store_chunks(db.store_content(a.id, "", "text"), [("text", [1.0])], "m")
        db.update_bookmark_status(a.id, "completed")

        stats = db.get_stats()

        assert stats["bookmarks"] == 2
        assert stats["by_status"] == {"pending": 1, "completed": 1, "failed": 0}
        assert stats["content"] == 1
        assert stats["chunks"] == 1
        assert stats["with_embeddings"] == 1


class TestLockRetry:
    class Flaky:
        def __init__(self, failures, message="database is locked"):
            self.lock = threading.RLock()
            self.failures = failures
            self.message = message
            self.calls = 0

        @store_operation("flaky_op")
        def run(self):
            self.calls += 1
            if self.calls <= self.failures:
                raise sqlite3.OperationalError(self.message)
            return "ok"

    def test_retries_until_unlocked(self):
        flaky = self.Flaky(failures=2)
        with patch("bookmind.core.storage.time.sleep") as sleep:
            assert flaky.run() == "ok"
        assert flaky.calls == 3
        assert [c.args[0] for c in sleep.call_args_list] == pytest.approx([0.1, 0.2])

    def test_gives_up_after_attempts(self):
        flaky = self.Flaky(failures=100)
        with patch("bookmind.core.storage.time.sleep"):
            with pytest.raises(TransientStoreError, match="flaky_op"):
                flaky.run()
        assert flaky.calls == LOCK_RETRY_ATTEMPTS

    def test_other_errors_wrapped_with_operation(self):
        flaky = self.Flaky(failures=1, message="no such table: nope")
        with pytest.raises(StoreError, match="flaky_op: no such table"):
            flaky.run()
        assert flaky.calls == 1
