"""
Unit tests for pattern_guard.index.indexer

Covers full indexing (idempotence, completeness), incremental updates,
deletion, moves, the delete-during-embed race and store failures.
"""

from __future__ import annotations

import os
import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from conftest import NOW, write_file
from pattern_guard.errors import StoreFailure
from pattern_guard.index.embedder import LexicalEmbedder
from pattern_guard.index.embedding_cache import CachedVector, EmbeddingCache
from pattern_guard.index.indexer import CodeIndexer, walk_source_files
from pattern_guard.index.models import EventKind, FileEvent
from pattern_guard.index.store import StateStore
from pattern_guard.index.vector_index import VectorIndex
from pattern_guard.tasks import TaskRunner

DIM = 64

MODULE_A = (
    "def add(a, b):\n"
    "    return a + b\n"
    "\n"
    "\n"
    "def sub(a, b):\n"
    "    return a - b\n"
)

MODULE_B = (
    "class Greeter:\n"
    "    def hello(self, name):\n"
    "        return 'hello ' + name\n"
)


class CountingEmbedder(LexicalEmbedder):
    """Lexical embedder that records every text it embeds and can be paused."""

    def __init__(self, dimension: int = DIM) -> None:
        super().__init__(dimension)
        self.texts: list[str] = []
        self.block = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed_batch(self, texts):
        if self.block:
            self.entered.set()
            self.release.wait(timeout=10)
        self.texts.extend(texts)
        return super().embed_batch(texts)


def _make_indexer(root, config, store=None, runner=None, embedder=None):
    embedder = embedder or CountingEmbedder()
    cache = EmbeddingCache(embedder, sleep=lambda s: None)
    index = VectorIndex(DIM)
    indexer = CodeIndexer(
        str(root), config, cache, index, store=store, runner=runner,
        clock=lambda: NOW, sleep=lambda s: None,
    )
    return indexer, index, cache, embedder


@pytest.fixture
def repo(tmp_path):
    write_file(tmp_path, "src/a.py", MODULE_A)
    write_file(tmp_path, "src/b.py", MODULE_B)
    write_file(tmp_path, "README.md", "# not indexed\n")
    return tmp_path


# ---------------------------------------------------------------------------
# Walking
# ---------------------------------------------------------------------------

class TestWalk:
    def test_skips_unsupported_hidden_and_vendor(self, tmp_path):
        write_file(tmp_path, "main.py", "x = 1\n")
        write_file(tmp_path, "node_modules/lib/index.js", "var a;\n")
        write_file(tmp_path, ".hidden/secret.py", "x = 2\n")
        write_file(tmp_path, "notes.txt", "hi\n")
        assert walk_source_files(str(tmp_path)) == ["main.py"]

    def test_gitignore_and_exclude(self, tmp_path):
        write_file(tmp_path, ".gitignore", "generated/\n*_pb2.py\n")
        write_file(tmp_path, "app/main.py", "x = 1\n")
        write_file(tmp_path, "app/api_pb2.py", "x = 1\n")
        write_file(tmp_path, "generated/out.py", "x = 1\n")
        write_file(tmp_path, "tests/test_main.py", "x = 1\n")
        files = walk_source_files(str(tmp_path), exclude=["tests/*"])
        assert files == ["app/main.py"]

    def test_include_globs(self, tmp_path):
        write_file(tmp_path, "app/main.py", "x = 1\n")
        write_file(tmp_path, "web/app.js", "var x = 1;\n")
        assert walk_source_files(str(tmp_path), include=["web/**"]) == ["web/app.js"]


# ---------------------------------------------------------------------------
# Full index
# ---------------------------------------------------------------------------

class TestFullIndex:
    def test_completeness(self, repo, config):
        indexer, index, _, _ = _make_indexer(repo, config)
        summary = indexer.index_repository()
        assert summary["file_count"] == 2
        assert summary["indexed"] == 2

        expected = set()
        for path in indexer.files():
            record = indexer.get_record(path)
            expected.update(record.chunk_ids)
        assert expected
        assert set(index.ids()) == expected
        symbols = {c.symbol for p in indexer.files() for c in indexer.chunks_for(p)}
        assert {"add", "sub", "Greeter"} <= symbols

    def test_idempotence(self, repo, config):
        indexer, index, _, embedder = _make_indexer(repo, config)
        indexer.index_repository()
        ids_before = index.ids()
        vectors_before = index.vectors(ids_before)
        embedded = len(embedder.texts)

        summary = indexer.index_repository()
        assert summary["indexed"] == 0
        assert summary["unchanged"] == 2
        assert index.ids() == ids_before
        assert len(embedder.texts) == embedded
        for cid, vec in index.vectors(ids_before).items():
            assert (vec == vectors_before[cid]).all()

    def test_vanished_files_removed(self, repo, config):
        indexer, index, _, _ = _make_indexer(repo, config)
        indexer.index_repository()
        b_ids = set(indexer.get_record("src/b.py").chunk_ids)
        os.remove(os.path.join(str(repo), "src", "b.py"))
        summary = indexer.index_repository()
        assert summary["removed"] == 1
        assert not b_ids & set(index.ids())

    def test_progress_callback(self, repo, config):
        indexer, _, _, _ = _make_indexer(repo, config)
        seen = []
        indexer.index_repository(progress_callback=lambda c, t, f: seen.append((c, t, f)))
        assert seen == [(1, 2, "src/a.py"), (2, 2, "src/b.py")]

    def test_binary_empty_and_oversized_files_skipped(self, tmp_path, config):
        write_file(tmp_path, "empty.py", "   \n")
        write_file(tmp_path, "big.py", "x = 1\n" * 100)
        with open(os.path.join(str(tmp_path), "blob.py"), "wb") as fh:
            fh.write(b"\x00\x01binary")
        config.MAX_FILE_BYTES = 100
        indexer, index, _, _ = _make_indexer(tmp_path, config)
        summary = indexer.index_repository()
        assert summary["skipped"] == 3
        assert len(index) == 0

    def test_root_mismatch_rejected(self, repo, config, tmp_path_factory):
        indexer, _, _, _ = _make_indexer(repo, config)
        with pytest.raises(ValueError):
            indexer.index_repository(str(tmp_path_factory.mktemp("other")))


# ---------------------------------------------------------------------------
# Incremental updates
# ---------------------------------------------------------------------------

class TestIncremental:
    def test_only_changed_chunk_reembedded(self, repo, config):
        indexer, index, _, embedder = _make_indexer(repo, config)
        indexer.index_repository()
        before = {c.symbol: c.chunk_id for c in indexer.chunks_for("src/a.py")}
        b_vectors = index.vectors(indexer.get_record("src/b.py").chunk_ids)
        embedder.texts.clear()

        new_a = MODULE_A.replace("return a - b", "return a - b - 0")
        write_file(repo, "src/a.py", new_a)
        change = indexer.update_file("src/a.py")

        assert change.changed == [before["sub"]]
        assert change.added == []
        assert change.removed == []
        assert len(embedder.texts) == 1
        assert "a - b - 0" in embedder.texts[0]
        after = {c.symbol: c.chunk_id for c in indexer.chunks_for("src/a.py")}
        assert after == before
        for cid, vec in index.vectors(b_vectors).items():
            assert (vec == b_vectors[cid]).all()

    def test_inserting_function_keeps_other_ids(self, repo, config):
        indexer, _, _, _ = _make_indexer(repo, config)
        indexer.index_repository()
        before = {c.symbol: c.chunk_id for c in indexer.chunks_for("src/a.py")}
        change = indexer.update_file(
            "src/a.py", "def mul(a, b):\n    return a * b\n\n\n" + MODULE_A,
        )
        after = {c.symbol: c.chunk_id for c in indexer.chunks_for("src/a.py")}
        assert after["add"] == before["add"]
        assert after["sub"] == before["sub"]
        assert change.added == [after["mul"]]

    def test_removed_function_leaves_index(self, repo, config):
        indexer, index, cache, _ = _make_indexer(repo, config)
        indexer.index_repository()
        sub = next(c for c in indexer.chunks_for("src/a.py") if c.symbol == "sub")
        change = indexer.update_file("src/a.py", "def add(a, b):\n    return a + b\n")
        assert change.removed == [sub.chunk_id]
        assert sub.chunk_id not in index
        assert cache.refcount(sub.content_hash) == 0

    def test_listener_receives_changes(self, repo, config):
        indexer, _, _, _ = _make_indexer(repo, config)
        changes = []
        indexer.add_listener(changes.append)
        indexer.index_repository()
        assert sorted(c.path for c in changes) == ["src/a.py", "src/b.py"]
        changes.clear()
        indexer.index_repository()
        assert changes == []

    def test_unsupported_file_ignored(self, repo, config):
        indexer, _, _, _ = _make_indexer(repo, config)
        assert indexer.update_file("README.md") is None

    def test_excluded_paths_never_indexed(self, repo, config):
        config.EXCLUDE = ["generated/**"]
        write_file(repo, ".gitignore", "*_pb2.py\n")
        write_file(repo, "generated/gen.py", MODULE_A)
        write_file(repo, "src/api_pb2.py", MODULE_B)
        indexer, index, _, _ = _make_indexer(repo, config)
        indexer.index_repository()

        assert indexer.handle_event(FileEvent(EventKind.MODIFIED, "generated/gen.py")) is None
        assert indexer.update_file("src/api_pb2.py") is None
        assert not indexer.is_indexable("generated/gen.py")
        assert indexer.is_indexable("src/a.py")
        assert indexer.files() == ["src/a.py", "src/b.py"]
        assert index.ids_for_file("generated/gen.py") == set()

    def test_newly_excluded_known_file_removed(self, repo, config):
        indexer, index, _, _ = _make_indexer(repo, config)
        indexer.index_repository()
        config.EXCLUDE = ["src/b.py"]
        change = indexer.update_file("src/b.py")
        assert change.removed
        assert indexer.get_record("src/b.py") is None
        assert index.ids_for_file("src/b.py") == set()


# ---------------------------------------------------------------------------
# Deletion and moves
# ---------------------------------------------------------------------------

class TestDeletion:
    def test_remove_file_consistency(self, repo, config, tmp_path_factory):
        store = StateStore(str(tmp_path_factory.mktemp("db") / "state.db"))
        indexer, index, _, _ = _make_indexer(repo, config, store=store)
        indexer.index_repository()
        ids = set(indexer.get_record("src/a.py").chunk_ids)

        change = indexer.remove_file("src/a.py")
        assert set(change.removed) == ids
        assert not ids & set(index.ids())
        assert indexer.get_record("src/a.py") is None
        assert store.load_chunks("src/a.py") == []
        assert "src/a.py" not in store.load_files()

    def test_handle_deleted_event(self, repo, config):
        indexer, index, _, _ = _make_indexer(repo, config)
        indexer.index_repository()
        indexer.handle_event(FileEvent(EventKind.DELETED, "src/b.py"))
        assert index.ids_for_file("src/b.py") == set()

    def test_emptied_file_removed(self, repo, config):
        indexer, index, _, _ = _make_indexer(repo, config)
        indexer.index_repository()
        indexer.update_file("src/a.py", "\n\n")
        assert index.ids_for_file("src/a.py") == set()
        assert indexer.get_record("src/a.py") is None


class TestMove:
    def test_same_content_preserves_ids(self, repo, config):
        indexer, index, _, embedder = _make_indexer(repo, config)
        indexer.index_repository()
        ids = indexer.get_record("src/a.py").chunk_ids
        embedder.texts.clear()

        os.rename(os.path.join(str(repo), "src", "a.py"), os.path.join(str(repo), "src", "c.py"))
        change = indexer.handle_event(FileEvent(EventKind.MOVED, "src/a.py", "src/c.py"))

        assert change.moved_from == "src/a.py"
        assert indexer.get_record("src/c.py").chunk_ids == ids
        assert indexer.get_record("src/a.py") is None
        assert index.ids_for_file("src/c.py") == set(ids)
        assert index.ids_for_file("src/a.py") == set()
        assert embedder.texts == []

    def test_changed_content_is_delete_and_create(self, repo, config):
        indexer, index, _, _ = _make_indexer(repo, config)
        indexer.index_repository()
        old_ids = set(indexer.get_record("src/a.py").chunk_ids)
        os.remove(os.path.join(str(repo), "src", "a.py"))
        write_file(repo, "src/c.py", MODULE_A + "\n\ndef neg(a):\n    return -a\n")

        indexer.move_file("src/a.py", "src/c.py")
        assert not old_ids & set(index.ids())
        assert {c.symbol for c in indexer.chunks_for("src/c.py")} >= {"add", "sub", "neg"}

    def test_move_into_excluded_dir_drops_file(self, repo, config):
        config.EXCLUDE = ["generated/**"]
        indexer, index, _, _ = _make_indexer(repo, config)
        indexer.index_repository()
        os.makedirs(os.path.join(str(repo), "generated"))
        os.rename(os.path.join(str(repo), "src", "a.py"),
                  os.path.join(str(repo), "generated", "a.py"))

        assert indexer.move_file("src/a.py", "generated/a.py") is None
        assert indexer.files() == ["src/b.py"]
        assert index.ids_for_file("generated/a.py") == set()
        assert index.ids_for_file("src/a.py") == set()

    def test_new_file_at_old_path_gets_fresh_ids(self, repo, config):
        indexer, index, _, _ = _make_indexer(repo, config)
        indexer.index_repository()
        os.rename(os.path.join(str(repo), "src", "a.py"), os.path.join(str(repo), "src", "c.py"))
        indexer.move_file("src/a.py", "src/c.py")
        write_file(repo, "src/a.py", MODULE_A)
        indexer.update_file("src/a.py")
        a_ids = set(indexer.get_record("src/a.py").chunk_ids)
        c_ids = set(indexer.get_record("src/c.py").chunk_ids)
        assert not a_ids & c_ids
        assert a_ids | c_ids <= set(index.ids())


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

class TestDeleteDuringEmbed:
    def test_in_flight_result_discarded(self, repo, config):
        runner = TaskRunner(2)
        embedder = CountingEmbedder()
        indexer, index, _, _ = _make_indexer(repo, config, runner=runner, embedder=embedder)
        try:
            write_file(repo, "src/new.py", "def fresh(x):\n    return x * 2\n")
            embedder.block = True
            future = indexer.submit_update("src/new.py")
            assert embedder.entered.wait(timeout=5)

            os.remove(os.path.join(str(repo), "src", "new.py"))
            indexer.remove_file("src/new.py")
            embedder.release.set()

            assert future.result(timeout=5) is None
            assert index.ids_for_file("src/new.py") == set()
            assert indexer.get_record("src/new.py") is None
        finally:
            runner.shutdown()

    def test_in_flight_update_of_indexed_file_discarded(self, repo, config):
        runner = TaskRunner(2)
        embedder = CountingEmbedder()
        indexer, index, _, _ = _make_indexer(repo, config, runner=runner, embedder=embedder)
        try:
            indexer.index_repository()
            write_file(repo, "src/a.py", MODULE_A.replace("a + b", "a + b + 1"))
            embedder.block = True
            future = indexer.submit_event(FileEvent(EventKind.MODIFIED, "src/a.py"))
            assert embedder.entered.wait(timeout=5)

            indexer.handle_event(FileEvent(EventKind.DELETED, "src/a.py"))
            embedder.release.set()

            assert future.result(timeout=5) is None
            assert index.ids_for_file("src/a.py") == set()
        finally:
            runner.shutdown()

    def test_latest_update_wins(self, repo, config):
        runner = TaskRunner(2)
        embedder = CountingEmbedder()
        indexer, _, _, _ = _make_indexer(repo, config, runner=runner, embedder=embedder)
        try:
            indexer.index_repository()
            embedder.block = True
            stale = indexer.submit_update("src/a.py", MODULE_A.replace("a + b", "a + b + 1"))
            assert embedder.entered.wait(timeout=5)
            embedder.block = False
            fresh = indexer.update_file("src/a.py", MODULE_A.replace("a + b", "a + b + 2"))
            embedder.release.set()
            assert stale.result(timeout=5) is None
            assert fresh is not None
            add = next(c for c in indexer.chunks_for("src/a.py") if c.symbol == "add")
            assert "a + b + 2" in add.content
        finally:
            runner.shutdown()

    def test_submit_without_runner(self, repo, config):
        indexer, _, _, _ = _make_indexer(repo, config)
        with pytest.raises(RuntimeError):
            indexer.submit_update("src/a.py")


# ---------------------------------------------------------------------------
# Store failures, warm start and sweep
# ---------------------------------------------------------------------------

class TestStoreFailure:
    def test_failed_write_marks_needs_reindex(self, repo, config):
        config.STORE_MAX_RETRIES = 2
        store = MagicMock()
        store.write_file.side_effect = StoreFailure("disk full")
        indexer, index, _, _ = _make_indexer(repo, config, store=store)

        assert indexer.update_file("src/a.py") is None
        assert store.write_file.call_count == 2
        assert indexer.get_record("src/a.py").needs_reindex
        assert index.ids_for_file("src/a.py") == set()
        store.mark_needs_reindex.assert_called_with("src/a.py")

    def test_sweep_retries_after_recovery(self, repo, config):
        config.STORE_MAX_RETRIES = 1
        store = MagicMock()
        store.write_file.side_effect = StoreFailure("locked")
        indexer, index, _, _ = _make_indexer(repo, config, store=store)
        indexer.update_file("src/a.py")

        store.write_file.side_effect = None
        result = indexer.sweep()
        assert result["needs_reindex"] == 1
        assert result["reindexed"] == 1
        assert not indexer.get_record("src/a.py").needs_reindex
        assert index.ids_for_file("src/a.py")


class TestEmbeddingRows:
    def test_update_writes_only_new_embeddings(self, repo, config, tmp_path_factory):
        store = StateStore(str(tmp_path_factory.mktemp("db") / "state.db"))
        indexer, _, _, _ = _make_indexer(repo, config, store=store)
        indexer.index_repository()
        sub = next(c for c in indexer.chunks_for("src/a.py") if c.symbol == "sub")
        marker = np.full(DIM, 0.5, dtype=np.float32)
        store.save_embeddings({sub.content_hash: CachedVector(marker, False, 1.0)})

        indexer.update_file("src/a.py", MODULE_A.replace("a + b", "a + b + 1"))
        add = next(c for c in indexer.chunks_for("src/a.py") if c.symbol == "add")
        embeddings = store.load_embeddings()
        assert np.array_equal(embeddings[sub.content_hash][0], marker)
        assert add.content_hash in embeddings


class TestWarmStart:
    def test_restores_without_reembedding(self, repo, config, tmp_path_factory):
        db = str(tmp_path_factory.mktemp("db") / "state.db")
        first, first_index, _, _ = _make_indexer(repo, config, store=StateStore(db))
        first.index_repository()

        second, second_index, _, embedder = _make_indexer(repo, config, store=StateStore(db))
        summary = second.warm_start()
        assert summary["restored"] == 2
        assert summary["unchanged"] == 2
        assert embedder.texts == []
        assert second_index.ids() == first_index.ids()

    def test_changed_file_reindexed(self, repo, config, tmp_path_factory):
        db = str(tmp_path_factory.mktemp("db") / "state.db")
        first, _, _, _ = _make_indexer(repo, config, store=StateStore(db))
        first.index_repository()
        write_file(repo, "src/b.py", MODULE_B.replace("hello ", "hi "))
        os.remove(os.path.join(str(repo), "src", "a.py"))

        second, index, _, embedder = _make_indexer(repo, config, store=StateStore(db))
        summary = second.warm_start()
        assert summary["indexed"] == 1
        assert summary["removed"] == 1
        assert len(embedder.texts) == 1
        assert index.ids_for_file("src/a.py") == set()


def test_stats(repo, config):
    indexer, _, _, _ = _make_indexer(repo, config)
    indexer.index_repository()
    stats = indexer.stats()
    assert stats["files"] == 2
    assert stats["chunks"] >= 3
    assert stats["needs_reindex"] == 0
