"""Tests for storage/knowledge_store.py — real SQLite + ChromaDB in temp dirs."""

import sqlite3
import threading
from unittest.mock import patch

import pytest

from core.cancellation import CancellationToken
from core.errors import (
    IndexUnavailableError,
    ModelUnavailableError,
    OperationCancelledError,
    ValidationError,
)
from core.models import SourceMetadata
from storage.knowledge_store import SCHEMA_VERSION, KnowledgeStore, PendingChunk

ARTICLES = [
    ("Printer offline", "If the printer shows offline, restart the print spooler service."),
    ("Slow boot", "Disable startup programs to make the computer boot faster."),
    ("Wi-Fi drops", "Update the wireless network adapter driver when Wi-Fi keeps dropping."),
    ("Disk full", "Run disk cleanup and remove temporary files to free disk space."),
]


def _meta(title: str, **extra) -> SourceMetadata:
    return SourceMetadata(title=title, source="manual", extra=extra)


def _fill(store: KnowledgeStore) -> list[str]:
    return [store.add_chunk(content, _meta(title)) for title, content in ARTICLES]


# ── Lifecycle / schema ───────────────────────────────────────

def test_initialize_creates_schema(store):
    conn = sqlite3.connect(store.db_path)
    try:
        assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
        columns = {row[1] for row in conn.execute("PRAGMA table_info(knowledge_chunks)")}
    finally:
        conn.close()
    assert {"id", "title", "content", "url", "metadata", "created_at", "updated_at"} <= columns
    assert store.count() == 0


def test_operations_before_initialize_fail(tmp_path, embedder):
    s = KnowledgeStore(db_path=str(tmp_path / "k.db"), chroma_dir=str(tmp_path / "c"), embedder=embedder)
    with pytest.raises(IndexUnavailableError):
        s.add_chunk("text", _meta("T"))
    with pytest.raises(IndexUnavailableError):
        s.count()


def test_migrates_v1_database(tmp_path, embedder):
    db = tmp_path / "legacy.db"
    conn = sqlite3.connect(db)
    conn.execute(
        "CREATE TABLE knowledge_chunks (id TEXT PRIMARY KEY, title TEXT NOT NULL, content TEXT NOT NULL, "
        "url TEXT, metadata TEXT, created_at TEXT NOT NULL, updated_at TEXT)"
    )
    conn.execute(
        "INSERT INTO knowledge_chunks VALUES (?, ?, ?, ?, ?, ?, ?)",
        ("legacy-1", "Old article", "Reset the router to fix the network.", "https://old.example",
         '{"title": "Old article", "category": "network"}', "2024-01-01T00:00:00", None),
    )
    conn.execute("PRAGMA user_version = 1")
    conn.commit()
    conn.close()

    with KnowledgeStore(db_path=str(db), chroma_dir=str(tmp_path / "c"), embedder=embedder) as s:
        chunk = s.get_chunk("legacy-1")
        assert chunk.title == "Old article"
        assert chunk.metadata.url == "https://old.example"
        assert chunk.metadata.extra == {"category": "network"}
        assert chunk.seq == 1
        assert s.needs_rebuild
        s.rebuild_index()
        results = s.search(embedder.embed("network router"), k=1)
        assert results[0][0].id == "legacy-1"


# ── Writes ───────────────────────────────────────────────────

def test_add_and_get_round_trip(store):
    meta = SourceMetadata("Printer offline", "manual", url="https://kb.example/printer", extra={"os": "win11"})
    chunk_id = store.add_chunk("Restart the print spooler.", meta, document_id="doc-1")
    chunk = store.get_chunk(chunk_id)
    assert chunk.content == "Restart the print spooler."
    assert chunk.metadata == meta
    assert chunk.document_id == "doc-1"
    assert chunk.created_at
    assert chunk.token_count > 0


def test_add_is_idempotent(store):
    first = store.add_chunk("Same text", _meta("T"))
    second = store.add_chunk("Same text", _meta("T"))
    assert first == second
    assert store.count() == 1


def test_same_content_different_metadata_is_distinct(store):
    a = store.add_chunk("Same text", _meta("A"))
    b = store.add_chunk("Same text", _meta("B"))
    assert a != b
    assert store.count() == 2


def test_blank_content_rejected(store):
    with pytest.raises(ValidationError):
        store.add_chunk("   ", _meta("T"))
    assert store.count() == 0


def test_add_chunks_preserves_input_order(store):
    items = [PendingChunk(content, _meta(title), chunk_index=i) for i, (title, content) in enumerate(ARTICLES)]
    ids = store.add_chunks(items)
    assert [c.id for c in store.iter_chunks()] == ids


def test_cancelled_batch_writes_nothing(store):
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelledError):
        store.add_chunks([PendingChunk("text", _meta("T"))], token)
    assert store.count() == 0


def test_delete_document(store):
    store.add_chunks([PendingChunk("part one", _meta("Doc"), document_id="d1"),
                      PendingChunk("part two", _meta("Doc"), document_id="d1"),
                      PendingChunk("other", _meta("Other"), document_id="d2")])
    assert store.delete_document("d1") == 2
    assert store.count() == 1
    assert store.delete_document("missing") == 0


# ── Vector index ─────────────────────────────────────────────

def test_search_requires_built_index(store, embedder):
    _fill(store)
    assert not store.vector_index_ready
    with pytest.raises(IndexUnavailableError):
        store.search(embedder.embed("printer"), k=2)


def test_rebuild_swaps_generation(store, embedder):
    _fill(store)
    first = store.rebuild_index()
    second = store.rebuild_index()
    state = store.index_state()
    assert second == first + 1
    assert state.active_generation == second
    assert state.retired_generation == first
    assert state.embedding_model == embedder.model_name
    assert store.vector_index_ready
    assert not store.needs_rebuild


def test_rebuild_without_embedder_fails(tmp_path):
    with KnowledgeStore(db_path=str(tmp_path / "k.db"), chroma_dir=str(tmp_path / "c")) as s:
        with pytest.raises(ModelUnavailableError):
            s.rebuild_index()


def test_cancelled_rebuild_keeps_previous_generation(store):
    _fill(store)
    active = store.rebuild_index()
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelledError):
        store.rebuild_index(token)
    assert store.index_state().active_generation == active


def test_search_is_bounded_and_non_increasing(store, embedder):
    _fill(store)
    store.rebuild_index()
    for k in (1, 2, 3, 10):
        results = store.search(embedder.embed("network adapter driver"), k=k)
        assert len(results) <= k
        scores = [score for _, score in results]
        assert scores == sorted(scores, reverse=True)


def test_search_finds_closest_chunk(store, embedder):
    _fill(store)
    store.rebuild_index()
    chunk, score = store.search(embedder.embed("printer offline spooler"), k=1)[0]
    assert chunk.title == "Printer offline"
    assert 0.0 < score <= 1.0


def test_added_chunk_is_searchable_after_index_exists(store, embedder):
    _fill(store)
    store.rebuild_index()
    new_id = store.add_chunk("Bluetooth mouse lag: re-pair the bluetooth mouse.", _meta("Mouse lag"))
    assert store.search(embedder.embed("bluetooth mouse"), k=1)[0][0].id == new_id
    assert store.index_state().pending_vectors == 0


def test_embedding_failure_defers_vectors(store, embedder):
    _fill(store)
    store.rebuild_index()
    embedder.unavailable = True
    store.add_chunk("Keyboard not typing: check the keyboard cable.", _meta("Keyboard"))
    assert store.index_state().pending_vectors == 1
    assert store.needs_rebuild
    embedder.unavailable = False
    store.rebuild_index()
    assert store.index_state().pending_vectors == 0


def test_repeated_search_is_identical(store, embedder):
    _fill(store)
    store.rebuild_index()
    vec = embedder.embed("disk space cleanup")
    first = [(c.id, round(s, 6)) for c, s in store.search(vec, k=3)]
    second = [(c.id, round(s, 6)) for c, s in store.search(vec, k=3)]
    assert first == second


def test_deleted_chunk_not_returned_by_search(store, embedder):
    store.add_chunks([PendingChunk("printer spooler restart", _meta("P"), document_id="d1")])
    store.rebuild_index()
    store.delete_document("d1")
    assert store.search(embedder.embed("printer spooler"), k=3) == []


# ── Lexical search ───────────────────────────────────────────

def test_lexical_search_scores_by_term_overlap(store):
    _fill(store)
    results = store.lexical_search("disk cleanup temporary", k=5)
    assert results[0][0].title == "Disk full"
    assert results[0][1] == pytest.approx(1.0)
    assert all(score > 0 for _, score in results)


def test_lexical_search_ties_prefer_newest_then_insertion_order(store):
    with patch("storage.knowledge_store._now_iso",
               side_effect=["2024-01-01T00:00:00+00:00", "2025-06-01T00:00:00+00:00"]):
        old = store.add_chunk("reboot the router", _meta("Old"))
        first, second = store.add_chunks([
            PendingChunk("reboot the modem", _meta("B")),
            PendingChunk("reboot the switch", _meta("C")),
        ])
    results = store.lexical_search("reboot", k=3)
    assert [c.id for c, _ in results] == [first, second, old]


def test_tie_winner_does_not_depend_on_k(store, embedder):
    with patch("storage.knowledge_store._now_iso",
               side_effect=["2024-01-01T00:00:00+00:00", "2025-06-01T00:00:00+00:00"]):
        old = store.add_chunk("Reset the network adapter.", _meta("Old"))
        new = store.add_chunk("Reset the network adapter.", _meta("New"))
    store.rebuild_index()
    assert [c.id for c, _ in store.lexical_search("network adapter", k=3)] == [new, old]
    assert [c.id for c, _ in store.lexical_search("network adapter", k=1)] == [new]
    vec = embedder.embed("network adapter")
    assert [c.id for c, _ in store.search(vec, k=3)] == [new, old]
    assert [c.id for c, _ in store.search(vec, k=1)] == [new]


def test_lexical_search_no_terms(store):
    _fill(store)
    assert store.lexical_search("!!!", k=3) == []


# ── Concurrency ──────────────────────────────────────────────

def test_concurrent_writers_and_readers(store):
    errors = []

    def writer(n):
        try:
            for i in range(10):
                store.add_chunk(f"writer {n} note {i}", _meta(f"W{n}"))
        except Exception as e:
            errors.append(e)

    def reader():
        try:
            for _ in range(20):
                store.lexical_search("writer note", k=5)
                store.count()
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
    threads += [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert store.count() == 30
