"""Tests for core/ingestion.py"""

from unittest.mock import patch

import pytest

from core.errors import ValidationError
from core.ingestion import (
    SAMPLE_ARTICLES,
    chunk_text,
    ingest_document,
    ingest_file,
    ingest_text,
    seed_sample_articles,
    title_from_content,
)
from core.models import Document, SourceMetadata


# ── Chunking / titles ────────────────────────────────────────

def test_short_text_is_one_chunk():
    assert chunk_text("Restart the router.") == ["Restart the router."]


def test_long_text_is_split_with_bounded_chunks():
    text = " ".join(f"sentence{i} about troubleshooting printers." for i in range(200))
    chunks = chunk_text(text)
    assert len(chunks) > 1
    assert all(len(c) <= 1000 for c in chunks)


def test_title_is_first_sentence():
    assert title_from_content("Printer offline. Restart the spooler.") == "Printer offline"


def test_long_title_is_capped():
    title = title_from_content("a" * 80 + ". rest")
    assert title == "a" * 50 + "..."


# ── ingest_* ─────────────────────────────────────────────────

def test_ingest_text_adds_chunks(store):
    ids = ingest_text(store, "Printer offline. Restart the print spooler service.")
    assert len(ids) == 1
    chunk = store.get_chunk(ids[0])
    assert chunk.title == "Printer offline"
    assert chunk.metadata.source == "manual"


def test_ingest_text_uses_given_title_and_url(store):
    ids = ingest_text(store, "Some text.", title="Custom", url="https://kb.example/a", source="kb")
    chunk = store.get_chunk(ids[0])
    assert chunk.title == "Custom"
    assert chunk.metadata.url == "https://kb.example/a"


def test_ingest_blank_text_rejected(store):
    with pytest.raises(ValidationError) as excinfo:
        ingest_text(store, "  ")
    assert excinfo.value.user_message == "Please paste some text first."


def test_reingesting_document_is_idempotent(store):
    doc = Document("Flush the DNS cache with ipconfig.", SourceMetadata("DNS", "manual"))
    first = ingest_document(store, doc)
    second = ingest_document(store, doc)
    assert first == second
    assert store.count() == 1


def test_document_chunks_share_document_id(store):
    text = " ".join(f"step{i} reset the adapter and check cables." for i in range(150))
    doc = Document(text, SourceMetadata("Long guide", "manual"))
    ids = ingest_document(store, doc)
    assert len(ids) > 1
    assert {store.get_chunk(i).document_id for i in ids} == {doc.document_id}


def test_ingest_file_txt(store, tmp_path):
    f = tmp_path / "vpn-guide.md"
    f.write_text("# VPN\nReconnect the VPN client after sleep.", encoding="utf-8")
    result = ingest_file(store, str(f))
    assert result["status"] == "ok"
    assert result["source"] == "vpn-guide.md"
    assert result["chunks"] == 1
    assert store.count() == 1


def test_ingest_file_rejects_extension(store, tmp_path):
    f = tmp_path / "tool.exe"
    f.write_bytes(b"MZ")
    with pytest.raises(ValidationError, match="Unsupported file type") as excinfo:
        ingest_file(store, str(f))
    assert excinfo.value.user_message.startswith("Unsupported file type '.exe'")


def test_ingest_file_rejects_oversized(store, tmp_path):
    f = tmp_path / "big.txt"
    f.write_text("x")
    with patch("core.ingestion.MAX_FILE_SIZE_MB", 0):
        with pytest.raises(ValidationError, match="exceeds"):
            ingest_file(store, str(f))


def test_ingest_file_rejects_empty_extraction(store, tmp_path):
    f = tmp_path / "slides.pptx"
    f.write_bytes(b"PK")
    with patch("core.ingestion.extractors.extract_pptx", return_value="   "):
        with pytest.raises(ValidationError, match="No text"):
            ingest_file(store, str(f))


# ── Samples ──────────────────────────────────────────────────

def test_seed_sample_articles_once(store):
    assert seed_sample_articles(store) == len(SAMPLE_ARTICLES)
    assert seed_sample_articles(store) == 0
    titles = {c.title for c in store.iter_chunks()}
    assert "Network Connectivity Issues" in titles
    assert all(c.metadata.source == "Microsoft Docs" for c in store.iter_chunks())
