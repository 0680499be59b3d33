"""
Ingestion Pipeline.

Responsibilities:
  - Accept text, documents or local files (PDF, PPTX, TXT, MD)
  - Validate file type (whitelist) and size (50 MB max)
  - Extract text locally via extractors.py
  - Chunk text with RecursiveCharacterTextSplitter (1000 chars, 200 overlap)
  - Add chunks to the knowledge store (embedded when the vector index is current)
  - Seed the built-in troubleshooting articles into an empty store
"""

import logging
from pathlib import Path
from typing import Optional

from langchain_text_splitters import RecursiveCharacterTextSplitter

from core.cancellation import CancellationToken
from core.errors import ValidationError
from core.models import Document, SourceMetadata
from storage.knowledge_store import KnowledgeStore, PendingChunk
from utils import extractors
from utils.config import (
    ALLOWED_EXTENSIONS,
    CHUNK_OVERLAP,
    CHUNK_SIZE,
    MAX_FILE_SIZE_MB,
)

logger = logging.getLogger(__name__)

_TITLE_MAX_CHARS = 50

SAMPLE_SOURCE = "Microsoft Docs"

SAMPLE_ARTICLES = [
    {
        "title": "Windows Update Troubleshooting",
        "content": (
            "To troubleshoot Windows Update issues: 1. Run Windows Update Troubleshooter "
            "2. Reset Windows Update components 3. Check for corrupted system files using SFC scan "
            "4. Clear Windows Update cache 5. Restart Windows Update service"
        ),
        "url": "https://docs.microsoft.com/en-us/windows/deployment/update/windows-update-troubleshooting",
    },
    {
        "title": "Blue Screen of Death (BSOD) Analysis",
        "content": (
            "When encountering a BSOD: 1. Note the error code and message 2. Check recently "
            "installed hardware/software 3. Run memory diagnostic 4. Update device drivers "
            "5. Check system logs in Event Viewer 6. Consider system restore"
        ),
        "url": "https://docs.microsoft.com/en-us/windows-hardware/drivers/debugger/bug-check-code-reference",
    },
    {
        "title": "Network Connectivity Issues",
        "content": (
            "To resolve network connectivity problems: 1. Run network troubleshooter "
            "2. Reset network adapters 3. Flush DNS cache 4. Reset TCP/IP stack "
            "5. Check firewall settings 6. Update network drivers 7. Verify IP configuration"
        ),
        "url": "https://docs.microsoft.com/en-us/windows/client-management/troubleshoot-networking",
    },
    {
        "title": "Performance Optimization",
        "content": (
            "To improve system performance: 1. Disable startup programs 2. Clean temporary files "
            "3. Check disk space 4. Run disk cleanup 5. Defragment hard drives 6. Check for malware "
            "7. Update drivers 8. Adjust visual effects"
        ),
        "url": "https://docs.microsoft.com/en-us/windows/client-management/optimize-windows-10",
    },
]


def _rejected(message: str) -> ValidationError:
    """Validation error whose message is safe to show the user as is."""
    return ValidationError(message, user_message=message)


def chunk_text(text: str) -> list[str]:
    """Split text into overlapping chunks."""
    splitter = RecursiveCharacterTextSplitter(
        chunk_size=CHUNK_SIZE,
        chunk_overlap=CHUNK_OVERLAP,
    )
    return [chunk for chunk in splitter.split_text(text) if chunk.strip()]


def title_from_content(content: str) -> str:
    """First sentence of ``content``, capped at 50 characters."""
    stripped = content.strip()
    first = next((s.strip() for s in stripped.split(".") if s.strip()), stripped)
    if len(first) > _TITLE_MAX_CHARS:
        return first[:_TITLE_MAX_CHARS] + "..."
    return first or "Untitled"


def ingest_document(
    store: KnowledgeStore,
    document: Document,
    cancel_token: Optional[CancellationToken] = None,
) -> list[str]:
    """
    Chunk a document and add its chunks to the store.

    Returns the chunk IDs in document order. Re-ingesting the same document
    returns the same IDs without adding anything.
    """
    if not document.content.strip():
        raise ValidationError("document content must not be blank")
    chunks = chunk_text(document.content)
    document_id = document.document_id
    items = [
        PendingChunk(
            content=chunk,
            metadata=document.metadata,
            document_id=document_id,
            chunk_index=i,
        )
        for i, chunk in enumerate(chunks)
    ]
    ids = store.add_chunks(items, cancel_token)
    logger.info("Ingested %r as %d chunk(s)", document.metadata.title, len(ids))
    return ids


def ingest_text(
    store: KnowledgeStore,
    text: str,
    title: Optional[str] = None,
    url: Optional[str] = None,
    source: str = "manual",
    cancel_token: Optional[CancellationToken] = None,
) -> list[str]:
    """Ingest free text; the title defaults to the text's first sentence."""
    if not text or not text.strip():
        raise _rejected("Please paste some text first.")
    metadata = SourceMetadata(
        title=(title or "").strip() or title_from_content(text),
        source=source,
        url=url or None,
    )
    return ingest_document(store, Document(content=text, metadata=metadata), cancel_token)


def _extract(path: Path) -> str:
    ext = path.suffix.lower()
    if ext == ".pdf":
        return extractors.extract_pdf(str(path))
    if ext == ".pptx":
        return extractors.extract_pptx(str(path))
    return extractors.extract_txt(str(path))


def ingest_file(
    store: KnowledgeStore,
    file_path: str,
    cancel_token: Optional[CancellationToken] = None,
) -> dict:
    """
    Extract a local file and add it to the knowledge store.

    Steps:
      1. Validate extension against the allowed whitelist.
      2. Validate file size against the 50 MB limit.
      3. Extract text with the appropriate extractor.
      4. Chunk and store the text.

    Returns a status dict: {"status", "source", "chunks", "extracted_chars"}.
    Raises ValidationError for invalid extension, oversized file, or empty extraction.
    """
    src = Path(file_path)
    ext = src.suffix.lower()

    if ext not in ALLOWED_EXTENSIONS:
        raise _rejected(
            f"Unsupported file type '{ext}'. Allowed: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )
    if not src.is_file():
        raise _rejected(f"File not found: {src.name}")

    size_mb = src.stat().st_size / (1024 * 1024)
    if size_mb > MAX_FILE_SIZE_MB:
        raise _rejected(
            f"File size ({size_mb:.1f} MB) exceeds the {MAX_FILE_SIZE_MB} MB limit."
        )

    text = _extract(src)
    if not text.strip():
        raise _rejected("No text could be extracted from the file.")

    metadata = SourceMetadata(
        title=src.stem,
        source=src.name,
        extra={"source_type": "file", "extension": ext},
    )
    ids = ingest_document(store, Document(content=text, metadata=metadata), cancel_token)
    return {
        "status": "ok",
        "source": src.name,
        "chunks": len(ids),
        "extracted_chars": len(text),
    }


def seed_sample_articles(store: KnowledgeStore) -> int:
    """Add the built-in troubleshooting articles when the store is empty."""
    if store.count() > 0:
        return 0
    added = 0
    for article in SAMPLE_ARTICLES:
        metadata = SourceMetadata(
            title=article["title"],
            source=SAMPLE_SOURCE,
            url=article["url"],
        )
        added += len(ingest_document(store, Document(content=article["content"], metadata=metadata)))
    logger.info("Seeded %d sample article chunk(s)", added)
    return added
