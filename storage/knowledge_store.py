"""
Knowledge Store — SQLite chunk table + ChromaDB vector generations.

Responsibilities:
  - Persist chunks (title, content, url, metadata, timestamps) in SQLite
  - Keep chunk vectors in a ChromaDB collection ("generation") per index build
  - Cosine similarity search over the active generation
  - Lexical fallback search when embeddings are unavailable
  - Rebuild the vector index into a new generation, then swap atomically
  - Additive schema migrations keyed on PRAGMA user_version

Concurrency:
  Readers use thread-local SQLite connections (WAL mode). A single writer
  connection is guarded by a lock. Vectors are written to ChromaDB before the
  SQLite row commits, and search results are joined against committed rows,
  so a reader never sees a partially written chunk.
"""

import hashlib
import logging
import re
import sqlite3
import threading
from contextlib import closing, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

import chromadb
import numpy as np
from chromadb.config import Settings

from core.cancellation import CancellationToken
from core.errors import (
    AssistantError,
    IndexUnavailableError,
    ModelUnavailableError,
    ValidationError,
)
from core.models import Chunk, SourceMetadata
from core.prompt import estimate_tokens
from utils.config import CHROMA_DIR, EMBEDDING_BATCH_SIZE, KNOWLEDGE_DB_PATH

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

# ---------------------------------------------------------------------------
# Schema migrations. Additive only: existing rows must keep working.
# ---------------------------------------------------------------------------

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS knowledge_chunks (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            url TEXT,
            metadata TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_knowledge_title ON knowledge_chunks(title)",
    ],
    2: [
        "ALTER TABLE knowledge_chunks ADD COLUMN document_id TEXT",
        "ALTER TABLE knowledge_chunks ADD COLUMN chunk_index INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE knowledge_chunks ADD COLUMN token_count INTEGER NOT NULL DEFAULT 0",
        "ALTER TABLE knowledge_chunks ADD COLUMN seq INTEGER",
        "UPDATE knowledge_chunks SET seq = rowid WHERE seq IS NULL",
        "CREATE INDEX IF NOT EXISTS idx_knowledge_document ON knowledge_chunks(document_id)",
        "CREATE INDEX IF NOT EXISTS idx_knowledge_seq ON knowledge_chunks(seq)",
        """
        CREATE TABLE IF NOT EXISTS index_state (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """,
    ],
}

_CHUNK_COLUMNS = (
    "id, title, content, url, metadata, created_at, updated_at, "
    "document_id, chunk_index, token_count, seq"
)

_TERM = re.compile(r"\w+", re.UNICODE)

# Extra candidates fetched from the ANN index so ties at the k boundary
# are resolved by recency and insertion order rather than by index internals.
_TIE_OVERFETCH = 10

# Rows scanned between cancellation checks during lexical search.
_LEXICAL_CHECK_EVERY = 256


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ranked(pairs: list) -> list:
    """Order (chunk, score) pairs by score, then newest first, then insertion order."""
    # Stable sorts, least significant key first.
    pairs.sort(key=lambda pair: pair[0].seq)
    pairs.sort(key=lambda pair: pair[0].created_at, reverse=True)
    pairs.sort(key=lambda pair: pair[1], reverse=True)
    return pairs


def _terms(text: str) -> set[str]:
    return {t.lower() for t in _TERM.findall(text or "")}


def _chunk_id(content: str, metadata: SourceMetadata) -> str:
    """
    Stable ID derived from content + canonical metadata.

    Adding identical content with identical metadata twice yields the same ID,
    so re-ingestion never duplicates a chunk or shifts ranking.
    """
    raw = f"{metadata.to_json()}::{content}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


@dataclass
class PendingChunk:
    """A chunk waiting to be written by ``add_chunks``."""
    content: str
    metadata: SourceMetadata
    document_id: Optional[str] = None
    chunk_index: int = 0
    token_count: Optional[int] = None


@dataclass
class IndexState:
    active_generation: int = 0
    latest_generation: int = 0
    retired_generation: int = 0
    embedding_model: Optional[str] = None
    pending_vectors: int = 0


class KnowledgeStore:
    """Local knowledge base: chunks in SQLite, vectors in ChromaDB."""

    def __init__(
        self,
        db_path: str = KNOWLEDGE_DB_PATH,
        chroma_dir: str = CHROMA_DIR,
        embedder=None,
        collection_prefix: str = "chunks",
        batch_size: int = EMBEDDING_BATCH_SIZE,
    ):
        self.db_path = Path(db_path)
        self.chroma_dir = Path(chroma_dir)
        self.embedder = embedder
        self.collection_prefix = collection_prefix
        self.batch_size = batch_size

        self._write_lock = threading.Lock()
        self._conn_lock = threading.Lock()
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._writer: Optional[sqlite3.Connection] = None
        self._chroma = None
        self._ready = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Open the database and apply pending migrations."""
        if self._ready:
            logger.info("Knowledge store already initialized")
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = self._connect()
            self._migrate(self._writer)
        except sqlite3.Error as e:
            logger.error("Failed to initialize knowledge store at %s: %s", self.db_path, e)
            raise IndexUnavailableError(f"cannot open knowledge store: {e}") from e
        self._ready = True
        logger.info("Knowledge store ready at %s (%d chunks)", self.db_path, self.count())

    @property
    def is_ready(self) -> bool:
        return self._ready

    def close(self) -> None:
        self._ready = False
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._writer = None
        self._local = threading.local()
        self._chroma = None
        logger.info("Knowledge store closed")

    def __enter__(self) -> "KnowledgeStore":
        self.initialize()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=30.0,
            isolation_level=None,   # explicit BEGIN / COMMIT
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        with self._conn_lock:
            self._connections.append(conn)
        return conn

    def _reader(self) -> sqlite3.Connection:
        if not self._ready:
            raise IndexUnavailableError("knowledge store is not initialized")
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                conn = self._connect()
            except sqlite3.Error as e:
                raise IndexUnavailableError(f"cannot open reader connection: {e}") from e
            self._local.conn = conn
        return conn

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection):
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")

    def _migrate(self, conn: sqlite3.Connection) -> None:
        current = conn.execute("PRAGMA user_version").fetchone()[0]
        for version in range(current + 1, SCHEMA_VERSION + 1):
            logger.info("Migrating knowledge store schema to v%d", version)
            with self._transaction(conn):
                for statement in _MIGRATIONS[version]:
                    conn.execute(statement)
                conn.execute(f"PRAGMA user_version = {version}")

    # ------------------------------------------------------------------
    # Index state
    # ------------------------------------------------------------------

    def _read_state(self, conn: sqlite3.Connection) -> IndexState:
        rows = {row["key"]: row["value"] for row in conn.execute("SELECT key, value FROM index_state")}
        return IndexState(
            active_generation=int(rows.get("active_generation", 0)),
            latest_generation=int(rows.get("latest_generation", 0)),
            retired_generation=int(rows.get("retired_generation", 0)),
            embedding_model=rows.get("embedding_model"),
            pending_vectors=int(rows.get("pending_vectors", 0)),
        )

    def _write_state(self, conn: sqlite3.Connection, **values) -> None:
        for key, value in values.items():
            conn.execute(
                "INSERT INTO index_state (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, "" if value is None else str(value)),
            )

    def index_state(self) -> IndexState:
        try:
            return self._read_state(self._reader())
        except sqlite3.Error as e:
            raise IndexUnavailableError(f"cannot read index state: {e}") from e

    @property
    def vector_index_ready(self) -> bool:
        """True when a vector generation exists for the attached embedder's model."""
        if not self._ready or self.embedder is None:
            return False
        state = self.index_state()
        return state.active_generation > 0 and state.embedding_model == self.embedder.model_name

    @property
    def needs_rebuild(self) -> bool:
        if not self._ready or self.embedder is None or self.count() == 0:
            return False
        return not self.vector_index_ready or self.index_state().pending_vectors > 0

    # ------------------------------------------------------------------
    # ChromaDB generations
    # ------------------------------------------------------------------

    def _client(self):
        if self._chroma is None:
            self.chroma_dir.mkdir(parents=True, exist_ok=True)
            self._chroma = chromadb.PersistentClient(
                path=str(self.chroma_dir),
                settings=Settings(anonymized_telemetry=False),
            )
        return self._chroma

    def _collection_name(self, generation: int) -> str:
        return f"{self.collection_prefix}_g{generation}"

    def _collection(self, generation: int):
        return self._client().get_or_create_collection(
            name=self._collection_name(generation),
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )

    def _drop_collection(self, generation: int) -> None:
        if generation <= 0:
            return
        try:
            self._client().delete_collection(self._collection_name(generation))
            logger.info("Dropped vector generation %d", generation)
        except Exception as e:
            # Already absent.
            logger.debug("Vector generation %d not dropped: %s", generation, e)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_chunk(
        self,
        text: str,
        metadata: SourceMetadata,
        document_id: Optional[str] = None,
        chunk_index: int = 0,
        token_count: Optional[int] = None,
    ) -> str:
        """Add one chunk and return its stable ID."""
        return self.add_chunks([PendingChunk(text, metadata, document_id, chunk_index, token_count)])[0]

    def add_chunks(
        self,
        items: list[PendingChunk],
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[str]:
        """
        Add a batch of chunks with a single commit.

        Returns the chunk IDs in input order; chunks that already exist keep
        their original ID, position and timestamps. Embeddings are computed
        when the vector index is current; otherwise they are deferred until
        the next ``rebuild_index``.

        Raises:
            ValidationError      – blank content
            IndexUnavailableError – the database write failed
        """
        for item in items:
            if not item.content or not item.content.strip():
                raise ValidationError("chunk content must not be blank")
        ids = [_chunk_id(item.content, item.metadata) for item in items]
        if not items:
            return ids

        with self._write_lock:
            if not self._ready or self._writer is None:
                raise IndexUnavailableError("knowledge store is not initialized")
            conn = self._writer
            try:
                placeholders = ",".join("?" * len(ids))
                existing = {
                    row[0] for row in conn.execute(
                        f"SELECT id FROM knowledge_chunks WHERE id IN ({placeholders})", ids
                    )
                }
                fresh: dict[str, PendingChunk] = {}
                for chunk_id, item in zip(ids, items):
                    if chunk_id not in existing and chunk_id not in fresh:
                        fresh[chunk_id] = item
                if not fresh:
                    return ids
                state = self._read_state(conn)
            except sqlite3.Error as e:
                raise IndexUnavailableError(f"cannot read knowledge store: {e}") from e

            fresh_ids = list(fresh)
            vectors_written = self._write_vectors(state, fresh_ids, list(fresh.values()), cancel_token)

            try:
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                now = _now_iso()
                with self._transaction(conn):
                    seq = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM knowledge_chunks").fetchone()[0]
                    for chunk_id in fresh_ids:
                        item = fresh[chunk_id]
                        seq += 1
                        conn.execute(
                            f"INSERT INTO knowledge_chunks ({_CHUNK_COLUMNS}) "
                            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                            (
                                chunk_id,
                                item.metadata.title,
                                item.content,
                                item.metadata.url,
                                item.metadata.to_json(),
                                now,
                                None,
                                item.document_id,
                                item.chunk_index,
                                item.token_count if item.token_count is not None else estimate_tokens(item.content),
                                seq,
                            ),
                        )
                    if state.active_generation and not vectors_written:
                        self._write_state(conn, pending_vectors=state.pending_vectors + len(fresh_ids))
            except sqlite3.Error as e:
                self._discard_vectors(state, fresh_ids, vectors_written)
                raise IndexUnavailableError(f"cannot write chunks: {e}") from e
            except Exception:
                self._discard_vectors(state, fresh_ids, vectors_written)
                raise

        logger.info("Added %d chunk(s) to the knowledge store", len(fresh_ids))
        return ids

    def _write_vectors(
        self,
        state: IndexState,
        chunk_ids: list[str],
        items: list[PendingChunk],
        cancel_token: Optional[CancellationToken],
    ) -> bool:
        """Upsert vectors into the active generation. False when deferred."""
        if self.embedder is None or not state.active_generation:
            return False
        if state.embedding_model != self.embedder.model_name:
            return False
        texts = [item.content for item in items]
        try:
            collection = self._collection(state.active_generation)
            start = 0
            for vectors in self.embedder.iter_batches(texts, self.batch_size, cancel_token):
                batch_ids = chunk_ids[start:start + len(vectors)]
                collection.upsert(ids=batch_ids, embeddings=np.asarray(vectors).tolist())
                start += len(vectors)
        except ModelUnavailableError as e:
            logger.warning("Embedding deferred for %d chunk(s): %s", len(chunk_ids), e)
            self._discard_vectors(state, chunk_ids, True)
            return False
        except AssistantError:
            self._discard_vectors(state, chunk_ids, True)
            raise
        except Exception as e:
            self._discard_vectors(state, chunk_ids, True)
            raise IndexUnavailableError(f"cannot write vectors: {e}") from e
        return True

    def _discard_vectors(self, state: IndexState, chunk_ids: list[str], written: bool) -> None:
        if not written or not state.active_generation:
            return
        try:
            self._collection(state.active_generation).delete(ids=chunk_ids)
        except Exception as e:
            logger.warning("Could not remove orphaned vectors: %s", e)

    def delete_document(self, document_id: str) -> int:
        """Remove all chunks of a document. Returns the number removed."""
        with self._write_lock:
            if not self._ready or self._writer is None:
                raise IndexUnavailableError("knowledge store is not initialized")
            conn = self._writer
            try:
                ids = [
                    row[0] for row in conn.execute(
                        "SELECT id FROM knowledge_chunks WHERE document_id = ?", (document_id,)
                    )
                ]
                if not ids:
                    return 0
                with self._transaction(conn):
                    conn.execute("DELETE FROM knowledge_chunks WHERE document_id = ?", (document_id,))
                state = self._read_state(conn)
            except sqlite3.Error as e:
                raise IndexUnavailableError(f"cannot delete document: {e}") from e
            # Rows are gone first; readers ignore vectors without a row.
            self._discard_vectors(state, ids, True)
        logger.info("Deleted %d chunk(s) of document %s", len(ids), document_id)
        return len(ids)

    def rebuild_index(self, cancel_token: Optional[CancellationToken] = None) -> int:
        """
        Build a fresh vector generation for every chunk, then swap it in.

        The new ChromaDB collection is filled completely before the active
        generation marker changes in a single SQLite commit. The previous
        generation is retired and dropped on the following rebuild, so
        searches already running against it can finish.

        Returns:
            The new active generation number.

        Raises:
            ModelUnavailableError – no embedder, or the model cannot load
            OperationCancelledError / OperationTimedOutError
            IndexUnavailableError
        """
        if self.embedder is None:
            raise ModelUnavailableError("no embedding generator attached")

        with self._write_lock:
            if not self._ready or self._writer is None:
                raise IndexUnavailableError("knowledge store is not initialized")
            conn = self._writer
            try:
                state = self._read_state(conn)
            except sqlite3.Error as e:
                raise IndexUnavailableError(f"cannot read index state: {e}") from e

            generation = max(state.latest_generation, state.active_generation) + 1
            logger.info("Building vector generation %d with %s", generation, self.embedder.model_name)
            try:
                self._fill_generation(conn, generation, cancel_token)
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                with self._transaction(conn):
                    self._write_state(
                        conn,
                        active_generation=generation,
                        latest_generation=generation,
                        retired_generation=state.active_generation,
                        embedding_model=self.embedder.model_name,
                        pending_vectors=0,
                    )
            except sqlite3.Error as e:
                self._drop_collection(generation)
                raise IndexUnavailableError(f"cannot swap vector generation: {e}") from e
            except Exception:
                self._drop_collection(generation)
                raise

            self._drop_collection(state.retired_generation)

        logger.info("Vector generation %d is now active", generation)
        return generation

    def _fill_generation(
        self,
        conn: sqlite3.Connection,
        generation: int,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        try:
            collection = self._collection(generation)
        except Exception as e:
            raise IndexUnavailableError(f"cannot create vector generation: {e}") from e
        with closing(conn.execute("SELECT id, content FROM knowledge_chunks ORDER BY seq")) as cursor:
            while True:
                rows = cursor.fetchmany(self.batch_size)
                if not rows:
                    break
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                vectors = self.embedder.embed_many([row["content"] for row in rows], self.batch_size)
                try:
                    collection.upsert(
                        ids=[row["id"] for row in rows],
                        embeddings=np.asarray(vectors).tolist(),
                    )
                except Exception as e:
                    raise IndexUnavailableError(f"cannot write vectors: {e}") from e

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _row_to_chunk(self, row: sqlite3.Row) -> Chunk:
        metadata = SourceMetadata.from_json(row["metadata"], fallback_title=row["title"])
        if metadata.url is None and row["url"]:
            metadata = SourceMetadata(metadata.title, metadata.source, row["url"], metadata.extra)
        return Chunk(
            id=row["id"],
            content=row["content"],
            metadata=metadata,
            document_id=row["document_id"],
            token_count=row["token_count"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            seq=row["seq"] or 0,
        )

    def _fetch_chunks(self, conn: sqlite3.Connection, ids: list[str]) -> dict[str, Chunk]:
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM knowledge_chunks WHERE id IN ({placeholders})", ids
        ).fetchall()
        return {row["id"]: self._row_to_chunk(row) for row in rows}

    def count(self) -> int:
        try:
            return self._reader().execute("SELECT COUNT(*) FROM knowledge_chunks").fetchone()[0]
        except sqlite3.Error as e:
            raise IndexUnavailableError(f"cannot count chunks: {e}") from e

    def get_chunk(self, chunk_id: str) -> Optional[Chunk]:
        try:
            return self._fetch_chunks(self._reader(), [chunk_id]).get(chunk_id)
        except sqlite3.Error as e:
            raise IndexUnavailableError(f"cannot read chunk: {e}") from e

    def iter_chunks(self) -> Iterator[Chunk]:
        """Yield every chunk in insertion order."""
        try:
            with closing(self._reader().execute(
                f"SELECT {_CHUNK_COLUMNS} FROM knowledge_chunks ORDER BY seq"
            )) as cursor:
                for row in cursor:
                    yield self._row_to_chunk(row)
        except sqlite3.Error as e:
            raise IndexUnavailableError(f"cannot read chunks: {e}") from e

    def search(
        self,
        query_vector: np.ndarray,
        k: int,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[tuple[Chunk, float]]:
        """
        Cosine similarity search over the active vector generation.

        Returns at most ``k`` (chunk, score) pairs, score descending, ties
        broken by recency and then insertion order.

        Raises:
            IndexUnavailableError – no vector generation, or the store failed
        """
        if k <= 0:
            return []
        conn = self._reader()
        try:
            state = self._read_state(conn)
        except sqlite3.Error as e:
            raise IndexUnavailableError(f"cannot read index state: {e}") from e
        if not state.active_generation:
            raise IndexUnavailableError("no vector index has been built")

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        try:
            collection = self._collection(state.active_generation)
            available = collection.count()
            if available == 0:
                return []
            result = collection.query(
                query_embeddings=[np.asarray(query_vector, dtype=np.float32).tolist()],
                n_results=min(available, k + _TIE_OVERFETCH),
                include=["distances"],
            )
        except Exception as e:
            raise IndexUnavailableError(f"vector search failed: {e}") from e

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        ids = result.get("ids", [[]])[0]
        distances = result.get("distances", [[]])[0]
        try:
            chunks = self._fetch_chunks(conn, ids)
        except sqlite3.Error as e:
            raise IndexUnavailableError(f"cannot read chunks: {e}") from e

        scored = [
            (chunks[chunk_id], 1.0 - float(distance))
            for chunk_id, distance in zip(ids, distances)
            if chunk_id in chunks
        ]
        return _ranked(scored)[:k]

    def lexical_search(
        self,
        query_text: str,
        k: int,
        cancel_token: Optional[CancellationToken] = None,
    ) -> list[tuple[Chunk, float]]:
        """
        Keyword search used when embeddings are unavailable.

        Score = fraction of distinct query terms present in the chunk content.
        Chunks matching no term are left out. Ties go to the newest chunk,
        then to the earliest inserted.
        """
        terms = _terms(query_text)
        if not terms or k <= 0:
            return []
        conn = self._reader()
        scored: list[tuple[Chunk, float]] = []
        try:
            with closing(conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM knowledge_chunks ORDER BY seq"
            )) as cursor:
                for i, row in enumerate(cursor):
                    if cancel_token is not None and i % _LEXICAL_CHECK_EVERY == 0:
                        cancel_token.raise_if_cancelled()
                    hits = len(terms & _terms(row["content"]))
                    if hits:
                        scored.append((self._row_to_chunk(row), hits / len(terms)))
        except sqlite3.Error as e:
            raise IndexUnavailableError(f"lexical search failed: {e}") from e

        return _ranked(scored)[:k]
