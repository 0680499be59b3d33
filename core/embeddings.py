"""
Embedding Generator — sentence-transformers wrapper.

Responsibilities:
  - Lazily load the embedding model from the local cache (no downloads)
  - Embed single texts and batches into L2-normalized float32 vectors
  - Bound memory during ingestion by encoding fixed-size batches
  - Raise ModelUnavailableError when the model cannot be loaded, so callers
    can fall back to lexical search
"""

import logging
import threading
from typing import Iterator, Optional

import numpy as np
from sentence_transformers import SentenceTransformer

from core.cancellation import CancellationToken
from core.errors import ModelUnavailableError
from utils.config import (
    EMBEDDING_BATCH_SIZE,
    EMBEDDING_DEVICE,
    EMBEDDING_LOCAL_ONLY,
    EMBEDDING_MODEL,
)

logger = logging.getLogger(__name__)


class EmbeddingGenerator:
    """Turns text into fixed-length vectors for similarity search."""

    def __init__(
        self,
        model_name: str = EMBEDDING_MODEL,
        device: str = EMBEDDING_DEVICE,
        batch_size: int = EMBEDDING_BATCH_SIZE,
        local_files_only: bool = EMBEDDING_LOCAL_ONLY,
    ):
        self.model_name = model_name
        self.device = device
        self.batch_size = batch_size
        self.local_files_only = local_files_only
        self._model: Optional[SentenceTransformer] = None
        self._load_error: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def model(self) -> SentenceTransformer:
        """Load the model on first use; remember a failed load."""
        with self._lock:
            if self._model is not None:
                return self._model
            if self._load_error is not None:
                raise ModelUnavailableError(self._load_error)
            try:
                logger.info("Loading embedding model %s on %s", self.model_name, self.device)
                model = SentenceTransformer(
                    self.model_name,
                    device=self.device,
                    local_files_only=self.local_files_only,
                )
                model.eval()
            except (OSError, ValueError, RuntimeError) as e:
                self._load_error = f"embedding model {self.model_name!r} unavailable: {e}"
                logger.warning("Embedding model unavailable, lexical search will be used: %s", e)
                raise ModelUnavailableError(self._load_error) from e
            self._model = model
            logger.info("Embedding model loaded (dim=%s)", model.get_sentence_embedding_dimension())
            return self._model

    @property
    def available(self) -> bool:
        try:
            self.model
        except ModelUnavailableError:
            return False
        return True

    @property
    def dimension(self) -> int:
        return int(self.model.get_sentence_embedding_dimension())

    def _encode(self, texts: list[str]) -> np.ndarray:
        vectors = self.model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
            show_progress_bar=False,
        )
        return np.asarray(vectors, dtype=np.float32)

    def embed(self, text: str) -> np.ndarray:
        """Embed one text. Identical text gives an identical vector."""
        return self._encode([text])[0]

    def iter_batches(
        self,
        texts: list[str],
        batch_size: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[np.ndarray]:
        """Yield one (batch, dim) array per batch of ``texts``."""
        size = batch_size or self.batch_size
        for start in range(0, len(texts), size):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            yield self._encode(texts[start:start + size])

    def embed_many(
        self,
        texts: list[str],
        batch_size: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0), dtype=np.float32)
        return np.vstack(list(self.iter_batches(texts, batch_size, cancel_token)))
