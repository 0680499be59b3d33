"""
Retriever.

Responsibilities:
  - Embed the query and search the knowledge store by vector similarity
  - Fall back to lexical search when the embedding model or index is missing
  - Normalize scores to [0, 1], drop results under the relevance threshold
  - Rank top-k by score, then recency, then insertion order
  - Report which retrieval mode was actually used

The retriever only reads from the store.
"""

import logging
from typing import Optional

from core.cancellation import CancellationToken
from core.errors import IndexUnavailableError, ModelUnavailableError
from core.models import Chunk, RetrievalMode, RetrievalResult, RetrievedSource
from core.prompt import truncate_text
from utils.config import EXCERPT_MAX_CHARS, MIN_RELEVANCE, TOP_K

logger = logging.getLogger(__name__)

# Extra store candidates, so scores clamped together still rank by recency
# before the cut to k.
_CANDIDATE_SLACK = 5


def _normalize(score: float) -> float:
    """Clamp a cosine / lexical score into [0, 1]."""
    return min(1.0, max(0.0, float(score)))


class Retriever:
    """Ranks knowledge store results into the top-k sources for a query."""

    def __init__(
        self,
        store,
        embedder=None,
        min_relevance: float = MIN_RELEVANCE,
        excerpt_chars: int = EXCERPT_MAX_CHARS,
    ):
        self.store = store
        self.embedder = embedder
        self.min_relevance = min_relevance
        self.excerpt_chars = excerpt_chars

    def _vector_candidates(
        self, query_text: str, k: int, cancel_token: Optional[CancellationToken]
    ) -> Optional[list[tuple[Chunk, float]]]:
        """Vector search, or None when it is not possible right now."""
        if self.embedder is None or not self.store.vector_index_ready:
            return None
        try:
            vector = self.embedder.embed(query_text)
        except ModelUnavailableError as e:
            logger.warning("Query embedding unavailable, using lexical search: %s", e)
            return None
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return self.store.search(vector, k, cancel_token)

    def retrieve(
        self,
        query_text: str,
        k: int = TOP_K,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RetrievalResult:
        """
        Return up to ``k`` sources for ``query_text``.

        A store failure degrades to an empty result with mode ``none``;
        cancellation and timeout propagate to the caller.
        """
        if k <= 0 or not query_text.strip():
            return RetrievalResult()
        try:
            if not self.store.is_ready:
                return RetrievalResult()
            fetch = k + _CANDIDATE_SLACK
            candidates = self._vector_candidates(query_text, fetch, cancel_token)
            mode = RetrievalMode.VECTOR
            if candidates is None:
                candidates = self.store.lexical_search(query_text, fetch, cancel_token)
                mode = RetrievalMode.LEXICAL
        except IndexUnavailableError as e:
            logger.warning("Knowledge store unavailable, answering without sources: %s", e)
            return RetrievalResult()

        sources = [
            RetrievedSource(
                chunk=chunk,
                score=_normalize(score),
                excerpt=truncate_text(chunk.content, self.excerpt_chars),
            )
            for chunk, score in candidates
        ]
        sources = [s for s in sources if s.score >= self.min_relevance]
        # Stable sorts, least significant key first.
        sources.sort(key=lambda s: s.chunk.seq)
        sources.sort(key=lambda s: s.chunk.created_at, reverse=True)
        sources.sort(key=lambda s: s.score, reverse=True)

        logger.info("Retrieved %d source(s) via %s search", len(sources[:k]), mode.value)
        return RetrievalResult(sources=sources[:k], mode=mode)
