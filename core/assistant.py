"""
Assistant wiring.

Responsibilities:
  - Open the knowledge store and attach the embedding generator
  - Seed the sample articles into an empty store
  - Build the vector index when it is missing or stale
  - Initialize the inference engine (GPU preferred, CPU fallback)
  - Hand back one explicitly owned Assistant that tears everything down
"""

import logging
from dataclasses import dataclass
from typing import Optional

from core import ingestion
from core.embeddings import EmbeddingGenerator
from core.errors import AssistantError
from core.inference import InferenceEngine
from core.rag import RagOrchestrator
from core.retriever import Retriever
from storage.knowledge_store import KnowledgeStore
from utils.config import SEED_SAMPLE_ARTICLES

logger = logging.getLogger(__name__)


@dataclass
class Assistant:
    engine: InferenceEngine
    store: KnowledgeStore
    embedder: Optional[EmbeddingGenerator]
    retriever: Retriever
    orchestrator: RagOrchestrator

    def close(self) -> None:
        self.orchestrator.shutdown()
        self.engine.dispose()
        self.store.close()

    def __enter__(self) -> "Assistant":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def build_assistant(
    store: Optional[KnowledgeStore] = None,
    embedder: Optional[EmbeddingGenerator] = None,
    engine: Optional[InferenceEngine] = None,
    seed_samples: bool = SEED_SAMPLE_ARTICLES,
) -> Assistant:
    """
    Build a ready-to-use assistant.

    The engine may come back NOT_READY (missing model); queries then fail
    with a model-unavailable response instead of raising. Missing embeddings
    leave retrieval on lexical search.
    """
    embedder = embedder if embedder is not None else EmbeddingGenerator()
    store = store if store is not None else KnowledgeStore(embedder=embedder)
    if store.embedder is None:
        store.embedder = embedder
    store.initialize()

    if seed_samples:
        ingestion.seed_sample_articles(store)

    if store.needs_rebuild:
        try:
            store.rebuild_index()
        except AssistantError as e:
            logger.warning("Vector index not built, lexical search will be used: %s", e)

    engine = engine if engine is not None else InferenceEngine()
    if not engine.initialize():
        logger.warning("Assistant started without a language model: %s", engine.last_error)

    retriever = Retriever(store, embedder)
    orchestrator = RagOrchestrator(engine, retriever)
    return Assistant(
        engine=engine,
        store=store,
        embedder=embedder,
        retriever=retriever,
        orchestrator=orchestrator,
    )
