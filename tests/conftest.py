"""Shared fakes and fixtures — no model downloads, no GPU, no network."""

import hashlib
import re
import time
from unittest.mock import patch

import numpy as np
import pytest

from core.errors import ModelUnavailableError
from storage.knowledge_store import KnowledgeStore

_WORD = re.compile(r"\w+")


class HashingEmbedder:
    """Bag-of-words embedder: each word hashes to one dimension, L2-normalized."""

    model_name = "hashing-bow-256"

    def __init__(self, dim: int = 256):
        self.dim = dim
        self.calls = 0
        self.unavailable = False

    @property
    def dimension(self) -> int:
        return self.dim

    def embed(self, text: str) -> np.ndarray:
        if self.unavailable:
            raise ModelUnavailableError("embedding model not installed")
        self.calls += 1
        vec = np.zeros(self.dim, dtype=np.float32)
        for word in _WORD.findall(text.lower()):
            slot = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dim
            vec[slot] += 1.0
        norm = np.linalg.norm(vec)
        if norm == 0:
            vec[0] = 1.0
            return vec
        return vec / norm

    def iter_batches(self, texts, batch_size=None, cancel_token=None):
        size = batch_size or 32
        for start in range(0, len(texts), size):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            yield np.vstack([self.embed(t) for t in texts[start:start + size]])

    def embed_many(self, texts, batch_size=None, cancel_token=None):
        return np.vstack(list(self.iter_batches(texts, batch_size, cancel_token)))


class FakeLlama:
    """Stands in for llama_cpp.Llama: one token per word, scripted replies."""

    def __init__(self, factory: "FakeLlamaFactory", **kwargs):
        self.factory = factory
        self.kwargs = kwargs
        self.closed = False
        self.completions = []

    def tokenize(self, text: bytes, add_bos: bool = True, special: bool = False) -> list[int]:
        words = text.decode("utf-8").split()
        tokens = [10 + i for i in range(len(words))]
        return [1] + tokens if add_bos else tokens

    def create_completion(self, prompt, max_tokens=16, stream=False, **kwargs):
        self.completions.append({"prompt": prompt, "max_tokens": max_tokens, **kwargs})
        return self._completion(max_tokens)

    def _completion(self, max_tokens):
        factory = self.factory
        if factory.endless:
            words = iter(lambda: "tok", None)
        else:
            words = iter(factory.reply.split())
        for i, word in enumerate(words):
            if i >= max_tokens:
                return
            if factory.token_delay:
                time.sleep(factory.token_delay)
            factory.produced += 1
            yield {"choices": [{"text": word if i == 0 else " " + word}]}

    def close(self):
        self.closed = True


class FakeLlamaFactory:
    """Patched in for ``core.inference.Llama``; records every session it creates."""

    def __init__(self):
        self.instances: list[FakeLlama] = []
        self.reply = "Run the network troubleshooter and reset the adapter."
        self.endless = False
        self.token_delay = 0.0
        self.fail_gpu = False
        self.fail_cpu = False
        self.produced = 0

    def __call__(self, **kwargs):
        gpu = kwargs.get("n_gpu_layers", 0) != 0
        if gpu and self.fail_gpu:
            raise RuntimeError("CUDA error: no kernel image is available")
        if not gpu and self.fail_cpu:
            raise ValueError("Failed to load model from file")
        llm = FakeLlama(self, **kwargs)
        self.instances.append(llm)
        return llm

    @property
    def last(self) -> FakeLlama:
        return self.instances[-1]


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def store(tmp_path, embedder):
    s = KnowledgeStore(
        db_path=str(tmp_path / "knowledge.db"),
        chroma_dir=str(tmp_path / "chroma"),
        embedder=embedder,
    )
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def seeded_store(store):
    """Store holding the sample articles with a built vector index."""
    from core.ingestion import seed_sample_articles

    seed_sample_articles(store)
    store.rebuild_index()
    return store


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "phi-test-q4.gguf"
    path.write_bytes(b"GGUF" + b"\x00" * 64)
    return path


@pytest.fixture
def fake_llama():
    """Patch llama.cpp with FakeLlamaFactory; GPU offload unsupported unless a test says otherwise."""
    factory = FakeLlamaFactory()
    with patch("core.inference.Llama", side_effect=factory), \
         patch("core.inference._gpu_offload_supported", return_value=False):
        yield factory


@pytest.fixture
def engine(fake_llama, model_file):
    from core.inference import InferenceEngine

    eng = InferenceEngine(model_path=str(model_file), acceleration="cpu", n_ctx=2048, n_threads=2)
    assert eng.initialize()
    yield eng
    eng.dispose()
