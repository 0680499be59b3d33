"""
Configuration — environment variables, model paths, constants.
"""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# ── Storage ──────────────────────────────────────────────────
DATA_DIR = os.getenv("SUPPORTDESK_DATA_DIR", "data")
DATA_ROOT = Path(DATA_DIR)
KNOWLEDGE_DB_PATH = os.getenv("SUPPORTDESK_KNOWLEDGE_DB", str(DATA_ROOT / "knowledge.db"))
CHROMA_DIR = os.getenv("SUPPORTDESK_CHROMA_DIR", str(DATA_ROOT / "chroma"))
SEED_SAMPLE_ARTICLES = os.getenv("SUPPORTDESK_SEED_SAMPLES", "true").lower() != "false"

# ── Local LLM (llama.cpp) ───────────────────────────────────
MODEL_PATH = os.getenv("SUPPORTDESK_MODEL_PATH", str(DATA_ROOT / "models" / "phi-3-mini-4k-instruct-q4.gguf"))
ACCELERATION = os.getenv("SUPPORTDESK_ACCELERATION", "auto")   # auto | gpu | cpu
CONTEXT_WINDOW = int(os.getenv("SUPPORTDESK_CONTEXT_WINDOW", "4096"))
LLM_THREADS = int(os.getenv("SUPPORTDESK_THREADS", str(os.cpu_count() or 4)))
LLM_SEED = 42
LLM_TOP_P = 0.9
LLM_TOP_K = 40
LLM_STOP_SEQUENCES = ["<|end|>", "<|endoftext|>", "\nUser:"]
MAX_CONCURRENT_GENERATIONS = int(os.getenv("SUPPORTDESK_MAX_CONCURRENT", "1"))
BUSY_POLICY = os.getenv("SUPPORTDESK_BUSY_POLICY", "queue")   # queue | reject

# ── Query defaults ───────────────────────────────────────────
DEFAULT_MAX_TOKENS = 512
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_RETRIEVED_CHUNKS = 5

# ── Embeddings ───────────────────────────────────────────────
EMBEDDING_MODEL = os.getenv("SUPPORTDESK_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
EMBEDDING_DEVICE = os.getenv("SUPPORTDESK_EMBEDDING_DEVICE", "cpu")
EMBEDDING_BATCH_SIZE = 32
EMBEDDING_LOCAL_ONLY = os.getenv("SUPPORTDESK_EMBEDDING_LOCAL_ONLY", "true").lower() != "false"

# ── Chunking ─────────────────────────────────────────────────
CHUNK_SIZE = 1000
CHUNK_OVERLAP = 200

# ── Retrieval ────────────────────────────────────────────────
TOP_K = 5
MIN_RELEVANCE = float(os.getenv("SUPPORTDESK_MIN_RELEVANCE", "0.2"))
EXCERPT_MAX_CHARS = 600

# ── Prompt assembly ──────────────────────────────────────────
PROMPT_MAX_CONTEXT_TURNS = 6
PROMPT_MAX_EXCERPT_CHARS = 800

# ── Orchestration ────────────────────────────────────────────
ANSWER_WORKERS = int(os.getenv("SUPPORTDESK_ANSWER_WORKERS", "4"))
ANSWER_TIMEOUT_SECONDS = float(os.getenv("SUPPORTDESK_ANSWER_TIMEOUT", "120"))

# ── Upload limits ────────────────────────────────────────────
MAX_FILE_SIZE_MB = 50
ALLOWED_EXTENSIONS = {".pdf", ".pptx", ".txt", ".md"}
