"""
Shared data models for the retrieval, prompt and generation modules.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

import numpy as np

from core.errors import AssistantError, ErrorKind, FALLBACK_TEXT, ValidationError
from utils.config import (
    DEFAULT_MAX_RETRIEVED_CHUNKS,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
)

ExtraValue = Union[str, int, float, bool]


@dataclass(frozen=True)
class SourceMetadata:
    """Where a piece of knowledge came from."""
    title: str
    source: str
    url: Optional[str] = None
    extra: dict[str, ExtraValue] = field(default_factory=dict)

    def __post_init__(self):
        if not self.title or not self.title.strip():
            raise ValidationError("metadata title must not be blank")
        if not self.source or not self.source.strip():
            raise ValidationError("metadata source must not be blank")
        for key, value in self.extra.items():
            if not isinstance(key, str) or not isinstance(value, (str, int, float, bool)):
                raise ValidationError(f"unsupported metadata extra entry: {key!r}")

    def to_json(self) -> str:
        """Canonical JSON (sorted keys) so equal metadata hashes equally."""
        return json.dumps(
            {"title": self.title, "source": self.source, "url": self.url, "extra": self.extra},
            sort_keys=True,
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, raw: Optional[str], fallback_title: str = "Untitled") -> "SourceMetadata":
        data = json.loads(raw) if raw else {}
        # Rows written before the closed schema held a flat map.
        extra = data.get("extra")
        if extra is None:
            extra = {
                k: v for k, v in data.items()
                if k not in ("title", "source", "url") and isinstance(v, (str, int, float, bool))
            }
        return cls(
            title=data.get("title") or fallback_title,
            source=data.get("source") or "unknown",
            url=data.get("url"),
            extra=extra,
        )


@dataclass(frozen=True)
class Document:
    """Raw source text. Immutable once ingested."""
    content: str
    metadata: SourceMetadata

    @property
    def url(self) -> Optional[str]:
        return self.metadata.url

    @property
    def document_id(self) -> str:
        raw = f"{self.metadata.url or ''}::{self.content}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


@dataclass
class Chunk:
    """Minimal indexed unit of retrievable knowledge text."""
    id: str
    content: str
    metadata: SourceMetadata
    document_id: Optional[str] = None
    token_count: int = 0
    created_at: str = ""
    updated_at: Optional[str] = None
    seq: int = 0
    embedding: Optional[np.ndarray] = None

    @property
    def title(self) -> str:
        return self.metadata.title


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str


@dataclass
class QueryConfig:
    """Generation settings supplied with every query."""
    max_tokens: int = DEFAULT_MAX_TOKENS
    temperature: float = DEFAULT_TEMPERATURE
    enable_rag: bool = True
    max_retrieved_chunks: int = DEFAULT_MAX_RETRIEVED_CHUNKS

    def validate(self) -> None:
        if isinstance(self.max_tokens, bool) or not isinstance(self.max_tokens, int) or self.max_tokens < 0:
            raise ValidationError(f"max_tokens must be a non-negative integer, got {self.max_tokens!r}")
        if isinstance(self.temperature, bool) or not isinstance(self.temperature, (int, float)):
            raise ValidationError(f"temperature must be a number, got {self.temperature!r}")
        if not 0.0 <= self.temperature <= 1.0:
            raise ValidationError(f"temperature must be within [0, 1], got {self.temperature}")
        if (isinstance(self.max_retrieved_chunks, bool) or not isinstance(self.max_retrieved_chunks, int)
                or self.max_retrieved_chunks < 0):
            raise ValidationError(
                f"max_retrieved_chunks must be a non-negative integer, got {self.max_retrieved_chunks!r}"
            )


@dataclass
class Query:
    text: str
    history: list[ChatMessage] = field(default_factory=list)
    config: QueryConfig = field(default_factory=QueryConfig)

    def validate(self) -> None:
        if not isinstance(self.text, str) or not self.text.strip():
            raise ValidationError("query text must not be blank")
        self.config.validate()


@dataclass
class RetrievedSource:
    """A ranked chunk returned for one query. Never persisted."""
    chunk: Chunk
    score: float
    excerpt: str

    @property
    def title(self) -> str:
        return self.chunk.metadata.title

    @property
    def url(self) -> Optional[str]:
        return self.chunk.metadata.url


class RetrievalMode(str, Enum):
    VECTOR = "vector"
    LEXICAL = "lexical"
    NONE = "none"


@dataclass
class RetrievalResult:
    sources: list[RetrievedSource] = field(default_factory=list)
    mode: RetrievalMode = RetrievalMode.NONE

    @property
    def used_vectors(self) -> bool:
        return self.mode is RetrievalMode.VECTOR and bool(self.sources)


@dataclass
class ResponseMetadata:
    generation_time: float = 0.0
    token_count: int = 0
    model_name: Optional[str] = None
    used_rag: bool = False
    provider: Optional[str] = None
    retrieval_mode: RetrievalMode = RetrievalMode.NONE


@dataclass
class Response:
    """Complete answer to one query."""
    text: str
    confidence: float = 0.0
    sources: list[RetrievedSource] = field(default_factory=list)
    success: bool = True
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)

    @classmethod
    def failure(cls, error: AssistantError, metadata: Optional[ResponseMetadata] = None,
                sources: Optional[list[RetrievedSource]] = None) -> "Response":
        """Build a failure response that carries only sanitized text."""
        return cls(
            text=FALLBACK_TEXT[error.kind],
            confidence=0.0,
            sources=sources or [],
            success=False,
            error_message=error.user_message,
            error_kind=error.kind,
            metadata=metadata or ResponseMetadata(),
        )
