"""
Inference Engine — local LLM session via llama.cpp.

Responsibilities:
  - Own the native model session (load, re-load, dispose)
  - Select the execution provider: GPU offload when requested and available,
    otherwise fall back to CPU and record which one loaded
  - Tokenize prompts and stream generated text fragments
  - Greedy decoding at temperature 0 for reproducible output
  - Stop promptly on cancellation or timeout, leaving the session ready
  - Limit the number of simultaneous generations per session

State machine:
  UNINITIALIZED → INITIALIZING → READY ⇄ GENERATING → DISPOSED
  A missing/corrupt model or a failing CPU load leaves the engine NOT_READY.
"""

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

import llama_cpp
from llama_cpp import Llama

from core.cancellation import CancellationToken
from core.errors import (
    EngineBusyError,
    ModelUnavailableError,
    NotInitializedError,
    PromptTooLongError,
    ProviderUnavailableError,
)
from core.models import QueryConfig
from utils.config import (
    ACCELERATION,
    BUSY_POLICY,
    CONTEXT_WINDOW,
    LLM_SEED,
    LLM_STOP_SEQUENCES,
    LLM_THREADS,
    LLM_TOP_K,
    LLM_TOP_P,
    MAX_CONCURRENT_GENERATIONS,
    MODEL_PATH,
)

logger = logging.getLogger(__name__)

_GGUF_MAGIC = b"GGUF"

# Interval between cancellation checks while waiting for a generation slot.
_SLOT_POLL_SECONDS = 0.05

_ACCELERATIONS = ("auto", "gpu", "cpu")


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    GENERATING = "generating"
    NOT_READY = "not_ready"
    DISPOSED = "disposed"


class Provider(str, Enum):
    GPU = "gpu"
    CPU = "cpu"


def _gpu_offload_supported() -> bool:
    """Whether this llama.cpp build can offload layers to a GPU."""
    return bool(llama_cpp.llama_supports_gpu_offload())


def _check_model_file(model_path: str) -> None:
    path = Path(model_path)
    if not path.is_file():
        raise ModelUnavailableError(f"model file not found: {model_path}")
    with path.open("rb") as fh:
        magic = fh.read(4)
    if magic != _GGUF_MAGIC:
        raise ModelUnavailableError(f"model file is not a GGUF model: {model_path}")


class InferenceEngine:
    """
    Explicitly owned handle to one local model session.

    Create it, call ``initialize()``, and ``dispose()`` it when done. The
    session is never shared implicitly; pass the engine to whoever needs it.
    """

    def __init__(
        self,
        model_path: str = MODEL_PATH,
        acceleration: str = ACCELERATION,
        n_ctx: int = CONTEXT_WINDOW,
        n_threads: int = LLM_THREADS,
        max_concurrent: int = MAX_CONCURRENT_GENERATIONS,
        busy_policy: str = BUSY_POLICY,
        seed: int = LLM_SEED,
    ):
        if acceleration not in _ACCELERATIONS:
            raise ValueError(f"acceleration must be one of {_ACCELERATIONS}, got {acceleration!r}")
        if busy_policy not in ("queue", "reject"):
            raise ValueError(f"busy_policy must be 'queue' or 'reject', got {busy_policy!r}")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.model_path = model_path
        self.acceleration = acceleration
        self.n_ctx = n_ctx
        self.n_threads = n_threads
        self.max_concurrent = max_concurrent
        self.busy_policy = busy_policy
        self.seed = seed

        self._llm: Optional[Llama] = None
        self._state = EngineState.UNINITIALIZED
        self._active_provider: Optional[Provider] = None
        self._last_error: Optional[ModelUnavailableError] = None
        self._lifecycle = threading.RLock()
        # Session dropped by dispose() while generations still hold it.
        self._retired: Optional[Llama] = None
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._active = 0

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state in (EngineState.READY, EngineState.GENERATING)

    @property
    def active_provider(self) -> Optional[Provider]:
        return self._active_provider

    @property
    def last_error(self) -> Optional[ModelUnavailableError]:
        return self._last_error

    @property
    def model_name(self) -> str:
        return Path(self.model_path).stem

    @property
    def context_window(self) -> int:
        return self.n_ctx

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _load(self, provider: Provider) -> Llama:
        return Llama(
            model_path=self.model_path,
            n_ctx=self.n_ctx,
            n_threads=self.n_threads,
            n_gpu_layers=-1 if provider is Provider.GPU else 0,
            seed=self.seed,
            verbose=False,
        )

    def _load_gpu(self) -> Llama:
        if not _gpu_offload_supported():
            raise ProviderUnavailableError("llama.cpp build has no GPU offload support")
        try:
            return self._load(Provider.GPU)
        except (ValueError, RuntimeError, OSError) as e:
            raise ProviderUnavailableError(f"GPU provider failed to load the model: {e}") from e

    def _release_session(self) -> None:
        llm, self._llm = self._llm, None
        self._active_provider = None
        self._close(llm)

    @staticmethod
    def _close(llm: Optional[Llama]) -> None:
        if llm is not None:
            close = getattr(llm, "close", None)
            if close is not None:
                close()
            logger.info("Released model session")

    def initialize(self, model_path: Optional[str] = None, acceleration: Optional[str] = None) -> bool:
        """
        Load the model, preferring the requested hardware provider.

        A provider-unavailable condition falls back to CPU. A missing or
        corrupt model, or a CPU load failure, leaves the engine NOT_READY with
        ``last_error`` set. Never raises for those conditions.

        Returns:
            True when the engine is ready.

        Raises:
            NotInitializedError – the engine was disposed
            EngineBusyError     – generations are still running
        """
        with self._lifecycle:
            if self._state is EngineState.DISPOSED:
                raise NotInitializedError("engine has been disposed")
            if self._active:
                raise EngineBusyError("cannot re-initialize while generations are running")

            if model_path is not None:
                self.model_path = model_path
            if acceleration is not None:
                if acceleration not in _ACCELERATIONS:
                    raise ValueError(f"acceleration must be one of {_ACCELERATIONS}, got {acceleration!r}")
                self.acceleration = acceleration

            self._release_session()
            self._state = EngineState.INITIALIZING
            self._last_error = None
            logger.info("Initializing inference engine (model=%s, acceleration=%s)",
                        self.model_path, self.acceleration)

            try:
                _check_model_file(self.model_path)
                llm = None
                if self.acceleration in ("gpu", "auto"):
                    try:
                        llm = self._load_gpu()
                        self._active_provider = Provider.GPU
                    except ProviderUnavailableError as e:
                        logger.info("GPU provider unavailable, using CPU: %s", e)
                if llm is None:
                    try:
                        llm = self._load(Provider.CPU)
                    except (ValueError, RuntimeError, OSError) as e:
                        raise ModelUnavailableError(f"CPU provider failed to load the model: {e}") from e
                    self._active_provider = Provider.CPU
            except ModelUnavailableError as e:
                logger.error("Inference engine not ready: %s", e)
                self._last_error = e
                self._active_provider = None
                self._state = EngineState.NOT_READY
                return False

            self._llm = llm
            self._state = EngineState.READY
            logger.info("Inference engine ready (model=%s, provider=%s)",
                        self.model_name, self._active_provider.value)
            return True

    def dispose(self) -> None:
        """
        Release the session. Terminal: the engine cannot be used again.

        Running generations stop at their next fragment with
        NotInitializedError; the native session is closed once the last of
        them has unwound.
        """
        with self._lifecycle:
            if self._state is EngineState.DISPOSED:
                return
            self._state = EngineState.DISPOSED
            if self._active:
                self._retired, self._llm = self._llm, None
                self._active_provider = None
                logger.info("Model session will be released after %d running generation(s)", self._active)
            else:
                self._release_session()
            logger.info("Inference engine disposed")

    def __enter__(self) -> "InferenceEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.dispose()

    # ------------------------------------------------------------------
    # Tokenization
    # ------------------------------------------------------------------

    def ensure_ready(self) -> None:
        """Raise the taxonomy error that explains why generation is impossible."""
        self._require_session()

    def _require_session(self) -> Llama:
        state = self._state
        llm = self._llm
        if state is EngineState.NOT_READY:
            raise ModelUnavailableError(str(self._last_error) if self._last_error else "model unavailable")
        if state is EngineState.DISPOSED:
            raise NotInitializedError("engine has been disposed")
        if llm is None or state not in (EngineState.READY, EngineState.GENERATING):
            raise NotInitializedError("engine is not initialized")
        return llm

    def tokenize(self, text: str) -> list[int]:
        return list(self._require_session().tokenize(text.encode("utf-8"), add_bos=True, special=True))

    def count_tokens(self, text: str) -> int:
        return len(self._require_session().tokenize(text.encode("utf-8"), add_bos=False, special=True))

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def generate(
        self,
        prompt_tokens: list[int],
        config: QueryConfig,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        """
        Stream generated text fragments for ``prompt_tokens``.

        Readiness and arguments are checked immediately; the returned iterator
        is lazy, finite and single-use. ``max_tokens == 0`` yields nothing.

        Raises (immediately):
            ModelUnavailableError, NotInitializedError, ValidationError,
            PromptTooLongError
        Raises (while iterating):
            EngineBusyError, OperationCancelledError, OperationTimedOutError,
            NotInitializedError (disposed mid-stream)
        """
        config.validate()
        llm = self._require_session()
        if config.max_tokens == 0:
            return iter(())
        if len(prompt_tokens) + config.max_tokens > self.n_ctx:
            raise PromptTooLongError(
                f"{len(prompt_tokens)} prompt tokens + {config.max_tokens} new tokens "
                f"exceed the context window of {self.n_ctx}"
            )
        return self._stream(llm, list(prompt_tokens), config, cancel_token or CancellationToken())

    def _acquire_slot(self, cancel_token: CancellationToken) -> None:
        if self.busy_policy == "reject":
            if not self._slots.acquire(blocking=False):
                raise EngineBusyError("maximum number of concurrent generations reached")
            return
        while not self._slots.acquire(timeout=_SLOT_POLL_SECONDS):
            cancel_token.raise_if_cancelled()

    def _begin(self, llm: Llama) -> None:
        with self._lifecycle:
            # The session may have been replaced or disposed since generate().
            if self._require_session() is not llm:
                raise NotInitializedError("model session was re-initialized")
            self._active += 1
            self._state = EngineState.GENERATING

    def _end(self) -> None:
        with self._lifecycle:
            self._active -= 1
            if self._active:
                return
            if self._state is EngineState.GENERATING:
                self._state = EngineState.READY
            retired, self._retired = self._retired, None
            self._close(retired)

    def _stream(
        self,
        llm: Llama,
        prompt_tokens: list[int],
        config: QueryConfig,
        cancel_token: CancellationToken,
    ) -> Iterator[str]:
        self._acquire_slot(cancel_token)
        try:
            cancel_token.raise_if_cancelled()
            self._begin(llm)
            try:
                greedy = config.temperature == 0
                completion = llm.create_completion(
                    prompt=prompt_tokens,
                    max_tokens=config.max_tokens,
                    temperature=float(config.temperature),
                    top_p=1.0 if greedy else LLM_TOP_P,
                    top_k=1 if greedy else LLM_TOP_K,
                    seed=self.seed,
                    stop=LLM_STOP_SEQUENCES,
                    stream=True,
                )
                try:
                    for output in completion:
                        cancel_token.raise_if_cancelled()
                        if self._llm is not llm:
                            raise NotInitializedError("engine was disposed during generation")
                        text = output["choices"][0]["text"]
                        if text:
                            yield text
                finally:
                    # Stops the native decode loop and frees its buffers.
                    completion.close()
            finally:
                self._end()
        finally:
            self._slots.release()
