"""
RAG Orchestrator.

Responsibilities:
  - Validate the query, retrieve sources (vector or lexical), assemble the
    prompt and drive the inference engine
  - Attach sources and generation metadata to the response
  - Turn every failure into a safe, structured Response
  - One in-flight generation per conversation, in request order
  - Answer asynchronously through a bounded worker pool
  - Stream fragments under the same cancellation and timeout contract
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Generator, Iterator, Optional

from core.cancellation import CancellationToken
from core.errors import AssistantError, ErrorKind, OperationCancelledError
from core.models import (
    Query,
    Response,
    ResponseMetadata,
    RetrievalResult,
    RetrievedSource,
)
from core.prompt import PromptAssembler
from utils.config import ANSWER_TIMEOUT_SECONDS, ANSWER_WORKERS

logger = logging.getLogger(__name__)

DEFAULT_CONVERSATION = "default"

_QUIET_KINDS = (ErrorKind.CANCELLED, ErrorKind.TIMED_OUT)

# Interval between checks for cancelled requests still waiting their turn.
_WATCH_INTERVAL = 0.05


def _confidence(text: str, sources: list[RetrievedSource]) -> float:
    """Heuristic answer confidence: grounded answers score higher."""
    if not text.strip():
        return 0.0
    if not sources:
        return 0.4
    return round(min(1.0, 0.4 + 0.6 * max(s.score for s in sources)), 4)


def _stopped(token: CancellationToken) -> Response:
    """Failure response for a request dropped before it started."""
    try:
        token.raise_if_cancelled()
    except AssistantError as e:
        return Response.failure(e)
    return Response.failure(OperationCancelledError("request dropped"))


class _ConversationQueue:
    """
    FIFO dispatch per conversation.

    Each conversation runs one request at a time, in arrival order. Requests
    waiting for their turn hold no worker thread; a watcher thread drops the
    ones whose token is cancelled while they wait.

    A request has a ``token``, a ``start()`` that returns False when it no
    longer wants to run, and an ``abandon()`` called when it is dropped.
    Whoever started a request calls ``finish()`` when it is done.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._waiting: dict[str, deque] = {}
        self._watcher: Optional[threading.Thread] = None

    def push(self, conversation_id: str, request) -> None:
        with self._lock:
            waiting = self._waiting.get(conversation_id)
            if waiting is not None:
                waiting.append(request)
                if self._watcher is None:
                    self._watcher = threading.Thread(target=self._watch, name="rag-queue-watch", daemon=True)
                    self._watcher.start()
                return
            self._waiting[conversation_id] = deque()
        if not request.start():
            self.finish(conversation_id)

    def finish(self, conversation_id: str) -> None:
        """Start the next waiting request of the conversation, if any."""
        while True:
            with self._lock:
                waiting = self._waiting[conversation_id]
                if not waiting:
                    del self._waiting[conversation_id]
                    return
                request = waiting.popleft()
            if request.start():
                return

    def _watch(self) -> None:
        while True:
            dropped = []
            with self._lock:
                for waiting in self._waiting.values():
                    for request in [r for r in waiting if r.token.cancelled]:
                        waiting.remove(request)
                        dropped.append(request)
                idle = not any(self._waiting.values())
                if idle:
                    self._watcher = None
            for request in dropped:
                request.abandon()
            if idle:
                return
            time.sleep(_WATCH_INTERVAL)


class _Turn:
    """A request answered on the caller's own thread."""

    def __init__(self, token: CancellationToken):
        self.token = token
        self._event = threading.Event()
        self._admitted = False

    def start(self) -> bool:
        self._admitted = True
        self._event.set()
        return True

    def abandon(self) -> None:
        self._event.set()

    def wait(self) -> None:
        """Block until the conversation is free; raise if dropped meanwhile."""
        self._event.wait()
        if not self._admitted:
            self.token.raise_if_cancelled()


class _Submission:
    """A request answered on the worker pool."""

    def __init__(self, orchestrator: "RagOrchestrator", query: Query, conversation_id: str,
                 token: CancellationToken):
        self.orchestrator = orchestrator
        self.query = query
        self.conversation_id = conversation_id
        self.token = token
        self.future: "Future[Response]" = Future()

    def start(self) -> bool:
        if self.future.cancelled():
            return False
        try:
            worker = self.orchestrator._executor.submit(self.run)
        except RuntimeError:
            # Executor already shut down.
            self.future.cancel()
            return False
        worker.add_done_callback(self._dropped_by_executor)
        return True

    def run(self) -> None:
        try:
            if self.future.set_running_or_notify_cancel():
                self.future.set_result(self.orchestrator._run(self.query, self.token))
        finally:
            self.orchestrator._queue.finish(self.conversation_id)

    def _dropped_by_executor(self, worker: Future) -> None:
        if worker.cancelled():
            self.future.cancel()
            self.orchestrator._queue.finish(self.conversation_id)

    def abandon(self) -> None:
        if self.future.set_running_or_notify_cancel():
            self.future.set_result(_stopped(self.token))


class AnswerStream:
    """
    Iterable of generated text fragments for one query.

    The request joins its conversation's queue when iteration starts, so a
    stream that is never iterated holds nothing. ``response`` holds the final
    Response once iteration has finished. When nothing was generated before a
    failure, the failure's safe fallback text is yielded as the only
    fragment. Iterate once; ``close()`` (or leaving a ``with`` block) stops it.
    """

    def __init__(self, orchestrator: "RagOrchestrator", query: Query, conversation_id: str,
                 cancel_token: CancellationToken):
        self._orchestrator = orchestrator
        self._query = query
        self._conversation_id = conversation_id
        self._token = cancel_token
        self._iterator: Optional[Generator[str, None, None]] = None
        self.response: Optional[Response] = None

    def cancel(self) -> None:
        self._token.cancel()

    def close(self) -> None:
        self._token.cancel()
        if self._iterator is not None:
            self._iterator.close()

    def __enter__(self) -> "AnswerStream":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __iter__(self) -> Iterator[str]:
        if self._iterator is not None:
            raise RuntimeError("an AnswerStream can only be iterated once")
        self._iterator = self._run()
        return self._iterator

    def _run(self) -> Generator[str, None, None]:
        queue = self._orchestrator._queue
        yielded = False
        try:
            turn = _Turn(self._token)
            queue.push(self._conversation_id, turn)
            try:
                turn.wait()
            except AssistantError as e:
                self.response = Response.failure(e)
                yield self.response.text
                return
            pipeline = self._orchestrator._pipeline(self._query, self._token)
            try:
                while True:
                    try:
                        fragment = next(pipeline)
                    except StopIteration as stop:
                        self.response = stop.value
                        break
                    yielded = True
                    yield fragment
            finally:
                pipeline.close()
                queue.finish(self._conversation_id)
            if not self.response.success and not yielded:
                yield self.response.text
        finally:
            if self.response is None:
                # Consumer stopped iterating early.
                self.response = Response.failure(OperationCancelledError("stream closed by consumer"))


class RagOrchestrator:
    """Sequences retrieval → prompt assembly → generation for each query."""

    def __init__(
        self,
        engine,
        retriever=None,
        assembler: Optional[PromptAssembler] = None,
        max_workers: int = ANSWER_WORKERS,
        default_timeout: Optional[float] = ANSWER_TIMEOUT_SECONDS,
    ):
        self.engine = engine
        self.retriever = retriever
        self.assembler = assembler or PromptAssembler(token_budget=engine.context_window)
        self.default_timeout = default_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rag-answer")
        self._queue = _ConversationQueue()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _token(self, cancel_token: Optional[CancellationToken], timeout: Optional[float]) -> CancellationToken:
        limit = timeout if timeout is not None else self.default_timeout
        if cancel_token is not None:
            return cancel_token.linked(limit)
        return CancellationToken(timeout=limit)

    def answer(
        self,
        query: Query,
        conversation_id: str = DEFAULT_CONVERSATION,
        cancel_token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> Response:
        """Answer ``query`` synchronously. Never raises for pipeline failures."""
        token = self._token(cancel_token, timeout)
        turn = _Turn(token)
        self._queue.push(conversation_id, turn)
        try:
            turn.wait()
        except AssistantError as e:
            return Response.failure(e)
        try:
            return self._run(query, token)
        finally:
            self._queue.finish(conversation_id)

    def submit(
        self,
        query: Query,
        conversation_id: str = DEFAULT_CONVERSATION,
        cancel_token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> "Future[Response]":
        """
        Queue ``query`` and return a Future of its Response.

        The request reaches the worker pool only once the previous request of
        its conversation has finished.
        """
        submission = _Submission(self, query, conversation_id, self._token(cancel_token, timeout))
        self._queue.push(conversation_id, submission)
        return submission.future

    def stream(
        self,
        query: Query,
        conversation_id: str = DEFAULT_CONVERSATION,
        cancel_token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> AnswerStream:
        """Return an AnswerStream yielding fragments as they are generated."""
        return AnswerStream(self, query, conversation_id, self._token(cancel_token, timeout))

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, query: Query, token: CancellationToken) -> Response:
        pipeline = self._pipeline(query, token)
        while True:
            try:
                next(pipeline)
            except StopIteration as stop:
                return stop.value

    def _retrieve(self, query: Query, token: CancellationToken) -> RetrievalResult:
        if not query.config.enable_rag or self.retriever is None:
            return RetrievalResult()
        if query.config.max_retrieved_chunks == 0:
            return RetrievalResult()
        return self.retriever.retrieve(query.text, query.config.max_retrieved_chunks, token)

    def _pipeline(self, query: Query, token: CancellationToken) -> Generator[str, None, Response]:
        """Yield fragments, then return the final Response."""
        started = time.perf_counter()
        metadata = ResponseMetadata(
            model_name=self.engine.model_name,
            provider=self.engine.active_provider.value if self.engine.active_provider else None,
        )
        sources: list[RetrievedSource] = []
        try:
            query.validate()
            self.engine.ensure_ready()
            token.raise_if_cancelled()

            retrieval = self._retrieve(query, token)
            metadata.retrieval_mode = retrieval.mode

            # One token is reserved for the BOS marker added by tokenize().
            budget = min(self.assembler.token_budget,
                         self.engine.context_window - query.config.max_tokens - 1)
            prompt = self.assembler.assemble(
                query.text,
                query.history,
                retrieval.sources,
                budget=budget,
                token_counter=self.engine.count_tokens,
            )
            sources = prompt.sources
            metadata.used_rag = retrieval.used_vectors and bool(sources)
            token.raise_if_cancelled()

            prompt_tokens = self.engine.tokenize(prompt.text)
            fragments = []
            generated = self.engine.generate(prompt_tokens, query.config, token)
            try:
                for fragment in generated:
                    fragments.append(fragment)
                    yield fragment
            finally:
                close = getattr(generated, "close", None)
                if close is not None:
                    close()

            text = "".join(fragments).strip()
            metadata.token_count = self.engine.count_tokens(text) if text else 0
            metadata.generation_time = time.perf_counter() - started
            logger.info(
                "Answered in %.2fs (%d tokens, retrieval=%s, sources=%d)",
                metadata.generation_time, metadata.token_count,
                metadata.retrieval_mode.value, len(sources),
            )
            return Response(
                text=text,
                confidence=_confidence(text, sources),
                sources=sources,
                success=True,
                metadata=metadata,
            )
        except AssistantError as e:
            metadata.generation_time = time.perf_counter() - started
            if e.kind in _QUIET_KINDS:
                logger.info("Query stopped: %s", e.kind.value)
            else:
                logger.warning("Query failed (%s): %s", e.kind.value, e)
            return Response.failure(e, metadata, sources)
        except Exception:
            metadata.generation_time = time.perf_counter() - started
            logger.exception("Unexpected error while answering query")
            return Response.failure(AssistantError("unexpected failure"), metadata)
