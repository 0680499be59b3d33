"""
Error taxonomy shared by the RAG pipeline.

Every error carries a ``kind`` and a sanitized ``user_message``. The
orchestrator turns these into failure responses; the original exception text
only ever reaches the log.
"""

from enum import Enum


class ErrorKind(str, Enum):
    MODEL_UNAVAILABLE = "model_unavailable"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    NOT_INITIALIZED = "not_initialized"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    INDEX_UNAVAILABLE = "index_unavailable"
    VALIDATION = "validation_error"
    BUSY = "busy"
    INTERNAL = "internal"


# User-facing fallback text per kind. Shown in place of an answer.
FALLBACK_TEXT = {
    ErrorKind.MODEL_UNAVAILABLE: (
        "The assistant's language model is not available. "
        "Please check that the model file is installed and restart the assistant."
    ),
    ErrorKind.PROVIDER_UNAVAILABLE: "The requested hardware accelerator is not available.",
    ErrorKind.NOT_INITIALIZED: "The assistant is still starting up. Please try again in a moment.",
    ErrorKind.CANCELLED: "The request was cancelled.",
    ErrorKind.TIMED_OUT: "The request took too long and was stopped. Please try again.",
    ErrorKind.INDEX_UNAVAILABLE: "The knowledge base is not available right now.",
    ErrorKind.VALIDATION: "The request could not be processed. Please check your question and settings.",
    ErrorKind.BUSY: "The assistant is busy with another request. Please try again shortly.",
    ErrorKind.INTERNAL: "An error occurred while generating the response.",
}


class AssistantError(Exception):
    """Base class for all pipeline errors."""

    kind = ErrorKind.INTERNAL
    user_message = "An internal error occurred."

    def __init__(self, message: str = "", *, user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message

    @property
    def fallback_text(self) -> str:
        return FALLBACK_TEXT[self.kind]


class ModelUnavailableError(AssistantError):
    """Model artifact is missing or corrupt. Fatal to the engine."""

    kind = ErrorKind.MODEL_UNAVAILABLE
    user_message = "Model unavailable."


class ProviderUnavailableError(AssistantError):
    """Hardware execution provider could not be used. Recovered via CPU fallback."""

    kind = ErrorKind.PROVIDER_UNAVAILABLE
    user_message = "Execution provider unavailable."


class NotInitializedError(AssistantError):
    kind = ErrorKind.NOT_INITIALIZED
    user_message = "Service not initialized."


class OperationCancelledError(AssistantError):
    kind = ErrorKind.CANCELLED
    user_message = "Operation cancelled."


class OperationTimedOutError(OperationCancelledError):
    """Deadline expired. Subclass of cancellation so cleanup paths are shared."""

    kind = ErrorKind.TIMED_OUT
    user_message = "Operation timed out."


class IndexUnavailableError(AssistantError):
    """Knowledge store unreachable. Degrades retrieval only."""

    kind = ErrorKind.INDEX_UNAVAILABLE
    user_message = "Knowledge base unavailable."


class ValidationError(AssistantError, ValueError):
    kind = ErrorKind.VALIDATION
    user_message = "Invalid request."


class PromptTooLongError(ValidationError):
    user_message = "The question is too long for the model's context window."


class EngineBusyError(AssistantError):
    kind = ErrorKind.BUSY
    user_message = "Engine busy."
