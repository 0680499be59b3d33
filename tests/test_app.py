"""Tests for the user-facing helpers in app.py"""

from app import _failure_text
from core.errors import IndexUnavailableError, ValidationError


def test_failure_text_hides_store_internals():
    error = IndexUnavailableError("cannot write chunks: database disk image is malformed")
    text = _failure_text(error)
    assert text == "Knowledge base unavailable."
    assert "malformed" not in text


def test_failure_text_hides_os_errors():
    error = PermissionError(13, "Permission denied", "/tmp/gradio/3f9c/secret.pdf")
    text = _failure_text(error)
    assert text == "The file could not be read."
    assert "/tmp" not in text


def test_failure_text_keeps_ingestion_rejection_message():
    error = ValidationError("Unsupported file type '.exe'", user_message="Unsupported file type '.exe'")
    assert _failure_text(error) == "Unsupported file type '.exe'"


def test_failure_text_uses_generic_validation_message():
    assert _failure_text(ValidationError("chunk content must not be blank")) == "Invalid request."
