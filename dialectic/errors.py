"""
Dialectic Core — Error Taxonomy

Lower layers raise these; three boundaries translate them:
  - the Contribution Executor turns job-level errors into a failed job,
  - the worker turns anything escaping a job handler into a failed job,
  - the dispatch entry point turns client-facing errors into
    {code, message, details} responses with the matching status.

Client-facing (carry an HTTP-ish status):
    ValidationError 400, UnauthenticatedError 401, ForbiddenError 403,
    NotFoundError 404, PersistenceError 500

Job-level (never reach a client directly; recorded in error_details):
    ModelResponseValidationError, ModelCallError, ModelTimeoutError,
    ContextWindowError, PromptRenderError
"""

from __future__ import annotations

from typing import Any


class DialecticError(Exception):
    """Base exception. `code` is a stable machine-readable identifier."""

    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str, code: str | None = None,
                 details: Any = None, status: int | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status:
            self.status = status
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            d["details"] = self.details
        return d


# ─── Client-facing ───────────────────────────────────────────────

class ValidationError(DialecticError):
    code = "INVALID_PAYLOAD"
    status = 400


class UnauthenticatedError(DialecticError):
    code = "UNAUTHENTICATED"
    status = 401


class ForbiddenError(DialecticError):
    code = "FORBIDDEN"
    status = 403


class NotFoundError(DialecticError):
    code = "NOT_FOUND"
    status = 404


class PersistenceError(DialecticError):
    """A storage or database write failed. Always logged with the cause."""
    code = "PERSISTENCE_ERROR"
    status = 500


# ─── Prompt resolution ───────────────────────────────────────────

class PromptResolutionError(ValidationError):
    """The tier that applied could not produce a prompt. No fall-through."""


class DirectPromptNotFoundError(PromptResolutionError):
    code = "PROMPT_NOT_FOUND"


class OverlayResolutionError(PromptResolutionError):
    code = "OVERLAY_NOT_FOUND"


class DefaultPromptNotFoundError(PromptResolutionError):
    code = "DEFAULT_PROMPT_NOT_FOUND"


class PromptRenderError(DialecticError):
    code = "PROMPT_RENDER_ERROR"
    status = 400


# ─── Scheduling ──────────────────────────────────────────────────

class InvalidTransitionError(DialecticError):
    """A status write that is not an edge of the job transition graph."""
    code = "INVALID_TRANSITION"
    status = 409


# ─── Job-level (model call) ──────────────────────────────────────

class ModelCallError(DialecticError):
    code = "MODEL_CALL_FAILED"
    status = 502


class ModelTimeoutError(ModelCallError):
    code = "MODEL_TIMEOUT"
    status = 504


class ModelResponseValidationError(DialecticError):
    """The model answered, but not in the shape the step asked for."""
    code = "RESPONSE_VALIDATION_FAILED"
    status = 422


class ContextWindowError(DialecticError):
    """The prompt alone does not fit the model's context window."""
    code = "CONTEXT_WINDOW_EXCEEDED"
    status = 422


def error_details(exc: BaseException) -> dict[str, Any]:
    """Shape any exception as a job's error_details record."""
    if isinstance(exc, DialecticError):
        return exc.to_dict()
    return {"code": "INTERNAL_ERROR", "message": f"{type(exc).__name__}: {exc}"}
