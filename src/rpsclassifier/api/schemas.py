"""Pydantic request/response schemas for the rpsclassifier API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from rpsclassifier.state import ClassifierSession


class SessionResponse(BaseModel):
    """Selection/result state of one session."""

    session_id: str
    phase: str = Field(description="'idle', 'file_selected', 'predicting', 'resulted', or 'error'")
    can_predict: bool
    filename: str | None = None
    preview_url: str | None = None
    message: str | None = Field(default=None, description="User-facing message, if any")
    scores: list[float] | None = Field(default=None, description="Raw model output, in model order")
    result: str | None = Field(default=None, description="Text rendering of the message or scores")

    @classmethod
    def from_session(cls, session: ClassifierSession) -> SessionResponse:
        return cls(
            session_id=session.session_id,
            phase=session.phase.value,
            can_predict=session.can_predict,
            filename=session.file.filename if session.file is not None else None,
            preview_url=session.preview.url if session.preview is not None else None,
            message=session.message,
            scores=session.scores,
            result=session.result_text,
        )


class ClassifyImageResponse(BaseModel):
    """Response for the stateless classification endpoint."""

    model: str
    scores: list[float]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    device: str
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    active_sessions: int
    active_previews: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
