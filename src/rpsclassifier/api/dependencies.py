"""Helpers shared by the JSON and HTML routes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import HTTPException, Request, UploadFile, status

from rpsclassifier.errors import PREDICTION_MESSAGE, ClassifierError
from rpsclassifier.state import SelectedFile

if TYPE_CHECKING:
    from rpsclassifier.config import Settings
    from rpsclassifier.ml.classifier import ImageClassifier
    from rpsclassifier.ml.inference import InferencePool
    from rpsclassifier.previews import PreviewStore
    from rpsclassifier.state import ClassifierSession, SessionStore

logger = logging.getLogger(__name__)


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def get_classifier(request: Request) -> ImageClassifier:
    classifier: ImageClassifier = request.app.state.classifier
    return classifier


def get_session_store(request: Request) -> SessionStore:
    store: SessionStore = request.app.state.session_store
    return store


def get_preview_store(request: Request) -> PreviewStore:
    previews: PreviewStore = request.app.state.preview_store
    return previews


async def read_upload(file: UploadFile, settings: Settings) -> SelectedFile:
    """Read an upload, enforcing the image content type and the size limit."""
    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Expected an image upload, got '{content_type or 'unknown'}'",
        )

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    return SelectedFile(filename=file.filename or "upload", content_type=content_type, data=data)


async def predict_for_session(
    session: ClassifierSession,
    classifier: ImageClassifier,
    pool: InferencePool,
) -> None:
    """Run one prediction for a session and record its outcome.

    Raises:
        PredictionInProgressError: If the session is already predicting.
    """
    selected = session.file
    sequence = session.begin_prediction()
    if sequence is None or selected is None:
        return

    try:
        scores = await pool.classify(classifier, selected.data)
    except ClassifierError as exc:
        logger.warning("Prediction failed for session %s: %s", session.session_id, exc)
        session.fail(sequence, exc.user_message)
    except Exception:
        session.fail(sequence, PREDICTION_MESSAGE)
        raise
    else:
        session.complete(sequence, scores)
