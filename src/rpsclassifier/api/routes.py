"""API route definitions."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response, UploadFile, status

from rpsclassifier.api.dependencies import (
    get_classifier,
    get_inference_pool,
    get_preview_store,
    get_session_store,
    get_settings,
    predict_for_session,
    read_upload,
)
from rpsclassifier.api.middleware import verify_api_key
from rpsclassifier.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    SessionResponse,
)
from rpsclassifier.config import Settings
from rpsclassifier.errors import (
    ClassifierBusyError,
    DecodeError,
    ModelLoadError,
    PredictionError,
    PredictionInProgressError,
)
from rpsclassifier.ml.classifier import ImageClassifier
from rpsclassifier.ml.inference import InferencePool
from rpsclassifier.previews import PreviewStore
from rpsclassifier.state import ClassifierSession, SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

SettingsDep = Annotated[Settings, Depends(get_settings)]
PoolDep = Annotated[InferencePool, Depends(get_inference_pool)]
ClassifierDep = Annotated[ImageClassifier, Depends(get_classifier)]
SessionsDep = Annotated[SessionStore, Depends(get_session_store)]
PreviewsDep = Annotated[PreviewStore, Depends(get_preview_store)]


def _lookup_session(store: SessionStore, session_id: str) -> ClassifierSession:
    try:
        return store.get(session_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown session: {session_id}",
        ) from None


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image and return raw scores",
)
async def classify_image(
    file: UploadFile,
    settings: SettingsDep,
    classifier: ClassifierDep,
    pool: PoolDep,
) -> ClassifyImageResponse:
    """Run an uploaded image through the classifier without creating a session."""
    selected = await read_upload(file, settings)
    try:
        scores = await pool.classify(classifier, selected.data)
    except DecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.user_message) from exc
    except PredictionError as exc:
        logger.warning("Prediction failed for %s: %s", selected.filename, exc)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=exc.user_message) from exc
    except ModelLoadError as exc:
        logger.error("Model load failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=exc.user_message) from exc
    except ClassifierBusyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue full, try again later",
        ) from exc
    return ClassifyImageResponse(model=classifier.backend.model_name, scores=scores)


@router.post(
    "/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a session",
)
async def create_session(store: SessionsDep) -> SessionResponse:
    return SessionResponse.from_session(store.create())


@router.get(
    "/sessions/{session_id}",
    response_model=SessionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Get session state",
)
async def get_session(session_id: str, store: SessionsDep) -> SessionResponse:
    return SessionResponse.from_session(_lookup_session(store, session_id))


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="End a session and release its preview",
)
async def delete_session(session_id: str, store: SessionsDep) -> Response:
    if not store.discard(session_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown session: {session_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put(
    "/sessions/{session_id}/file",
    response_model=SessionResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
    },
    summary="Select the image to classify",
)
async def select_file(
    session_id: str,
    file: UploadFile,
    settings: SettingsDep,
    store: SessionsDep,
    previews: PreviewsDep,
) -> SessionResponse:
    """Replace the session's image. A prediction still running for the old image is ignored."""
    session = _lookup_session(store, session_id)
    selected = await read_upload(file, settings)
    session.select_file(selected, previews.create(selected.data, selected.content_type))
    return SessionResponse.from_session(session)


@router.post(
    "/sessions/{session_id}/predict",
    response_model=SessionResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
    summary="Classify the selected image",
)
async def predict(
    session_id: str,
    store: SessionsDep,
    classifier: ClassifierDep,
    pool: PoolDep,
) -> SessionResponse:
    """Run the classifier and return the session state once it settles.

    Failures are reported in the session's message, not as HTTP errors.
    """
    session = _lookup_session(store, session_id)
    try:
        await predict_for_session(session, classifier, pool)
    except PredictionInProgressError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A prediction is already running") from exc
    return SessionResponse.from_session(session)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(
    settings: SettingsDep,
    pool: PoolDep,
    classifier: ClassifierDep,
    store: SessionsDep,
    previews: PreviewsDep,
) -> HealthResponse:
    """Return service health status."""
    backend = classifier.backend
    loaded = getattr(backend, "get_loaded_models", None)
    stats = pool.stats
    return HealthResponse(
        status="ok",
        device=settings.device,
        gpu=settings.device == "cuda",
        models_loaded=loaded() if loaded is not None else [],
        concurrent_requests=stats.running,
        queue_depth=stats.waiting,
        active_sessions=store.active_count,
        active_previews=previews.active_count,
    )
