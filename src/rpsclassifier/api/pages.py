"""Server-rendered single page: file picker, preview, predict button, result."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from rpsclassifier.api.dependencies import (
    get_classifier,
    get_inference_pool,
    get_preview_store,
    get_session_store,
    get_settings,
    predict_for_session,
    read_upload,
)
from rpsclassifier.config import Settings
from rpsclassifier.errors import PredictionInProgressError
from rpsclassifier.ml.classifier import ImageClassifier
from rpsclassifier.ml.inference import InferencePool
from rpsclassifier.previews import PreviewStore
from rpsclassifier.state import ClassifierSession, Phase, SessionStore

logger = logging.getLogger(__name__)

SESSION_COOKIE = "rpsclassifier_session"

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parent.parent / "templates"))

router = APIRouter(include_in_schema=False)

SessionCookie = Annotated[str | None, Cookie(alias=SESSION_COOKIE)]


def _redirect_home(session: ClassifierSession) -> RedirectResponse:
    response = RedirectResponse(url="/", status_code=status.HTTP_303_SEE_OTHER)
    _set_session_cookie(response, session)
    return response


def _set_session_cookie(response: Response, session: ClassifierSession) -> None:
    response.set_cookie(SESSION_COOKIE, session.session_id, httponly=True, samesite="lax")


@router.get("/", response_class=HTMLResponse)
async def index(
    request: Request,
    store: Annotated[SessionStore, Depends(get_session_store)],
    session_id: SessionCookie = None,
) -> HTMLResponse:
    session = store.get_or_create(session_id)
    response = templates.TemplateResponse(
        request,
        "index.html",
        {
            "session": session,
            "predicting": session.phase is Phase.PREDICTING,
        },
    )
    _set_session_cookie(response, session)
    return response


@router.post("/select")
async def select(
    file: UploadFile,
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[SessionStore, Depends(get_session_store)],
    previews: Annotated[PreviewStore, Depends(get_preview_store)],
    session_id: SessionCookie = None,
) -> RedirectResponse:
    session = store.get_or_create(session_id)
    selected = await read_upload(file, settings)
    session.select_file(selected, previews.create(selected.data, selected.content_type))
    return _redirect_home(session)


@router.post("/predict")
async def predict(
    store: Annotated[SessionStore, Depends(get_session_store)],
    classifier: Annotated[ImageClassifier, Depends(get_classifier)],
    pool: Annotated[InferencePool, Depends(get_inference_pool)],
    session_id: SessionCookie = None,
) -> RedirectResponse:
    session = store.get_or_create(session_id)
    try:
        await predict_for_session(session, classifier, pool)
    except PredictionInProgressError:
        logger.debug("Ignoring repeated predict for session %s", session.session_id)
    return _redirect_home(session)


@router.post("/reset")
async def reset(
    store: Annotated[SessionStore, Depends(get_session_store)],
    session_id: SessionCookie = None,
) -> RedirectResponse:
    session = store.get_or_create(session_id)
    session.teardown()
    return _redirect_home(session)


@router.get("/previews/{handle_id}")
async def preview(
    handle_id: str,
    previews: Annotated[PreviewStore, Depends(get_preview_store)],
) -> Response:
    try:
        blob = previews.get(handle_id)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Preview released") from None
    return Response(content=blob.data, media_type=blob.content_type, headers={"Cache-Control": "no-store"})
