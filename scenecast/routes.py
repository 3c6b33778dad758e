"""FastAPI API endpoints under /api.

Endpoint groups: health + settings, session/scene state, turn entry points
(initial scene, player action, diagnosis, reset) and the image cache.

Turn endpoints answer 202 as soon as the preconditions pass; the turn itself
runs as a background task and the browser polls /api/scene for progress.
"""

import logging

import httpx
from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from fastapi.responses import FileResponse, RedirectResponse
from pydantic import BaseModel

from scenecast import config as app_config
from scenecast.images import ImageCache, is_templated_url
from scenecast.models import Stage
from scenecast.pipeline import (
    AlreadyBusy,
    EngineNotReady,
    TurnPipeline,
    TurnRejected,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class ActionBody(BaseModel):
    action: str


class CheckConnectionBody(BaseModel):
    provider_url: str
    api_key: str = ""


def _pipeline(request: Request) -> TurnPipeline:
    return request.app.state.pipeline


def _rejected(e: TurnRejected) -> HTTPException:
    if isinstance(e, AlreadyBusy):
        return HTTPException(409, str(e))
    if isinstance(e, EngineNotReady):
        return HTTPException(503, str(e))
    return HTTPException(400, str(e))


async def _preflight(pipeline: TurnPipeline, stage: Stage) -> None:
    try:
        await pipeline.preflight(stage)
    except TurnRejected as e:
        raise _rejected(e)


async def _run_turn(turn) -> None:
    """Background wrapper: a request that lost the race is logged, not raised."""
    try:
        outcome = await turn()
    except TurnRejected as e:
        logger.warning("Turn rejected after preflight: %s", e)
        return
    logger.info("Turn finished stage=%s ok=%s", outcome.stage, outcome.ok)


# ── Health + settings ────────────────────────────────────


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.post("/check-connection")
async def check_connection(body: CheckConnectionBody):
    """Quick health check against an LLM provider URL."""
    url = f"{body.provider_url.rstrip('/')}/api/v1/model"
    headers: dict[str, str] = {}
    if body.api_key:
        headers["Authorization"] = f"Bearer {body.api_key}"
    try:
        async with httpx.AsyncClient(timeout=5) as client:
            resp = await client.get(url, headers=headers)
            resp.raise_for_status()
        return {"ok": True}
    except httpx.HTTPError:
        return {"ok": False}


@router.get("/settings")
async def get_settings(request: Request):
    """Get app settings (LLM connection, image cache, prompt overrides)."""
    return app_config.get_config(request.app.state.data_dir)


@router.patch("/settings")
async def update_settings(request: Request, body: dict):
    """Update app settings (partial merge). Takes effect on restart."""
    return app_config.update_config(request.app.state.data_dir, body)


# ── Session state ────────────────────────────────────────


@router.get("/session")
async def get_session(request: Request):
    """Snapshot of the session: current scene, history, synopses, stage."""
    return _pipeline(request).session.model_dump()


@router.get("/scene")
async def get_scene(request: Request):
    """Document currently on display (may be a provisional, still-streaming scene)."""
    board = request.app.state.board
    return {
        "html": board.html,
        "revision": board.revision,
        "provisional": board.provisional,
        "busy": _pipeline(request).session.is_busy,
    }


@router.get("/diagnosis")
async def get_diagnosis(request: Request):
    """Latest diagnosis document."""
    board = request.app.state.board
    if board.diagnosis_html is None:
        raise HTTPException(404, "No diagnosis yet")
    return {"html": board.diagnosis_html}


# ── Turns ────────────────────────────────────────────────


@router.post("/initial-scene", status_code=202)
async def start_initial_scene(request: Request, background: BackgroundTasks):
    """Generate the opening scene of a new game."""
    pipeline = _pipeline(request)
    await _preflight(pipeline, "initial_scene")
    background.add_task(_run_turn, pipeline.start_initial_scene)
    return {"ok": True}


@router.post("/action", status_code=202)
async def submit_action(request: Request, body: ActionBody, background: BackgroundTasks):
    """Submit a player action and run the summarize → scene turn."""
    action = body.action.strip()
    if not action:
        raise HTTPException(422, "Action must not be blank")
    pipeline = _pipeline(request)
    await _preflight(pipeline, "summarize_turn")
    background.add_task(_run_turn, lambda: pipeline.submit_player_action(action))
    return {"ok": True}


@router.post("/diagnosis", status_code=202)
async def request_diagnosis(request: Request, background: BackgroundTasks):
    """Analyse the player's recorded choices."""
    pipeline = _pipeline(request)
    await _preflight(pipeline, "diagnosis")
    background.add_task(_run_turn, pipeline.request_diagnosis)
    return {"ok": True}


@router.post("/reset")
async def reset(request: Request, force: bool = False):
    """Clear the game and the image cache. `force` also abandons an in-flight turn."""
    try:
        _pipeline(request).reset(force=force)
    except TurnRejected as e:
        raise _rejected(e)
    return {"ok": True}


# ── Images ───────────────────────────────────────────────


@router.get("/images")
async def get_image(request: Request, url: str):
    """Serve a cached image for a templated image URL.

    On a cache miss the browser is sent to the original URL instead.
    """
    images: ImageCache = request.app.state.images
    path = images.resolve(url)
    if path is not None:
        return FileResponse(path, media_type="image/jpeg")
    if not is_templated_url(url, images.endpoint):
        raise HTTPException(404, "Not a templated image URL")
    return RedirectResponse(url, status_code=307)
