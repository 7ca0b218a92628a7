"""Creation session endpoints."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException

from ..models import schemas
from ..services.creation_session import CreationSessionController, SessionState
from ..services.errors import BackendSyncFailure, SessionTransitionError
from ..services.session_registry import registry

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _lookup(session_id: str) -> CreationSessionController:
    controller = registry.get(session_id)
    if controller is None:
        raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
    return controller


def _status(controller: CreationSessionController) -> schemas.SessionStatusResponse:
    return schemas.SessionStatusResponse(
        session_id=controller.session_id,
        state=controller.state.value,
        avatar=controller.avatar,
        error=controller.error,
        display_url=controller.display_url(),
        quality_score=controller.quality_score(),
        history=[t.target.value for t in controller.history],
    )


@router.post("/", response_model=schemas.SessionResponse)
async def create_session(payload: schemas.SessionCreateRequest) -> schemas.SessionResponse:
    """Open a session and start loading the embedded creation surface.

    With ``resume`` set, a previously persisted avatar completes the session
    right away and the surface is never loaded.
    """

    controller = registry.create(
        access_token=payload.access_token,
        gender=payload.gender,
        platform=payload.platform,
    )
    if not (payload.resume and await controller.resume()):
        await controller.start()
    return schemas.SessionResponse(
        session_id=controller.session_id,
        state=controller.state.value,
        creator_url=controller.creator_url,
    )


@router.get("/{session_id}", response_model=schemas.SessionStatusResponse)
async def get_session_status(session_id: str) -> schemas.SessionStatusResponse:
    """Return the current status for the requested session."""

    return _status(_lookup(session_id))


@router.post("/{session_id}/messages", response_model=schemas.SessionStatusResponse)
async def post_channel_message(
    session_id: str, payload: schemas.ChannelMessageRequest
) -> schemas.SessionStatusResponse:
    """Relay one message from the embedded surface when no websocket is attached."""

    controller = _lookup(session_id)
    await controller.handle_message(payload.message)
    return _status(controller)


@router.post("/{session_id}/retry", response_model=schemas.SessionStatusResponse)
async def retry_session(session_id: str) -> schemas.SessionStatusResponse:
    controller = _lookup(session_id)
    try:
        await controller.retry()
    except SessionTransitionError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    return _status(controller)


@router.post("/{session_id}/skip", response_model=schemas.SessionStatusResponse)
async def skip_session(session_id: str, payload: schemas.SkipRequest) -> schemas.SessionStatusResponse:
    controller = _lookup(session_id)
    try:
        await controller.skip(payload.gender)
    except SessionTransitionError as exc:
        raise HTTPException(status_code=409, detail=exc.message) from exc
    return _status(controller)


@router.post("/{session_id}/cancel", response_model=schemas.SessionStatusResponse)
async def cancel_session(session_id: str) -> schemas.SessionStatusResponse:
    controller = _lookup(session_id)
    controller.cancel()
    return _status(controller)


@router.post("/{session_id}/resume", response_model=schemas.SessionStatusResponse)
async def resume_session(session_id: str) -> schemas.SessionStatusResponse:
    """Complete an idle session from the persisted avatar URL, if there is one."""

    controller = _lookup(session_id)
    if controller.state is not SessionState.IDLE:
        raise HTTPException(status_code=409, detail=f"Cannot resume while {controller.state.value}")
    await controller.resume()
    return _status(controller)


@router.post("/{session_id}/fetch", response_model=schemas.AvatarFetchResponse)
async def fetch_avatar(session_id: str) -> schemas.AvatarFetchResponse:
    """Read the user's avatar from the backend, starting status polling if it is still processing."""

    controller = _lookup(session_id)
    try:
        avatar = await controller.fetch_avatar()
    except BackendSyncFailure as exc:
        raise HTTPException(status_code=502, detail=exc.message) from exc
    return schemas.AvatarFetchResponse(
        session_id=controller.session_id, avatar=avatar, polling=controller.is_polling
    )
