"""FastAPI application entrypoint for the avatar creation service."""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from .config import settings
from .routers import avatars, sessions
from .services.creation_session import CreationSessionController, SessionEvent, SessionState
from .services.errors import BackendSyncFailure, SessionTransitionError
from .services.session_registry import registry

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def _event_payload(event: SessionEvent) -> dict[str, Any]:
    return {"type": "client_info", "info": event.kind, "state": event.state.value, **event.payload}


async def _pump_events(websocket: WebSocket, queue: "asyncio.Queue[SessionEvent]", session_id: str) -> None:
    while True:
        event = await queue.get()
        try:
            await websocket.send_text(json.dumps(_event_payload(event), default=str))
        except Exception as e:
            logger.warning(f"[Session {session_id}] Failed forwarding {event.kind} to client: {e}")
            return


async def _handle_client_message(
    websocket: WebSocket, controller: CreationSessionController, message: dict[str, Any]
) -> None:
    kind = message.get("type")
    try:
        if kind == "channel":
            await controller.handle_message(message.get("message"))
        elif kind == "retry":
            await controller.retry()
        elif kind == "skip":
            await controller.skip(message.get("gender"))
        elif kind == "cancel":
            controller.cancel()
        elif kind == "resume":
            resumed = await controller.resume()
            await websocket.send_text(
                json.dumps({"type": "client_info", "info": "resume", "resumed": resumed})
            )
        elif kind == "fetch":
            try:
                avatar = await controller.fetch_avatar()
            except BackendSyncFailure as e:
                await websocket.send_text(json.dumps({"type": "error", "error": e.message}))
                return
            await websocket.send_text(
                json.dumps(
                    {
                        "type": "client_info",
                        "info": "avatar",
                        "avatar": avatar.model_dump(by_alias=True, mode="json") if avatar else None,
                        "polling": controller.is_polling,
                    }
                )
            )
        else:
            await websocket.send_text(json.dumps({"type": "error", "error": f"Unknown message type: {kind}"}))
    except SessionTransitionError as e:
        await websocket.send_text(json.dumps({"type": "error", "error": e.message}))


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await registry.shutdown()


app = FastAPI(
    title="Avatar Creation Service",
    description="Drives embedded avatar creation sessions and resolves avatar assets.",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(sessions.router)
app.include_router(avatars.router)


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    """Bridge between the client hosting the embedded surface and its controller.

    Client frames are JSON objects; ``{"type": "channel", "message": ...}``
    relays a raw surface message, the others map onto user actions.
    Connecting with ``?resume=true`` restores a persisted avatar before
    the surface is loaded.
    Controller notifications and surface commands flow back as text frames.
    """

    await websocket.accept()
    controller = registry.get(session_id)
    if controller is None:
        controller = registry.create(session_id=session_id)

    queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
    controller.subscribe(queue.put_nowait)
    controller.channel.sink = websocket.send_text
    pump = asyncio.create_task(_pump_events(websocket, queue, session_id))

    try:
        await websocket.send_text(
            json.dumps(
                {
                    "type": "client_info",
                    "info": "session",
                    "state": controller.state.value,
                    "creator_url": controller.creator_url,
                }
            )
        )
        if controller.state is SessionState.IDLE:
            wants_resume = websocket.query_params.get("resume", "").lower() in {"1", "true", "yes"}
            if not (wants_resume and await controller.resume()):
                await controller.start()

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                # Surfaces that post raw strings go straight to the channel.
                message = {"type": "channel", "message": data}
            if not isinstance(message, dict):
                message = {"type": "channel", "message": data}
            await _handle_client_message(websocket, controller, message)
    except WebSocketDisconnect:
        logger.info(f"[Session {session_id}] Client disconnected")
    finally:
        pump.cancel()
        controller.unsubscribe(queue.put_nowait)
        controller.channel.sink = None
        registry.discard(session_id)


@app.get("/")
async def root() -> dict[str, str]:
    """Lightweight health endpoint for service discovery."""
    return {"service": "avatar-pipeline", "status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
