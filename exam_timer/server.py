"""
HTTP and WebSocket transport.

Thin adapters over ``CommandRouter``: requests and socket messages are
turned into router calls, and ``RoomCommandError`` is rendered as a
status code or an error frame.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from . import __version__
from .auth import Authenticator, IdentityGateway, extract_bearer
from .broadcaster import WebSocketBroadcaster
from .config import Settings, get_settings
from .controller import SessionController
from .errors import RoomCommandError
from .models import SessionStatus
from .registry import SessionRegistry
from .router import CommandRouter
from .scheduler import AsyncioScheduler, Scheduler

logger = logging.getLogger(__name__)

# ============================================================
# REQUEST MODELS
# ============================================================


class RoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: int | str | None = Field(None, alias="roomId")
    token: str | None = Field(None, description="Falls back to the Authorization header")

    def payload(self) -> dict:
        return self.model_dump(by_alias=True, exclude={"token"})


class DurationRequest(RoomRequest):
    duration: int | None = Field(None, description="Exam duration in seconds")


# ============================================================
# DEPENDENCIES
# ============================================================


def get_command_router(request: Request) -> CommandRouter:
    return request.app.state.command_router


def get_credential(
    body_token: str | None, authorization: str | None
) -> str | None:
    return body_token or extract_bearer(authorization)


# ============================================================
# REST ENDPOINTS
# ============================================================

api = APIRouter()


@api.get("/health")
async def health(router: CommandRouter = Depends(get_command_router)):
    """Health check endpoint."""
    return {"status": "healthy", "rooms_active": len(router.controller.registry)}


@api.post("/emit/start-evaluation")
async def start_evaluation(
    request: DurationRequest,
    authorization: str | None = Header(None),
    router: CommandRouter = Depends(get_command_router),
):
    """Start a room countdown and broadcast it to every participant."""
    credential = get_credential(request.token, authorization)
    return await router.dispatch("start", request.payload(), credential)


@api.post("/emit/pause-evaluation")
async def pause_evaluation(
    request: RoomRequest,
    authorization: str | None = Header(None),
    router: CommandRouter = Depends(get_command_router),
):
    credential = get_credential(request.token, authorization)
    return await router.dispatch("pause", request.payload(), credential)


@api.post("/emit/continue-evaluation")
async def continue_evaluation(
    request: RoomRequest,
    authorization: str | None = Header(None),
    router: CommandRouter = Depends(get_command_router),
):
    credential = get_credential(request.token, authorization)
    return await router.dispatch("continue", request.payload(), credential)


@api.post("/emit/stop-evaluation")
async def stop_evaluation(
    request: RoomRequest,
    authorization: str | None = Header(None),
    router: CommandRouter = Depends(get_command_router),
):
    credential = get_credential(request.token, authorization)
    return await router.dispatch("stop", request.payload(), credential)


@api.post("/emit/set-duration")
async def set_duration(
    request: DurationRequest,
    authorization: str | None = Header(None),
    router: CommandRouter = Depends(get_command_router),
):
    """Store a duration for a room without starting the countdown."""
    credential = get_credential(request.token, authorization)
    return await router.dispatch("configure", request.payload(), credential)


@api.get("/rooms")
async def list_rooms(
    status: SessionStatus | None = Query(None, description="Filter by session status"),
    router: CommandRouter = Depends(get_command_router),
):
    """List all rooms, optionally filtered by status."""
    return router.rooms(status)


@api.get("/rooms/{room_id}")
async def get_room(room_id: str, router: CommandRouter = Depends(get_command_router)):
    return router.room(room_id)


@api.delete("/rooms/{room_id}", status_code=204)
async def delete_room(
    room_id: str,
    authorization: str | None = Header(None),
    router: CommandRouter = Depends(get_command_router),
):
    """Forget a room and notify its subscribers."""
    await router.discard(room_id, extract_bearer(authorization))
    return Response(status_code=204)


# ============================================================
# WEBSOCKET ENDPOINT
# ============================================================


async def handle_socket_message(router: CommandRouter, client_id: str, data: object) -> dict:
    """Turn one client frame into the frame sent back to that client."""
    if not isinstance(data, dict):
        return {"type": "error", "error": "bad_message", "message": "Expected a JSON object"}

    msg_type = data.get("type")
    try:
        if msg_type == "ping":
            return {"type": "pong"}

        if msg_type == "join":
            return {"type": "joined", **await router.join(client_id, data)}

        if msg_type == "leave":
            return {"type": "left", **await router.leave(client_id, data)}

        if msg_type == "sync":
            return {"type": "sync_response", **router.status(data)}

        if isinstance(msg_type, str) and msg_type.startswith("control:"):
            command = msg_type.removeprefix("control:")
            # Same body rules as the HTTP endpoints
            request = DurationRequest.model_validate(data)
            ack = await router.dispatch(command, request.payload(), request.token)
            return {"type": "ack", "command": command, **ack}

    except RoomCommandError as e:
        return {"type": "error", "error": e.code, "message": e.message}
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"])
        return {
            "type": "error",
            "error": "invalid_request",
            "message": f"{field}: {error['msg']}",
        }

    return {
        "type": "error",
        "error": "unknown_message",
        "message": f"Unknown message type: {msg_type}",
    }


@api.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    WebSocket connection for exam participants.

    Messages sent by the client:
    - join {roomId, role}: subscribe to a room
    - leave {roomId}: unsubscribe
    - control:start|pause|continue|stop|configure {roomId, token, duration?}
    - sync {roomId}: current snapshot
    - ping

    Messages pushed by the server:
    - start: countdown started, with duration
    - status: snapshot after every state change and tick
    - user_joined / user_left: room membership changes
    - room_closed: the room was discarded
    - keepalive: sent after a quiet period
    """
    router: CommandRouter = websocket.app.state.command_router
    settings: Settings = websocket.app.state.settings
    client_id = f"client_{uuid.uuid4().hex[:8]}"

    await websocket.accept()
    router.broadcaster.connect(client_id, websocket)
    logger.info("Client connected: %s", client_id)

    try:
        await websocket.send_json({"type": "connected", "clientId": client_id})

        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_json(), timeout=settings.websocket_idle_seconds
                )
            except TimeoutError:
                await websocket.send_json({"type": "keepalive"})
                continue

            reply = await handle_socket_message(router, client_id, data)
            await websocket.send_json(reply)

    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", client_id)
    except Exception:
        logger.warning("WebSocket error for client %s", client_id)
    finally:
        await router.disconnect(client_id)


# ============================================================
# APP FACTORY
# ============================================================


def create_app(
    settings: Settings | None = None,
    scheduler: Scheduler | None = None,
    authenticator: Authenticator | None = None,
) -> FastAPI:
    """Wire the registry, controller and transport into one app."""
    settings = settings or get_settings()

    registry = SessionRegistry(max_rooms=settings.max_rooms)
    broadcaster = WebSocketBroadcaster(max_clients_per_room=settings.max_clients_per_room)
    controller = SessionController(
        registry,
        broadcaster,
        scheduler or AsyncioScheduler(),
        tick_seconds=settings.tick_seconds,
        max_duration_seconds=settings.max_duration_seconds,
        timezone=settings.server_timezone,
    )

    gateway = None
    if authenticator is None:
        gateway = IdentityGateway(
            settings.identity_base_url,
            timeout=settings.identity_timeout_seconds,
            cache_ttl=settings.token_cache_ttl_seconds,
        )
        authenticator = gateway

    command_router = CommandRouter(
        controller, broadcaster, authenticator, control_roles=settings.control_roles
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Exam Timer Service started")
        yield
        controller.shutdown()
        await broadcaster.close_all()
        if gateway is not None:
            await gateway.aclose()
        logger.info("Exam Timer Service stopped")

    app = FastAPI(
        title="Exam Timer Service",
        description="Server-authoritative countdowns for group exam rooms",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.command_router = command_router

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    @app.exception_handler(RoomCommandError)
    async def command_error_handler(request: Request, exc: RoomCommandError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(api)
    return app


app = create_app()
