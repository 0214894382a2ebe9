"""
Granite Bank FastAPI server.

Thin adapter over GameEngine. Every endpoint is `async def` so requests and
the accrual task share one event loop and never interleave mid-mutation.

Endpoints:
- GET  /api/state        - Public snapshot (plus one participant's view)
- POST /api/ocr-name     - Read a display name off a student ID photo
- POST /api/join         - Join with QR token, name and quiz answers
- POST /api/action       - Commit a participant action
- POST /api/gm/*         - Facilitator commands
- WS   /updates          - Real-time event and snapshot stream
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.datastructures import Headers

from ..config import SimulationConfig
from ..engine import GameEngine
from ..state.event_bus import EventType, SimEvent
from ..state.store import JsonStateStore
from ..systems.errors import IdentityUnavailableError, SimulationError
from ..systems.identity import IdentityCapture, decode_image_data_url
from .schemas import (
    ActionRequest,
    DecisionRequest,
    ErrorResponse,
    EventRequest,
    JoinRequest,
    JoinResponse,
    NameCaptureRequest,
    NameCaptureResponse,
    NotifyRequest,
    PhaseRequest,
    QuizResponse,
    ResumeRequest,
    SessionResponse,
    SnapshotResponse,
)

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 8 * 1024 * 1024

ERROR_STATUS = {
    "validation": 400,
    "credential": 401,
    "not_found": 404,
    "conflict": 409,
    "unavailable": 503,
}

# Feed lines reach clients inside the next snapshot
QUIET_EVENTS = frozenset({EventType.FEED_POSTED})


class ConnectionManager:
    """Manages WebSocket connections for real-time state updates."""

    def __init__(self):
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)

    async def broadcast(self, message: dict):
        """Broadcast message to all connected clients."""
        disconnected = []
        for connection in self.active_connections:
            try:
                await connection.send_json(message)
            except (WebSocketDisconnect, RuntimeError):
                disconnected.append(connection)

        for conn in disconnected:
            self.disconnect(conn)


class BodyTooLarge(Exception):
    pass


class BodySizeLimitMiddleware:
    """
    Reject request bodies over `max_bytes` with a 413 envelope.

    A declared content-length is checked up front. The bytes actually
    received are counted as well, so chunked uploads hit the same limit.
    Once the limit trips, whatever the app tried to answer is dropped.
    """

    def __init__(self, app, max_bytes: int = MAX_BODY_BYTES):
        self.app = app
        self.max_bytes = max_bytes

    def _reject(self) -> JSONResponse:
        body = ErrorResponse(error="Request body too large", code="BODY_TOO_LARGE")
        return JSONResponse(status_code=413, content=body.model_dump())

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        length = Headers(scope=scope).get("content-length")
        if length and length.isdigit() and int(length) > self.max_bytes:
            await self._reject()(scope, receive, send)
            return

        received = 0
        exceeded = False

        async def counting_receive():
            nonlocal received, exceeded
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > self.max_bytes:
                    exceeded = True
                    raise BodyTooLarge()
            return message

        async def guarded_send(message):
            if not exceeded:
                await send(message)

        try:
            await self.app(scope, counting_receive, guarded_send)
        except Exception:
            if not exceeded:
                raise
        if exceeded:
            logger.warning("Rejected %s %s: body over %d bytes", scope["method"], scope["path"], self.max_bytes)
            await self._reject()(scope, receive, send)


class SimulationAPI:
    """
    Granite Bank API backend.

    Wraps the engine, owns the WebSocket connections and forwards engine
    bus events to connected screens.
    """

    def __init__(self, engine: GameEngine):
        self.engine = engine
        self.connections = ConnectionManager()
        self._setup_event_handlers()

    def _setup_event_handlers(self):
        """Subscribe to engine events for WebSocket broadcasting."""
        self.engine.bus.on_all(self._handle_game_event)

    def _handle_game_event(self, event: SimEvent):
        """Forward engine events to WebSocket clients."""
        if not self.connections.active_connections:
            return
        if event.type in QUIET_EVENTS:
            return

        if event.type == EventType.STATE_SAVED:
            message = {"type": "state", "snapshot": self.engine.get_snapshot()}
        else:
            message = {
                "type": "game_event",
                "event_type": event.type.value,
                "data": event.data,
                "timestamp": event.timestamp.isoformat(),
            }

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Engine driven outside the server loop (console, tests)
            return
        loop.create_task(self.connections.broadcast(message))


def create_app(
    data_dir: Path | str = "data",
    config: SimulationConfig | None = None,
    enable_scheduler: bool = True,
    engine: GameEngine | None = None,
    identity: IdentityCapture | None = None,
    max_body_bytes: int = MAX_BODY_BYTES,
) -> FastAPI:
    """
    Create FastAPI application for Granite Bank.

    Args:
        data_dir: Where the JSON state file lives.
        config: Simulation tunables.
        enable_scheduler: Run the accrual loop while the app is up.
        engine: Pre-built engine; overrides data_dir and config.
        identity: OCR provider behind /api/ocr-name; without one the
            endpoint answers 503.
        max_body_bytes: Largest request body accepted.
    """
    if engine is None:
        engine = GameEngine(store=JsonStateStore(data_dir), config=config)
    api = SimulationAPI(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start ticking on startup; stop and save on shutdown."""
        logger.info("Serving session %s (%s)", engine.state.session.code, engine.state.session.phase.value)
        if enable_scheduler:
            engine.accrual.start()
        yield
        await engine.accrual.stop()
        engine.persist()

    app = FastAPI(
        title="Granite Bank API",
        description="REST/WebSocket API for the Granite Bank classroom bank-run simulation",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.api = api

    def get_api() -> SimulationAPI:
        return app.state.api

    app.add_middleware(BodySizeLimitMiddleware, max_bytes=max_body_bytes)

    @app.exception_handler(SimulationError)
    async def simulation_error_handler(request: Request, exc: SimulationError):
        body = ErrorResponse(error=exc.message, code=exc.code)
        return JSONResponse(status_code=ERROR_STATUS.get(exc.kind, 400), content=body.model_dump())

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"ok": True, "service": "granite-bank-api"}

    @app.get("/api/session", response_model=SessionResponse)
    async def get_session(api: SimulationAPI = Depends(get_api)):
        """Facilitator view; silently refreshes an expired join token."""
        return SessionResponse(session=api.engine.ensure_join_token_fresh())

    @app.post("/api/session/rotate-join", response_model=SessionResponse)
    async def rotate_join(api: SimulationAPI = Depends(get_api)):
        return SessionResponse(session=api.engine.rotate_join_token())

    @app.post("/api/session/reset", response_model=SessionResponse)
    async def reset_session(api: SimulationAPI = Depends(get_api)):
        return SessionResponse(session=api.engine.reset_session())

    # -------------------------------------------------------------------------
    # Participants
    # -------------------------------------------------------------------------

    @app.post("/api/ocr-name", response_model=NameCaptureResponse)
    async def ocr_name(request: NameCaptureRequest):
        """Suggest a display name from a student ID photo; joining still takes the typed name."""
        image = decode_image_data_url(request.image_data_url)
        if identity is None:
            raise IdentityUnavailableError()
        extraction = await asyncio.to_thread(identity.extract, image)
        return NameCaptureResponse(
            full_name=extraction.full_name,
            fallback_name=extraction.fallback_name,
            confidence=extraction.confidence,
        )

    @app.get("/api/join/quiz", response_model=QuizResponse)
    async def join_quiz(api: SimulationAPI = Depends(get_api)):
        return QuizResponse(**api.engine.quiz())

    @app.post("/api/join", response_model=JoinResponse)
    async def join(request: JoinRequest, api: SimulationAPI = Depends(get_api)):
        joined = api.engine.join(request.name, request.token, request.code, request.quiz_answers)
        return JoinResponse(
            participant_id=joined["id"],
            name=joined["name"],
            role=joined["role"],
            quiz_score=joined["quiz_score"],
            resume_token=joined["resume_token"],
            snapshot=joined["snapshot"],
        )

    @app.post("/api/resume", response_model=JoinResponse)
    async def resume(request: ResumeRequest, api: SimulationAPI = Depends(get_api)):
        resumed = api.engine.resume(request.resume_token)
        return JoinResponse(
            participant_id=resumed["id"],
            name=resumed["name"],
            role=resumed["role"],
            snapshot=resumed["snapshot"],
        )

    @app.get("/api/state", response_model=SnapshotResponse)
    async def get_state(participant_id: str | None = None, api: SimulationAPI = Depends(get_api)):
        """Public snapshot; includes the participant block when the id resolves."""
        return SnapshotResponse(snapshot=api.engine.get_snapshot(participant_id))

    @app.post("/api/action", response_model=SnapshotResponse)
    async def submit_action(request: ActionRequest, api: SimulationAPI = Depends(get_api)):
        snapshot = api.engine.submit_action(request.participant_id, request.action_type, request.payload)
        return SnapshotResponse(snapshot=snapshot)

    # -------------------------------------------------------------------------
    # Facilitator
    # -------------------------------------------------------------------------

    @app.post("/api/gm/phase", response_model=SnapshotResponse)
    async def set_phase(request: PhaseRequest, api: SimulationAPI = Depends(get_api)):
        return SnapshotResponse(snapshot=api.engine.set_phase(request.phase))

    @app.post("/api/gm/event", response_model=SnapshotResponse)
    async def trigger_event(request: EventRequest, api: SimulationAPI = Depends(get_api)):
        return SnapshotResponse(snapshot=api.engine.trigger_event(request.event_key))

    @app.post("/api/gm/boe", response_model=SnapshotResponse)
    async def boe_decision(request: DecisionRequest, api: SimulationAPI = Depends(get_api)):
        return SnapshotResponse(snapshot=api.engine.apply_resolution_decision(request.decision))

    @app.post("/api/gm/notify")
    async def notify(request: NotifyRequest, api: SimulationAPI = Depends(get_api)):
        entry = api.engine.broadcast(request.message)
        return {"ok": True, "event": entry.model_dump(mode="json")}

    @app.post("/api/gm/reveal", response_model=SnapshotResponse)
    async def reveal(api: SimulationAPI = Depends(get_api)):
        return SnapshotResponse(snapshot=api.engine.reveal_names())

    # -------------------------------------------------------------------------
    # WebSocket Endpoint
    # -------------------------------------------------------------------------

    @app.websocket("/updates")
    async def websocket_updates(websocket: WebSocket, api: SimulationAPI = Depends(get_api)):
        """
        Real-time update stream.

        Sends the current public snapshot on connect, then engine events and
        fresh snapshots as they happen.
        """
        await api.connections.connect(websocket)
        try:
            await websocket.send_json({"type": "initial_state", "snapshot": api.engine.get_snapshot()})
            while True:
                try:
                    data = await websocket.receive_json()
                    if data.get("type") == "ping":
                        await websocket.send_json({"type": "pong"})
                except WebSocketDisconnect:
                    break
        finally:
            api.connections.disconnect(websocket)

    return app
