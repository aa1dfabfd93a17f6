"""API routes for the Listen Sync relay hub."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, WebSocket, status
from fastapi.websockets import WebSocketDisconnect
from jsonschema import ValidationError
from pydantic import ValidationError as ModelValidationError

from listen_sync.exceptions import DirectoryError
from listen_sync.sync_key import normalize_sync_key

from ..config import HealthPayload, Settings, get_settings
from ..hub import SyncHub
from ..models import EventAck, ServerTime
from ..rate_limit import rate_limit

logger = logging.getLogger(__name__)
router = APIRouter()


def _get_hub_from_app(app) -> SyncHub:  # type: ignore[no-untyped-def]
    hub = getattr(app.state, "hub", None)
    if hub is None:
        raise RuntimeError("SyncHub is not initialised")
    return hub


def get_hub(request: Request) -> SyncHub:
    """Fetch sync hub from HTTP request context."""

    return _get_hub_from_app(request.app)


def get_hub_for_ws(websocket: WebSocket) -> SyncHub:
    """Fetch sync hub for WebSocket connections."""

    return _get_hub_from_app(websocket.app)


def _unavailable(exc: DirectoryError) -> HTTPException:
    logger.warning("Directory unavailable: %s", exc)
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Directory unavailable")


async def _authorize(websocket: WebSocket) -> bool:
    settings = get_settings()
    if not settings.ws_api_key:
        return True
    auth_header = websocket.headers.get("authorization") or ""
    token = auth_header.split(" ")[-1] if auth_header.lower().startswith("bearer ") else websocket.query_params.get("token")
    if token != settings.ws_api_key:
        await websocket.close(code=4401, reason="Unauthorized")
        return False
    return True


@router.get("/health", response_model=HealthPayload, tags=["system"])
async def read_health(settings: Annotated[Settings, Depends(get_settings)]) -> HealthPayload:
    """Return service health information."""

    return HealthPayload(status="ok", api_version=settings.api_version)


@router.get("/v1/time", response_model=ServerTime, response_model_by_alias=True, tags=["clock"])
async def read_server_time(request: Request) -> ServerTime:
    """Return the directory clock; clients time the round trip as a latency probe."""

    hub = get_hub(request)
    try:
        return ServerTime(server_time=await hub.directory.probe())
    except DirectoryError as exc:
        raise _unavailable(exc) from exc


@router.get("/v1/sessions/by-key/{sync_key}", tags=["sessions"])
async def read_session_by_key(sync_key: str, request: Request) -> dict[str, Any]:
    """Look up an active session by its (case-insensitive) sync key."""

    hub = get_hub(request)
    try:
        session = await hub.directory.find_session_by_key(normalize_sync_key(sync_key))
    except DirectoryError as exc:
        raise _unavailable(exc) from exc
    if session is None or session.status != "active":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session.model_dump(mode="json", by_alias=True)


@router.get("/v1/sessions/{session_id}/participants", tags=["sessions"])
async def read_participants(session_id: str, request: Request) -> list[dict[str, Any]]:
    """Return the directory roster of a session."""

    hub = get_hub(request)
    try:
        participants = await hub.directory.list_participants(session_id)
    except DirectoryError as exc:
        raise _unavailable(exc) from exc
    return [p.model_dump(mode="json", by_alias=True) for p in participants]


@router.get("/v1/sessions/{session_id}/events", tags=["sessions"])
async def read_events(
    session_id: str,
    request: Request,
    limit: int = Query(50, ge=0),
) -> list[dict[str, Any]]:
    """Return the most recent recorded events, oldest first."""

    hub = get_hub(request)
    settings = get_settings()
    try:
        events = await hub.directory.list_events(session_id, limit=min(limit, settings.max_event_page))
    except DirectoryError as exc:
        raise _unavailable(exc) from exc
    return [event.to_wire() for event in events]


@router.post(
    "/v1/sessions/{session_id}/events",
    response_model=EventAck,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["broadcast"],
)
async def publish_event(
    session_id: str,
    request: Request,
    body: Annotated[dict[str, Any], Body(...)],
    _rl: None = Depends(rate_limit),
) -> EventAck:
    """Publish a sync event to every subscriber of the session."""

    hub = get_hub(request)
    try:
        event = hub.parse_event(body, session_id=session_id)
    except (ValidationError, ModelValidationError) as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    deliveries = await hub.publish(session_id, event)
    return EventAck(accepted=True, delivered=deliveries)


@router.websocket("/ws/session/{session_id}")
async def session_ws(websocket: WebSocket, session_id: str) -> None:
    """Relay a session's events to and from a WebSocket client."""

    if not await _authorize(websocket):
        return
    hub = get_hub_for_ws(websocket)
    try:
        await hub.handle_connection(session_id, websocket)
    except HTTPException as exc:
        logger.warning("HTTP exception inside websocket handler: %s", exc)
        await websocket.close(code=1011, reason="Internal error")
    except WebSocketDisconnect:
        return
