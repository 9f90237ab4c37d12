"""HTTP surface for Conduit.

Endpoints:
  WS   /sessions/{session_id} - Session protocol (stream:start, stream:cancel, ...)
  GET  /status                - Session and active-run counts
  GET  /health                - Health check

Inbound socket messages:
  {"type": "stream:start", "requestId", "userContent", "images"?}
  {"type": "stream:cancel", "requestId"}
  {"type": "session:disconnect"}

Outbound: session:ready, then stream:* messages tagged with requestId.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from conduit.api.schemas import ChatMessage, build_content_parts
from conduit.api.session import SessionChannel, SessionMultiplexer
from conduit.config import Settings
from conduit.errors import ConduitError

logger = logging.getLogger(__name__)


def _error(request_id: str | None, message: str) -> dict[str, Any]:
    return {"type": "stream:error", "requestId": request_id, "error": message}


def build_user_turn(data: dict[str, Any]) -> ChatMessage:
    """User message from a stream:start payload.

    Plain text stays a string; with images attached the content becomes
    a list of parts.
    """
    text = data.get("userContent") or ""
    if not isinstance(text, str):
        raise ValueError("userContent must be a string")
    images = data.get("images") or []
    if not isinstance(images, list):
        raise ValueError("images must be a list")
    try:
        parts = build_content_parts(text, images)
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid image attachment: {e}") from e
    if not parts:
        raise ValueError("Message is empty")
    if images:
        return ChatMessage(role="user", content=parts)
    return ChatMessage(role="user", content=text)


def create_app(
    multiplexer: SessionMultiplexer,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def session_socket(websocket: WebSocket) -> None:
        """WS /sessions/{session_id} - one conversation surface."""
        session_id = websocket.path_params["session_id"]
        agent_id = websocket.query_params.get("agent_id")

        await websocket.accept()
        channel = await multiplexer.connect(session_id, agent_id)
        await websocket.send_json({"type": "session:ready", "sessionId": session_id})

        async def pump() -> None:
            async for event in channel.events():
                await websocket.send_json(event.to_message())

        pump_task = asyncio.create_task(pump(), name=f"pump:{session_id}")
        try:
            while True:
                try:
                    data = await websocket.receive_json()
                except WebSocketDisconnect:
                    break
                except ValueError:
                    await websocket.send_json(_error(None, "Invalid JSON message"))
                    continue

                if not isinstance(data, dict):
                    await websocket.send_json(_error(None, "Message must be a JSON object"))
                    continue

                msg_type = data.get("type")
                if msg_type == "session:disconnect":
                    break
                if msg_type == "stream:cancel":
                    request_id = data.get("requestId")
                    if request_id and channel.cancel(request_id):
                        logger.info("Session %s cancelled request %s", session_id, request_id)
                elif msg_type == "stream:start":
                    await _start(websocket, channel, data)
                else:
                    await websocket.send_json(
                        _error(data.get("requestId"), f"Unknown message type: {msg_type}")
                    )
        finally:
            await multiplexer.disconnect(session_id, channel)
            await channel.close()
            await asyncio.gather(pump_task, return_exceptions=True)
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.close()

    async def _start(websocket: WebSocket, channel: SessionChannel, data: dict[str, Any]) -> None:
        request_id = data.get("requestId")
        if not request_id or not isinstance(request_id, str):
            await websocket.send_json(_error(None, "Missing required field: requestId"))
            return
        try:
            user_turn = build_user_turn(data)
            channel.start(request_id, user_turn)
        except ValueError as e:
            await websocket.send_json(_error(request_id, str(e)))
        except ConduitError as e:
            logger.info("Rejected request %s on session %s: %s", request_id, channel.session_id, e)
            await websocket.send_json(_error(request_id, str(e)))

    async def status(request: Request) -> JSONResponse:
        """GET /status - session counts and configuration summary."""
        return JSONResponse({
            "sessions": multiplexer.session_count,
            "active_runs": multiplexer.active_runs(),
            "model": settings.model,
            "max_iterations": settings.max_iterations,
        })

    async def health(request: Request) -> JSONResponse:
        """GET /health - liveness check."""
        return JSONResponse({"status": "healthy"})

    routes = [
        WebSocketRoute("/sessions/{session_id}", session_socket),
        Route("/status", status),
        Route("/health", health),
    ]

    return Starlette(routes=routes, lifespan=lifespan)
