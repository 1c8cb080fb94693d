"""
Route registration for the push-to-talk API.

Responsibilities:
- Define HTTP and WebSocket endpoints
- Translate control messages into coordinator operations
- Push a SESSION_SNAPSHOT to every connected client on each change
- Pull dependencies from app.state
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from observability.logger import log_event
from session.coordinator import SessionCoordinator
from session.snapshot import SessionSnapshot


class TranscriptEdit(BaseModel):
    text: str


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    def _coordinator() -> SessionCoordinator:
        return app.state.coordinator

    @app.get("/health")
    async def health() -> dict[str, str]: # pyright: ignore[reportUnusedFunction]
        return {"status": "ok"}

    @app.get("/session")
    async def get_session() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        return _coordinator().snapshot().to_message()

    @app.post("/session/toggle")
    async def toggle_session() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        coordinator = _coordinator()
        await coordinator.toggle()
        return coordinator.snapshot().to_message()

    @app.put("/session/transcript")
    async def edit_transcript(body: TranscriptEdit) -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        coordinator = _coordinator()
        coordinator.edit_final_text(body.text)
        return coordinator.snapshot().to_message()

    @app.delete("/session/transcript")
    async def clear_transcript() -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        coordinator = _coordinator()
        coordinator.clear_transcript()
        return coordinator.snapshot().to_message()

    @app.delete("/session/error")
    async def dismiss_error(error_id: int | None = None) -> dict[str, Any]: # pyright: ignore[reportUnusedFunction]
        coordinator = _coordinator()
        if not coordinator.dismiss_error(error_id):
            raise HTTPException(status_code=409, detail="error_id is stale")
        return coordinator.snapshot().to_message()

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None: # pyright: ignore[reportUnusedFunction]
        await ws.accept()

        coordinator = _coordinator()
        outbox: asyncio.Queue[SessionSnapshot] = asyncio.Queue()
        unsubscribe = coordinator.subscribe(outbox.put_nowait)
        sender = asyncio.create_task(_pump_snapshots(ws, outbox))
        # Toggles run beside the receive loop so a TOGGLE sent while a
        # start is loading can still stop it
        toggles: set[asyncio.Task[None]] = set()

        log_event({
            "event_type": "WS_CLIENT_CONNECTED",
            "session_id": coordinator.session_id,
        })

        try:
            await ws.send_text(json.dumps(coordinator.snapshot().to_message()))

            while True:
                text = await ws.receive_text()
                await _handle_control_message(ws, coordinator, text, toggles)

        except WebSocketDisconnect:
            log_event({
                "event_type": "WS_CLIENT_DISCONNECTED",
                "session_id": coordinator.session_id,
            })

        except Exception as exc:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "WS_FATAL_ERROR",
                "session_id": coordinator.session_id,
                "exception": type(exc).__name__,
                "message": str(exc),
            })

        finally:
            unsubscribe()

            # Session sequencing is left to finish; only this client's
            # snapshot stream goes away
            results = await asyncio.gather(*toggles, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    log_event({
                        "event_type": "WS_TOGGLE_FAILED",
                        "session_id": coordinator.session_id,
                        "exception": type(result).__name__,
                        "message": str(result),
                    })

            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)


async def _pump_snapshots(ws: WebSocket, outbox: asyncio.Queue[SessionSnapshot]) -> None:
    while True:
        snap = await outbox.get()
        await ws.send_text(json.dumps(snap.to_message()))


async def _handle_control_message(
    ws: WebSocket,
    coordinator: SessionCoordinator,
    text: str,
    toggles: set[asyncio.Task[None]],
) -> None:
    """
    Apply one client control message.

    Malformed or unknown messages are answered with an ERROR message and
    otherwise ignored. Session state changes reach the client through the
    snapshot stream, not as direct replies.
    """
    try:
        msg = json.loads(text)
    except json.JSONDecodeError:
        await _send_error(ws, "invalid_json")
        return

    if not isinstance(msg, dict):
        await _send_error(ws, "invalid_message")
        return

    msg_type = msg.get("type")

    if msg_type == "TOGGLE":
        task = asyncio.create_task(coordinator.toggle())
        toggles.add(task)
        task.add_done_callback(toggles.discard)

    elif msg_type == "CLEAR":
        coordinator.clear_transcript()

    elif msg_type == "DISMISS_ERROR":
        error_id = msg.get("error_id")
        if error_id is not None and not isinstance(error_id, int):
            await _send_error(ws, "invalid_error_id")
            return
        coordinator.dismiss_error(error_id)

    elif msg_type == "EDIT_FINAL_TEXT":
        new_text = msg.get("text")
        if not isinstance(new_text, str):
            await _send_error(ws, "invalid_text")
            return
        coordinator.edit_final_text(new_text)

    else:
        log_event({
            "event_type": "WS_UNKNOWN_MESSAGE",
            "session_id": coordinator.session_id,
            "message_type": msg_type,
        })
        await _send_error(ws, "unknown_message_type")


async def _send_error(ws: WebSocket, code: str) -> None:
    await ws.send_text(json.dumps({"type": "ERROR", "code": code}))
