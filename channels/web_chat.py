from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, StrictBool, ValidationError

from agents.orchestrator import ConversationOrchestrator
from models.schemas import ApprovalAlreadyResolvedError, ApprovalNotFoundError

logger = logging.getLogger(__name__)


class ApprovalFrame(BaseModel):
    thread_id: str
    run_id: str
    approval_id: str
    approved: StrictBool


@dataclass
class WebChatConnectionManager:
    connections: Dict[str, Set[WebSocket]] = field(default_factory=dict)

    async def connect(self, session_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.setdefault(session_id, set()).add(websocket)

    def disconnect(self, session_id: str, websocket: WebSocket) -> None:
        if session_id in self.connections:
            self.connections[session_id].discard(websocket)
            if not self.connections[session_id]:
                self.connections.pop(session_id, None)

    async def broadcast(self, session_id: str, payload: dict) -> None:
        for ws in list(self.connections.get(session_id, set())):
            await ws.send_json(payload)


async def websocket_chat_handler(
    websocket: WebSocket,
    orchestrator: ConversationOrchestrator,
    manager: WebChatConnectionManager,
    session_id: str,
) -> None:
    """Frames in: ``{"type": "message", ...}`` or ``{"type": "approval", ...}``.

    Frames out: ``connected``, ``progress`` while a run is polled, then ``message`` with the
    serialized ``ChatResponse`` or ``error``.
    """
    await manager.connect(session_id, websocket)

    async def on_progress(event: Dict[str, Any]) -> None:
        await manager.broadcast(session_id, {"type": "progress", **event})

    try:
        await websocket.send_json({"type": "connected", "session_id": session_id})
        while True:
            inbound = await websocket.receive_json()
            kind = str(inbound.get("type") or "message")
            if kind == "approval":
                await _handle_approval(websocket, orchestrator, manager, session_id, inbound, on_progress)
                continue
            content = str(inbound.get("content") or "").strip()
            if not content:
                await websocket.send_json({"type": "error", "message": "content is required"})
                continue
            await manager.broadcast(session_id, {"type": "typing", "by": "assistant"})
            response = await orchestrator.send_message(
                session_id=session_id,
                text=content,
                current_page=str(inbound.get("current_page") or "/"),
                user_id=inbound.get("user_id"),
                user_role=inbound.get("user_role"),
                search_params=dict(inbound.get("search_params") or {}) or None,
                on_progress=on_progress,
            )
            await manager.broadcast(session_id, {"type": "message", "response": response.model_dump(mode="json")})
    except WebSocketDisconnect:
        manager.disconnect(session_id, websocket)


async def _handle_approval(websocket, orchestrator, manager, session_id, inbound, on_progress) -> None:
    try:
        frame = ApprovalFrame.model_validate(inbound)
    except ValidationError:
        await websocket.send_json({"type": "error", "message": "invalid_approval"})
        return
    try:
        response = await orchestrator.submit_approval(
            thread_id=frame.thread_id,
            run_id=frame.run_id,
            approval_id=frame.approval_id,
            approved=frame.approved,
            on_progress=on_progress,
        )
    except ApprovalNotFoundError:
        await websocket.send_json({"type": "error", "message": "approval_not_found"})
        return
    except ApprovalAlreadyResolvedError:
        await websocket.send_json({"type": "error", "message": "approval_already_resolved"})
        return
    logger.info("ws_approval_submitted", extra={"session_id": session_id, "status": response.status.value})
    await manager.broadcast(session_id, {"type": "message", "response": response.model_dump(mode="json")})
