from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, WebSocket
from pydantic import BaseModel, Field, StrictBool

from agents.orchestrator import ConversationOrchestrator
from channels.web_chat import WebChatConnectionManager, websocket_chat_handler
from models.schemas import ApprovalAlreadyResolvedError, ApprovalNotFoundError


router = APIRouter(prefix="/chat", tags=["chat"])


class CreateSessionRequest(BaseModel):
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    user_role: str = "guest"
    current_page: str = "/"
    search_params: Dict[str, str] = Field(default_factory=dict)


class ChatMessageRequest(BaseModel):
    session_id: str
    message: str = Field(min_length=1, max_length=4000)
    current_page: str = "/"
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    search_params: Dict[str, str] = Field(default_factory=dict)


class ApprovalDecisionRequest(BaseModel):
    thread_id: str
    run_id: str
    approval_id: str
    approved: StrictBool


class CopilotUpdateRequest(BaseModel):
    record_id: Optional[str] = None
    task_id: Optional[str] = None
    search: Optional[str] = None
    filters: Optional[Dict[str, Any]] = None


def _orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


@router.post("/sessions")
async def create_session(payload: CreateSessionRequest, request: Request):
    context = await _orchestrator(request).initialize_session(
        user_id=payload.user_id,
        user_role=payload.user_role,
        current_page=payload.current_page,
        search_params=payload.search_params or None,
        session_id=payload.session_id,
    )
    return context.model_dump(mode="json")


@router.post("/message")
async def post_chat_message(payload: ChatMessageRequest, request: Request):
    response = await _orchestrator(request).send_message(
        session_id=payload.session_id,
        text=payload.message,
        current_page=payload.current_page,
        user_id=payload.user_id,
        user_role=payload.user_role,
        search_params=payload.search_params or None,
    )
    return response.model_dump(mode="json")


@router.post("/approvals")
async def post_approval(payload: ApprovalDecisionRequest, request: Request):
    try:
        response = await _orchestrator(request).submit_approval(
            thread_id=payload.thread_id,
            run_id=payload.run_id,
            approval_id=payload.approval_id,
            approved=payload.approved,
        )
    except ApprovalNotFoundError:
        raise HTTPException(status_code=404, detail="approval_not_found")
    except ApprovalAlreadyResolvedError:
        raise HTTPException(status_code=409, detail="approval_already_resolved")
    return response.model_dump(mode="json")


@router.post("/sessions/{session_id}/copilot")
async def update_copilot(session_id: str, payload: CopilotUpdateRequest, request: Request):
    state = await _orchestrator(request).update_copilot_context(
        session_id,
        record_id=payload.record_id,
        task_id=payload.task_id,
        search=payload.search,
        filters=payload.filters,
    )
    if state is None:
        raise HTTPException(status_code=404, detail="session_not_found")
    return state.model_dump(mode="json")


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    context = await _orchestrator(request).session_store.get_enriched_context(session_id)
    if context is None:
        raise HTTPException(status_code=404, detail="session_not_found")
    return context.model_dump(mode="json")


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, request: Request):
    await _orchestrator(request).end_session(session_id)
    return {"ok": True, "session_id": session_id}


@router.get("/stats")
async def chat_stats(request: Request):
    return {"ok": True, **_orchestrator(request).session_stats()}


@router.websocket("/ws/{session_id}")
async def chat_ws(websocket: WebSocket, session_id: str):
    app = websocket.app
    manager: WebChatConnectionManager = app.state.web_chat_manager
    orchestrator = app.state.orchestrator
    await websocket_chat_handler(websocket, orchestrator=orchestrator, manager=manager, session_id=session_id)
