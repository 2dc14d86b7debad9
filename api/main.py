from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from agents.orchestrator import ConversationOrchestrator
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rate_limiting import RateLimitMiddleware
from api.routers import chat
from channels.web_chat import WebChatConnectionManager
from settings import SETTINGS


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or SETTINGS.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app(orchestrator: ConversationOrchestrator | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = app.state.orchestrator.session_store
        store.start_sweeper()
        try:
            yield
        finally:
            await store.stop_sweeper()

    app = FastAPI(title="Permit Support Platform", version="0.1.0", debug=SETTINGS.debug, lifespan=lifespan)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.state.orchestrator = orchestrator or ConversationOrchestrator()
    app.state.web_chat_manager = WebChatConnectionManager()

    app.include_router(chat.router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        orch: ConversationOrchestrator = app.state.orchestrator
        return {
            "ok": True,
            "service": "permit-support-platform",
            "llm_provider": orch.llm.provider,
            "llm_model": orch.llm.model,
            "llm_runtime_available": orch.llm.available(),
            "guardrails_enabled": orch.guardrails.enabled,
            "human_in_loop_enabled": orch.approvals.enabled,
            "active_sessions": orch.session_store.active_sessions_count(),
        }

    return app


app = create_app()
