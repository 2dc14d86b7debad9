from __future__ import annotations

import asyncio

from agents.llm_runtime import LLMRuntime
from agents.orchestrator import ConversationOrchestrator
from compliance.audit_logger import AuditLogger
from models.schemas import ChatStatus, IntentCategory, SessionContext


def _orchestrator() -> ConversationOrchestrator:
    return ConversationOrchestrator(llm=LLMRuntime(api_key=""), audit_logger=AuditLogger(path=""), poll_interval_seconds=0)


def test_unknown_permit_ticket_falls_through_to_the_assistant():
    async def _run():
        orchestrator = _orchestrator()
        return await orchestrator.process(
            "What's the status of WRK-2024-5678?",
            SessionContext(session_id="scenario-missing", current_page="/permits"),
        )

    response = asyncio.run(_run())
    assert response.status == ChatStatus.SUCCESS
    assert response.message.intent == IntentCategory.DOCUMENT_QUERY
    assert all(widget.type != "permit-status" for widget in response.message.widgets)
    assert "WRK-2024-5678" in response.message.content
    assert "double-check" in response.message.content
    assert response.message.thread_id is not None


def test_classification_does_not_depend_on_fast_path_hits():
    async def _run():
        orchestrator = _orchestrator()
        hit = await orchestrator.process("What's the status of WRK-2024-0001?", SessionContext(session_id="scenario-hit"))
        miss = await orchestrator.process("What's the status of WRK-2024-5678?", SessionContext(session_id="scenario-miss"))
        return hit, miss

    hit, miss = asyncio.run(_run())
    assert hit.message.widgets[0].type == "permit-status"
    assert (hit.message.intent, hit.message.confidence, hit.message.agent_type) == (
        miss.message.intent,
        miss.message.confidence,
        miss.message.agent_type,
    )
