from __future__ import annotations

import asyncio

from agents.intent_classifier import IntentClassifier
from compliance.audit_logger import AuditLogger
from models.schemas import AgentType, ChatStatus, IntentCategory, SessionContext


def test_slow_classifier_defaults_and_turn_still_succeeds(backend, make_orchestrator):
    backend.classify_delay = 1.0
    orchestrator = make_orchestrator(
        classifier=IntentClassifier(llm=backend, timeout_seconds=0.01, audit_logger=AuditLogger(path=""))
    )
    response = asyncio.run(orchestrator.process("I need some help please", SessionContext(session_id="scenario-slow")))
    assert response.status == ChatStatus.SUCCESS
    assert response.message.intent == IntentCategory.GENERAL_INQUIRY
    assert response.message.agent_type == AgentType.GENERAL_SUPPORT
    assert response.message.confidence == 0.5
    assert backend.calls["start_run"] == 1
