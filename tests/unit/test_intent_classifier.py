from __future__ import annotations

import asyncio

from agents.intent_classifier import IntentClassifier, redacted_context
from agents.llm_runtime import AssistantBackendError, LLMRuntime
from compliance.audit_logger import AuditLogger
from models.schemas import AgentType, IntentCategory, SessionContext


def _context() -> SessionContext:
    return SessionContext(
        session_id="s-1",
        user_id="user-42",
        user_role="admin",
        current_page="/permits/WRK-2024-0001",
        page_context={
            "section": "permits",
            "feature": "permit_tracking",
            "copilot_state": {
                "recent_record_ids": ["WRK-2024-0001", "RES-2025-0042"],
                "recent_searches": ["Sarah Ahmed"],
                "current_filters": {"status": "PROCESSING"},
                "conversation_summary": None,
            },
        },
    )


def _classifier(backend, **kwargs) -> IntentClassifier:
    return IntentClassifier(llm=backend, audit_logger=AuditLogger(path=""), **kwargs)


def test_redacted_context_keeps_flags_and_drops_identifiers():
    summary = redacted_context(_context())
    assert summary["user_role"] == "admin"
    assert summary["section"] == "permits"
    assert summary["recent_record_count"] == 2
    assert summary["has_recent_searches"] is True
    assert summary["has_active_filters"] is True
    flat = repr(summary)
    assert "user-42" not in flat
    assert "Sarah Ahmed" not in flat
    assert "RES-2025-0042" not in flat


def test_classifier_receives_only_redacted_context(backend):
    asyncio.run(_classifier(backend).classify("where is my permit?", _context()))
    assert backend.last_classify_context == redacted_context(_context())


def test_valid_classification_maps_persona_from_intent(backend):
    backend.classification = {"intent": "workflow_help", "confidence": 0.77, "reasoning": "asks about steps"}
    result = asyncio.run(_classifier(backend).classify("what are the approval steps?"))
    assert result.intent == IntentCategory.WORKFLOW_HELP
    assert result.suggested_agent == AgentType.WORKFLOW_SUPPORT
    assert result.confidence == 0.77


def test_unknown_agent_and_intent_values_are_normalised(backend):
    backend.classification = {"intent": "billing", "suggestedAgent": "refund_agent", "confidence": 3}
    result = asyncio.run(_classifier(backend).classify("charge me"))
    assert result.intent == IntentCategory.UNKNOWN
    assert result.suggested_agent == AgentType.GENERAL_SUPPORT
    assert result.confidence == 1.0


def test_negative_confidence_is_clamped(backend):
    backend.classification = {"intent": "technical_issue", "confidence": -0.4}
    result = asyncio.run(_classifier(backend).classify("upload is broken"))
    assert result.confidence == 0.0
    assert result.suggested_agent == AgentType.TECHNICAL_SUPPORT


def test_review_flag_accepts_only_real_booleans(backend):
    backend.classification = {"intent": "workflow_help", "confidence": 0.6, "requiresHumanReview": "false"}
    assert asyncio.run(_classifier(backend).classify("who approves this")).requires_human_review is False

    backend.classification = {"intent": "workflow_help", "confidence": 0.6, "requiresHumanReview": True}
    assert asyncio.run(_classifier(backend).classify("who approves this")).requires_human_review is True


def test_timeout_yields_default_classification(backend):
    backend.classify_delay = 1.0
    result = asyncio.run(_classifier(backend, timeout_seconds=0.01).classify("hello"))
    assert result.intent == IntentCategory.GENERAL_INQUIRY
    assert result.suggested_agent == AgentType.GENERAL_SUPPORT
    assert result.confidence == 0.5
    assert result.requires_human_review is False


def test_backend_error_yields_default_classification(backend):
    backend.classify_error = AssistantBackendError("classification_not_json")
    result = asyncio.run(_classifier(backend).classify("hello"))
    assert result.intent == IntentCategory.GENERAL_INQUIRY
    assert result.confidence == 0.5


def test_non_dict_reply_yields_default_classification(backend):
    backend.classification = ["document_query"]
    result = asyncio.run(_classifier(backend).classify("permit status"))
    assert result.intent == IntentCategory.GENERAL_INQUIRY


def test_offline_runtime_classifies_ticket_messages_as_document_queries():
    classifier = _classifier(LLMRuntime(api_key=""))
    result = asyncio.run(classifier.classify("What's the status of WRK-2024-5678?"))
    assert result.intent == IntentCategory.DOCUMENT_QUERY
    assert result.suggested_agent == AgentType.DOCUMENT_SUPPORT
    assert result.confidence == 0.85
