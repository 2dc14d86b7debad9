from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from agents.base import BaseAgent
from agents.llm_runtime import LLMRuntime
from compliance.audit_logger import AuditLogger
from models.schemas import AgentType, ClassificationResult, IntentCategory, SessionContext
from settings import SETTINGS

logger = logging.getLogger(__name__)

INTENT_TO_AGENT: Dict[IntentCategory, AgentType] = {
    IntentCategory.DOCUMENT_QUERY: AgentType.DOCUMENT_SUPPORT,
    IntentCategory.TECHNICAL_ISSUE: AgentType.TECHNICAL_SUPPORT,
    IntentCategory.WORKFLOW_HELP: AgentType.WORKFLOW_SUPPORT,
    IntentCategory.GENERAL_INQUIRY: AgentType.GENERAL_SUPPORT,
    IntentCategory.NAVIGATION: AgentType.GENERAL_SUPPORT,
    IntentCategory.UNKNOWN: AgentType.GENERAL_SUPPORT,
}


def default_classification(reasoning: str = "Classification unavailable; using general support.") -> ClassificationResult:
    return ClassificationResult(
        intent=IntentCategory.GENERAL_INQUIRY,
        confidence=0.5,
        suggested_agent=AgentType.GENERAL_SUPPORT,
        reasoning=reasoning,
        requires_human_review=False,
    )


def redacted_context(context: SessionContext | None) -> Dict[str, Any]:
    """Summarise the session for the classifier without ids, names or search text."""
    if context is None:
        return {}
    page = context.page_context or {}
    copilot = page.get("copilot_state") or {}
    summary: Dict[str, Any] = {
        "user_role": context.user_role,
        "current_page": context.current_page,
    }
    for key in ("section", "feature"):
        if page.get(key):
            summary[key] = page[key]
    if copilot:
        summary["has_recent_records"] = bool(copilot.get("recent_record_ids"))
        summary["recent_record_count"] = len(copilot.get("recent_record_ids") or [])
        summary["has_recent_searches"] = bool(copilot.get("recent_searches"))
        summary["has_active_filters"] = bool(copilot.get("current_filters"))
        summary["has_conversation_summary"] = bool(copilot.get("conversation_summary"))
    return summary


class IntentClassifier(BaseAgent):
    def __init__(
        self,
        llm: LLMRuntime | None = None,
        timeout_seconds: float | None = None,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        super().__init__(name="intent_classifier", audit_logger=audit_logger)
        self.llm = llm or LLMRuntime()
        self.timeout_seconds = timeout_seconds or SETTINGS.classification_timeout_seconds

    async def classify(self, text: str, context: SessionContext | None = None) -> ClassificationResult:
        try:
            raw = await asyncio.wait_for(
                self.llm.classify_intent(
                    text=text,
                    intents=[i.value for i in IntentCategory],
                    context=redacted_context(context),
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("classification_timeout", extra={"timeout_seconds": self.timeout_seconds})
            return default_classification("Classification timed out; using general support.")
        except Exception as exc:
            logger.warning("classification_failed", extra={"error": repr(exc)})
            return default_classification()
        if not isinstance(raw, dict):
            logger.warning("classification_malformed", extra={"payload_type": type(raw).__name__})
            return default_classification()
        return self._normalise(raw)

    def _normalise(self, raw: Dict[str, Any]) -> ClassificationResult:
        try:
            intent = IntentCategory(str(raw.get("intent") or ""))
        except ValueError:
            intent = IntentCategory.UNKNOWN
        suggested = raw.get("suggestedAgent") or raw.get("suggested_agent")
        try:
            agent = AgentType(str(suggested)) if suggested else INTENT_TO_AGENT[intent]
        except ValueError:
            agent = INTENT_TO_AGENT[intent]
        try:
            confidence = float(raw.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        # NaN compares false both ways; treat it as no signal.
        if confidence != confidence:
            confidence = 0.5
        return ClassificationResult(
            intent=intent,
            confidence=max(0.0, min(1.0, confidence)),
            suggested_agent=agent,
            reasoning=str(raw.get("reasoning") or f"classified as {intent.value}"),
            requires_human_review=raw.get("requiresHumanReview", raw.get("requires_human_review")) is True,
        )
