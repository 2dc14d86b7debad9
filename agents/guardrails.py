from __future__ import annotations

import asyncio
import logging
import re
from typing import List, Pattern

from agents.llm_runtime import LLMRuntime
from models.schemas import GuardrailResult
from settings import SETTINGS

logger = logging.getLogger(__name__)

JAILBREAK_PATTERNS: List[Pattern[str]] = [
    re.compile(r"ignore\s+(the\s+)?previous\s+instructions", re.IGNORECASE),
    re.compile(r"ignore\s+all\s+previous", re.IGNORECASE),
    re.compile(r"forget\s+everything", re.IGNORECASE),
    re.compile(r"\byou\s+are\s+now\b", re.IGNORECASE),
    re.compile(r"new\s+instructions\s*:", re.IGNORECASE),
    re.compile(r"system\s+prompt", re.IGNORECASE),
    re.compile(r"reveal\s+your\s+(system\s+)?prompt", re.IGNORECASE),
]


class GuardrailGate:
    """Screens raw input before any expensive processing.

    Tier one is a fixed set of prompt-injection patterns checked locally. Tier two is the
    backend moderation endpoint. When moderation itself is unreachable the gate follows
    ``fail_open``: pass and log, or block.
    """

    def __init__(
        self,
        llm: LLMRuntime | None = None,
        enabled: bool | None = None,
        fail_open: bool | None = None,
        moderation_timeout_seconds: float | None = None,
        patterns: List[Pattern[str]] | None = None,
    ) -> None:
        self.llm = llm or LLMRuntime()
        self.enabled = SETTINGS.enable_guardrails if enabled is None else enabled
        self.fail_open = SETTINGS.moderation_fail_open if fail_open is None else fail_open
        self.moderation_timeout_seconds = moderation_timeout_seconds or SETTINGS.moderation_timeout_seconds
        self.patterns = patterns or JAILBREAK_PATTERNS

    async def check(self, text: str) -> GuardrailResult:
        if not self.enabled:
            return GuardrailResult(passed=True, flagged=False, confidence=1.0)

        for pattern in self.patterns:
            if pattern.search(text or ""):
                logger.warning("guardrail_jailbreak_pattern")
                return GuardrailResult(
                    passed=False,
                    flagged=True,
                    reason="Potential jailbreak attempt detected",
                    category="jailbreak",
                    confidence=0.9,
                )

        try:
            moderation = await asyncio.wait_for(self.llm.moderate(text), timeout=self.moderation_timeout_seconds)
        except Exception as exc:
            if self.fail_open:
                logger.warning("moderation_failed_fail_open", extra={"error": repr(exc)})
                return GuardrailResult(passed=True, flagged=False, reason="moderation_unavailable", confidence=0.0)
            logger.warning("moderation_failed_fail_closed", extra={"error": repr(exc)})
            return GuardrailResult(passed=False, flagged=False, reason="moderation_unavailable", confidence=0.0)

        if moderation.get("flagged"):
            scores = [float(v) for v in (moderation.get("category_scores") or {}).values()]
            confidence = max(scores) if scores else 1.0
            logger.warning("moderation_flagged")
            return GuardrailResult(
                passed=False,
                flagged=True,
                reason="Content flagged by moderation",
                category="inappropriate",
                confidence=min(1.0, max(0.0, confidence)),
            )
        return GuardrailResult(passed=True, flagged=False, confidence=1.0)
