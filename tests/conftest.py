from __future__ import annotations

import asyncio
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Dict, List

import pytest

from agents.llm_runtime import AssistantBackendError
from agents.orchestrator import ConversationOrchestrator
from compliance.audit_logger import AuditLogger
from memory.session_memory import SessionStore
from models.schemas import RunResult, RunStatus


class FakeBackend:
    """Scripted stand-in for LLMRuntime with per-method call counters."""

    provider = "fake"
    model = "fake-model"

    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self.flagged = False
        self.category_scores: Dict[str, float] = {}
        self.moderation_error: Exception | None = None
        self.classification: Any = {"intent": "general_inquiry", "confidence": 0.8, "reasoning": "fake"}
        self.classify_delay = 0.0
        self.classify_error: Exception | None = None
        self.thread_error: Exception | None = None
        self.append_error: Exception | None = None
        self.start_error: Exception | None = None
        self.submit_error: Exception | None = None
        self.run_results: deque = deque()
        self.submitted: List[List[Dict[str, Any]]] = []
        self.cancelled: List[str] = []
        self.last_classify_context: Dict[str, Any] | None = None
        self.last_instructions: str | None = None
        self.last_assistant_id: str | None = None

    def available(self) -> bool:
        return True

    async def moderate(self, text: str) -> Dict[str, Any]:
        self.calls["moderate"] += 1
        if self.moderation_error is not None:
            raise self.moderation_error
        return {"flagged": self.flagged, "category_scores": dict(self.category_scores), "provider": "fake"}

    async def classify_intent(self, text, intents, context=None):
        self.calls["classify_intent"] += 1
        self.last_classify_context = context
        if self.classify_delay:
            await asyncio.sleep(self.classify_delay)
        if self.classify_error is not None:
            raise self.classify_error
        return dict(self.classification) if isinstance(self.classification, dict) else self.classification

    async def create_thread(self, metadata=None) -> str:
        self.calls["create_thread"] += 1
        if self.thread_error is not None:
            raise self.thread_error
        return "thread_1"

    async def append_message(self, thread_id: str, text: str) -> None:
        self.calls["append_message"] += 1
        if self.append_error is not None:
            raise self.append_error

    async def start_run(self, thread_id: str, assistant_id: str, instructions: str = "") -> str:
        self.calls["start_run"] += 1
        self.last_assistant_id = assistant_id
        self.last_instructions = instructions
        if self.start_error is not None:
            raise self.start_error
        return "run_1"

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunResult:
        self.calls["retrieve_run"] += 1
        if len(self.run_results) > 1:
            return self.run_results.popleft()
        if self.run_results:
            return self.run_results[0]
        return RunResult(run_id=run_id, status=RunStatus.COMPLETED, output_message_id="msg_1", output_text="Happy to help.")

    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        self.calls["cancel_run"] += 1
        self.cancelled.append(run_id)

    async def submit_action_outcomes(self, thread_id: str, run_id: str, outcomes) -> None:
        self.calls["submit_action_outcomes"] += 1
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(list(outcomes))


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def backend_error():
    return AssistantBackendError


@pytest.fixture
def make_orchestrator(backend, clock):
    def _make(**overrides) -> ConversationOrchestrator:
        audit = AuditLogger(path="")
        options: Dict[str, Any] = {
            "llm": backend,
            "session_store": SessionStore(ttl_seconds=1800, clock=clock),
            "audit_logger": audit,
            "poll_interval_seconds": 0,
            "run_timeout_seconds": 2,
        }
        options.update(overrides)
        return ConversationOrchestrator(**options)

    return _make
