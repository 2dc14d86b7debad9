from __future__ import annotations

import asyncio
import json
import logging
import uuid
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from pydantic import ValidationError

from agents.approval_workflow import ApprovalWorkflow, PendingRun
from agents.base import BaseAgent
from agents.fast_path import FastPathResolver, extract_tickets
from agents.guardrails import GuardrailGate
from agents.intent_classifier import IntentClassifier
from agents.llm_runtime import AssistantBackendError, LLMRuntime
from compliance.audit_logger import AuditLogger
from memory.session_memory import SessionStore, extract_page_context, generate_session_id
from models.schemas import (
    CHAT_WIDGET_ADAPTER,
    AgentType,
    AIMessage,
    ApprovalWidget,
    ChatErrorCode,
    ChatResponse,
    ChatStatus,
    ClassificationResult,
    CopilotState,
    FastPathResolution,
    IntentCategory,
    PendingAction,
    RunResult,
    RunStatus,
    SessionContext,
)
from settings import SETTINGS
from tools.action_tools import ActionExecutor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], Awaitable[None]]

WIDGET_DELIMITER = "---a2ui_JSON---"
APPROVAL_PROMPT = "This action requires your approval before proceeding."

ERROR_MESSAGES: Dict[ChatErrorCode, str] = {
    ChatErrorCode.GUARDRAIL_BLOCKED: "I'm sorry, but I can't process that request. Please rephrase your question.",
    ChatErrorCode.THREAD_CREATION_FAILED: "I couldn't start a conversation right now. Please try again in a moment.",
    ChatErrorCode.ADD_MESSAGE_FAILED: "I couldn't deliver your message. Please try sending it again.",
    ChatErrorCode.ASSISTANT_RUN_FAILED: "I apologize, but I encountered an error. Please try again.",
    ChatErrorCode.TURN_IN_PROGRESS: "I'm still working on your previous message. Please wait for it to finish.",
    ChatErrorCode.UNKNOWN: "I apologize, but I encountered an error. Please try again.",
}

QUICK_ACTIONS_BY_INTENT: Dict[IntentCategory, List[str]] = {
    IntentCategory.DOCUMENT_QUERY: ["Check my document status", "View pending permits", "See recent documents"],
    IntentCategory.TECHNICAL_ISSUE: ["Report a bug", "System not loading", "Can't upload document"],
    IntentCategory.WORKFLOW_HELP: ["How to submit a permit", "Approval process timeline", "Required documents checklist"],
    IntentCategory.GENERAL_INQUIRY: ["How to get started", "Contact support", "View my tasks"],
    IntentCategory.NAVIGATION: ["Go to dashboard", "View my tasks", "See all documents"],
}


def parse_widgets(text: str) -> Tuple[str, List[Any]]:
    """Split a persona reply into display text and validated widgets.

    Personas append widget JSON after ``WIDGET_DELIMITER``: a single widget object, a list of
    them, or ``{"widgets": [...]}``. Payloads that fail validation are dropped.
    """
    if WIDGET_DELIMITER not in (text or ""):
        return (text or "").strip(), []
    content, _, raw = text.partition(WIDGET_DELIMITER)
    try:
        payload = json.loads(raw.strip())
    except json.JSONDecodeError:
        logger.warning("widget_payload_not_json")
        return content.strip(), []
    if isinstance(payload, dict):
        items = payload["widgets"] if isinstance(payload.get("widgets"), list) else [payload]
    elif isinstance(payload, list):
        items = payload
    else:
        items = []
    widgets: List[Any] = []
    for item in items:
        try:
            widgets.append(CHAT_WIDGET_ADAPTER.validate_python(item))
        except ValidationError as exc:
            kind = item.get("type") if isinstance(item, dict) else type(item).__name__
            logger.warning("widget_payload_invalid", extra={"widget_type": kind, "errors": exc.error_count()})
    return content.strip(), widgets


class ConversationOrchestrator(BaseAgent):
    """Runs one chat turn end to end and always answers with a single ``ChatResponse``."""

    def __init__(
        self,
        llm: LLMRuntime | None = None,
        session_store: SessionStore | None = None,
        guardrails: GuardrailGate | None = None,
        classifier: IntentClassifier | None = None,
        fast_path: FastPathResolver | None = None,
        approvals: ApprovalWorkflow | None = None,
        action_executor: ActionExecutor | None = None,
        audit_logger: AuditLogger | None = None,
        assistant_ids: Dict[AgentType, str] | None = None,
        poll_interval_seconds: float | None = None,
        run_timeout_seconds: float | None = None,
        max_action_rounds: int | None = None,
    ) -> None:
        super().__init__(name="conversation_orchestrator", audit_logger=audit_logger)
        self.llm = llm or LLMRuntime()
        self.session_store = session_store or SessionStore()
        self.guardrails = guardrails or GuardrailGate(llm=self.llm)
        self.classifier = classifier or IntentClassifier(llm=self.llm, audit_logger=self.audit_logger)
        self.fast_path = fast_path or FastPathResolver()
        self.approvals = approvals or ApprovalWorkflow(audit_logger=self.audit_logger)
        self.action_executor = action_executor or ActionExecutor(
            permit_tools=self.fast_path.permit_tools,
            complaint_tools=self.fast_path.complaint_tools,
            knowledge_tools=self.fast_path.knowledge_tools,
        )
        self.assistant_ids = assistant_ids or {
            AgentType.GENERAL_SUPPORT: SETTINGS.assistant_id_general_support,
            AgentType.DOCUMENT_SUPPORT: SETTINGS.assistant_id_document_support,
            AgentType.TECHNICAL_SUPPORT: SETTINGS.assistant_id_technical_support,
            AgentType.WORKFLOW_SUPPORT: SETTINGS.assistant_id_workflow_support,
        }
        self.poll_interval_seconds = poll_interval_seconds if poll_interval_seconds is not None else SETTINGS.run_poll_interval_seconds
        self.run_timeout_seconds = run_timeout_seconds or SETTINGS.run_timeout_seconds
        self.max_action_rounds = max_action_rounds or SETTINGS.max_action_rounds
        self._in_flight: Set[str] = set()
        self._in_flight_lock = Lock()

    # Turn entry points ----------------------------------------------------------

    async def process(
        self,
        text: str,
        context: SessionContext,
        thread_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ChatResponse:
        session_id = context.session_id
        if not self._claim(session_id):
            logger.info("turn_rejected_in_progress", extra={"session_id": session_id})
            return self._error_response(ChatErrorCode.TURN_IN_PROGRESS, thread_id=thread_id)
        try:
            return await self._run_turn(text, context, thread_id, on_progress)
        except Exception:
            logger.exception("chat_turn_failed", extra={"session_id": session_id})
            return self._error_response(ChatErrorCode.UNKNOWN, thread_id=thread_id)
        finally:
            self._release(session_id)

    async def send_message(
        self,
        session_id: str,
        text: str,
        current_page: str = "/",
        user_id: str | None = None,
        user_role: str | None = None,
        search_params: Dict[str, str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ChatResponse:
        page_context = extract_page_context(current_page, search_params)
        changes: Dict[str, Any] = {"current_page": current_page, "page_context": page_context}
        if user_id is not None:
            changes["user_id"] = user_id
        if user_role is not None:
            changes["user_role"] = user_role
        if await self.session_store.update_context(session_id, **changes) is None:
            await self.session_store.create_session(session_id, SessionContext(session_id=session_id, **changes))
        context = await self.session_store.get_enriched_context(session_id)
        return await self.process(text, context or SessionContext(session_id=session_id, **changes), on_progress=on_progress)

    async def submit_approval(
        self,
        thread_id: str,
        run_id: str,
        approval_id: str,
        approved: bool,
        on_progress: ProgressCallback | None = None,
    ) -> ChatResponse:
        """Apply a human decision to a paused run.

        Raises ``ApprovalNotFoundError`` for unknown runs, unknown approvals and runs whose
        session has expired, and ``ApprovalAlreadyResolvedError`` for repeat decisions.
        """
        pending = self.approvals.get_run(thread_id, run_id)
        if pending is not None and await self.session_store.get_session(pending.session_id) is None:
            self.approvals.discard_run(thread_id, run_id)
            pending = None
        session_id = pending.session_id if pending is not None else None
        if session_id is not None and not self._claim(session_id):
            logger.info("approval_rejected_in_progress", extra={"session_id": session_id, "run_id": run_id})
            return self._error_response(ChatErrorCode.TURN_IN_PROGRESS, thread_id=thread_id)
        try:
            return await self._apply_decision(thread_id, run_id, approval_id, approved, on_progress)
        finally:
            if session_id is not None:
                self._release(session_id)

    async def _apply_decision(
        self,
        thread_id: str,
        run_id: str,
        approval_id: str,
        approved: bool,
        on_progress: ProgressCallback | None,
    ) -> ChatResponse:
        pending, approval = self.approvals.resolve(thread_id, run_id, approval_id, approved)

        if approved:
            result = await self.action_executor.execute(approval.tool_name, approval.parameters)
            outcome = {"status": "approved", "message": "User approved this action", "result": result}
        else:
            outcome = {"status": "rejected", "message": "User rejected this action"}
        self.build_decision_log(
            pending.session_id,
            action="approval_resolved",
            reasoning=f"{approval.tool_name} {approval.status.value} by user",
            outcome=approval.status.value,
            metadata={"approval_id": approval.id, "run_id": run_id, "risk_level": approval.risk_level.value},
        )

        completed = self.approvals.record_outcome(thread_id, run_id, approval.id, outcome)
        if completed is None:
            remaining = pending.remaining()
            if remaining:
                return self._approval_response(pending, remaining)
            return ChatResponse(
                message=AIMessage(id=f"msg_{uuid.uuid4().hex[:12]}", content="Your decision has been recorded.", thread_id=thread_id, run_id=run_id),
                status=ChatStatus.SUCCESS,
            )
        return await self._resume_run(completed, on_progress)

    # Session management -----------------------------------------------------------

    async def initialize_session(
        self,
        user_id: str | None = None,
        user_role: str = "guest",
        current_page: str = "/",
        search_params: Dict[str, str] | None = None,
        session_id: str | None = None,
    ) -> SessionContext:
        sid = session_id or generate_session_id()
        context = SessionContext(
            session_id=sid,
            user_id=user_id,
            user_role=user_role,
            current_page=current_page,
            page_context=extract_page_context(current_page, search_params),
        )
        await self.session_store.create_session(sid, context)
        return await self.session_store.get_enriched_context(sid) or context

    async def update_copilot_context(
        self,
        session_id: str,
        record_id: str | None = None,
        task_id: str | None = None,
        search: str | None = None,
        filters: Dict[str, Any] | None = None,
    ) -> Optional[CopilotState]:
        data = await self.session_store.get_session(session_id)
        if data is None:
            return None
        if record_id:
            await self.session_store.add_recent_record(session_id, record_id)
        if task_id:
            await self.session_store.add_recent_task(session_id, task_id)
        if search:
            await self.session_store.add_recent_search(session_id, search)
        if filters is not None:
            await self.session_store.update_filters(session_id, filters)
        refreshed = await self.session_store.get_session(session_id)
        return refreshed.copilot_state.model_copy() if refreshed else None

    async def end_session(self, session_id: str) -> None:
        dropped = self.approvals.discard_session(session_id)
        await self.session_store.delete_session(session_id)
        logger.info("session_ended", extra={"session_id": session_id, "discarded_runs": dropped})

    def session_stats(self) -> Dict[str, int]:
        with self._in_flight_lock:
            in_flight = len(self._in_flight)
        return {
            "active_sessions": self.session_store.active_sessions_count(),
            "pending_approval_runs": self.approvals.pending_runs_count(),
            "turns_in_flight": in_flight,
        }

    # Pipeline ---------------------------------------------------------------------

    async def _run_turn(
        self,
        text: str,
        context: SessionContext,
        thread_id: str | None,
        on_progress: ProgressCallback | None,
    ) -> ChatResponse:
        session_id = context.session_id

        guardrail = await self.guardrails.check(text)
        if not guardrail.passed:
            self.build_decision_log(
                session_id,
                action="guardrail_blocked",
                reasoning=guardrail.reason or "blocked",
                outcome="blocked",
                metadata={"category": guardrail.category, "confidence": guardrail.confidence},
            )
            return self._error_response(ChatErrorCode.GUARDRAIL_BLOCKED, thread_id=thread_id)

        if await self.session_store.get_session(session_id) is None:
            page_context = {k: v for k, v in context.page_context.items() if k != "copilot_state"}
            await self.session_store.create_session(session_id, context.model_copy(update={"page_context": page_context}), thread_id)
        enriched = await self.session_store.get_enriched_context(session_id) or context

        classification, classify_ms = await self.timed(self.classifier.classify(text, enriched))
        logger.info(
            "intent_classified",
            extra={
                "session_id": session_id,
                "intent": classification.intent.value,
                "confidence": classification.confidence,
                "duration_ms": classify_ms,
            },
        )

        resolution, lookup_ms = await self.timed(self.fast_path.try_resolve(text))
        if resolution is not None:
            return await self._fast_path_response(session_id, text, resolution, classification, lookup_ms)

        active_thread = thread_id or await self.session_store.get_thread(session_id)
        if not active_thread:
            try:
                active_thread = await self.llm.create_thread(
                    metadata={"session_id": session_id, "user_role": enriched.user_role, "page": enriched.current_page}
                )
            except Exception as exc:
                logger.error("thread_creation_failed", extra={"session_id": session_id, "error": repr(exc)})
                return self._error_response(ChatErrorCode.THREAD_CREATION_FAILED, classification=classification)
        await self.session_store.set_thread(session_id, active_thread)

        try:
            await self.llm.append_message(active_thread, text)
        except Exception as exc:
            logger.error("add_message_failed", extra={"session_id": session_id, "thread_id": active_thread, "error": repr(exc)})
            return self._error_response(ChatErrorCode.ADD_MESSAGE_FAILED, thread_id=active_thread, classification=classification)

        agent_type = classification.suggested_agent
        unmatched = extract_tickets(text)
        try:
            run_id = await self.llm.start_run(
                active_thread,
                self._assistant_id(agent_type),
                instructions=self._context_instructions(enriched, unmatched),
            )
            result, settled = await self._drive_run(active_thread, run_id, on_progress)
        except Exception as exc:
            logger.error("assistant_run_failed", extra={"session_id": session_id, "thread_id": active_thread, "error": repr(exc)})
            return self._error_response(ChatErrorCode.ASSISTANT_RUN_FAILED, thread_id=active_thread, classification=classification)

        if result.status == RunStatus.REQUIRES_ACTION:
            pending = self.approvals.open_run(
                session_id,
                active_thread,
                result.run_id,
                agent_type,
                result.pending_actions,
                outcomes=settled,
                intent=classification.intent,
                confidence=classification.confidence,
            )
            return self._approval_response(pending, pending.remaining())

        return await self._completed_response(session_id, active_thread, result, agent_type, classification, text)

    async def _resume_run(self, pending: PendingRun, on_progress: ProgressCallback | None) -> ChatResponse:
        classification = ClassificationResult(
            intent=pending.intent or IntentCategory.GENERAL_INQUIRY,
            confidence=pending.confidence if pending.confidence is not None else 0.5,
            suggested_agent=pending.agent_type,
        )
        try:
            await self.llm.submit_action_outcomes(pending.thread_id, pending.run_id, pending.outcome_batch())
            result, settled = await self._drive_run(pending.thread_id, pending.run_id, on_progress)
        except Exception as exc:
            logger.error(
                "assistant_resume_failed",
                extra={"session_id": pending.session_id, "run_id": pending.run_id, "error": repr(exc)},
            )
            return self._error_response(ChatErrorCode.ASSISTANT_RUN_FAILED, thread_id=pending.thread_id, classification=classification)

        if result.status == RunStatus.REQUIRES_ACTION:
            reopened = self.approvals.open_run(
                pending.session_id,
                pending.thread_id,
                result.run_id,
                pending.agent_type,
                result.pending_actions,
                outcomes=settled,
                intent=pending.intent,
                confidence=pending.confidence,
            )
            return self._approval_response(reopened, reopened.remaining())
        return await self._completed_response(pending.session_id, pending.thread_id, result, pending.agent_type, classification, None)

    async def _drive_run(
        self,
        thread_id: str,
        run_id: str,
        on_progress: ProgressCallback | None,
    ) -> Tuple[RunResult, Dict[str, Dict[str, Any]]]:
        """Poll a run to a resting state, executing non-sensitive actions along the way.

        Returns the final ``RunResult``: completed, or paused on actions that need approval
        together with the outcomes already settled for that pause. One ``run_timeout_seconds``
        deadline covers every poll and action round.
        """
        try:
            return await asyncio.wait_for(self._drive_rounds(thread_id, run_id, on_progress), timeout=self.run_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("assistant_run_timeout", extra={"thread_id": thread_id, "run_id": run_id, "timeout_seconds": self.run_timeout_seconds})
            await self._cancel_quietly(thread_id, run_id)
            raise AssistantBackendError("run_timeout")

    async def _drive_rounds(
        self,
        thread_id: str,
        run_id: str,
        on_progress: ProgressCallback | None,
    ) -> Tuple[RunResult, Dict[str, Dict[str, Any]]]:
        rounds = 0
        while True:
            result = await self._await_run(thread_id, run_id, on_progress)
            if result.status == RunStatus.COMPLETED:
                return result, {}
            if result.status != RunStatus.REQUIRES_ACTION:
                raise AssistantBackendError(f"run ended with status {result.status.value}: {result.last_error or 'no detail'}")

            settled: Dict[str, Dict[str, Any]] = {}
            gated: List[PendingAction] = []
            for action in result.pending_actions:
                if self.approvals.requires_approval(action.name):
                    gated.append(action)
                else:
                    settled[action.id] = await self.action_executor.execute(action.name, action.arguments)
            if gated:
                return result, settled

            rounds += 1
            if rounds > self.max_action_rounds:
                await self._cancel_quietly(thread_id, run_id)
                raise AssistantBackendError("max_action_rounds_exceeded")
            await self.llm.submit_action_outcomes(
                thread_id,
                run_id,
                [{"action_id": action.id, "output": settled[action.id]} for action in result.pending_actions],
            )

    async def _await_run(self, thread_id: str, run_id: str, on_progress: ProgressCallback | None) -> RunResult:
        while True:
            result = await self.llm.retrieve_run(thread_id, run_id)
            if result.status not in (RunStatus.QUEUED, RunStatus.IN_PROGRESS):
                return result
            await self._notify(on_progress, {"stage": "run_in_progress", "thread_id": thread_id, "run_id": run_id})
            await asyncio.sleep(self.poll_interval_seconds)

    async def _cancel_quietly(self, thread_id: str, run_id: str) -> None:
        try:
            await self.llm.cancel_run(thread_id, run_id)
        except Exception as exc:
            logger.warning("assistant_run_cancel_failed", extra={"thread_id": thread_id, "run_id": run_id, "error": repr(exc)})

    async def _notify(self, on_progress: ProgressCallback | None, event: Dict[str, Any]) -> None:
        if on_progress is None:
            return
        try:
            await on_progress(event)
        except Exception as exc:
            logger.warning("progress_callback_failed", extra={"stage": event.get("stage"), "error": repr(exc)})

    # Responses --------------------------------------------------------------------

    async def _fast_path_response(
        self,
        session_id: str,
        text: str,
        resolution: FastPathResolution,
        classification: ClassificationResult,
        duration_ms: int = 0,
    ) -> ChatResponse:
        if resolution.kind == "ticket":
            for ticket in resolution.matched:
                await self.session_store.add_recent_record(session_id, ticket)
        else:
            await self.session_store.add_recent_search(session_id, text.strip()[:200])
        self.build_decision_log(
            session_id,
            action="fast_path_resolved",
            reasoning=f"{resolution.kind} match",
            duration_ms=duration_ms,
            metadata={"matched": resolution.matched},
        )
        message = AIMessage(
            id=f"fast_{uuid.uuid4().hex[:12]}",
            content=resolution.summary,
            widgets=list(resolution.widgets),
            intent=classification.intent,
            confidence=classification.confidence,
            agent_type=classification.suggested_agent,
        )
        return ChatResponse(message=message, status=ChatStatus.SUCCESS, suggestions=self._suggestions(classification.intent))

    async def _completed_response(
        self,
        session_id: str,
        thread_id: str,
        result: RunResult,
        agent_type: AgentType,
        classification: ClassificationResult,
        user_text: str | None,
    ) -> ChatResponse:
        content, widgets = parse_widgets(result.output_text or "")
        if user_text:
            summary = f"{classification.intent.value}: {user_text.strip()[:160]}"
            await self.session_store.update_conversation_summary(session_id, summary)
        message = AIMessage(
            id=result.output_message_id or f"msg_{uuid.uuid4().hex[:12]}",
            content=content,
            widgets=widgets,
            intent=classification.intent,
            confidence=classification.confidence,
            thread_id=thread_id,
            run_id=result.run_id,
            agent_type=agent_type,
        )
        return ChatResponse(message=message, status=ChatStatus.SUCCESS, suggestions=self._suggestions(classification.intent))

    def _approval_response(self, pending: PendingRun, remaining) -> ChatResponse:
        # Snapshot so callers never hold the workflow's live records.
        approvals = [approval.model_copy() for approval in remaining]
        message = AIMessage(
            id=f"approval_{pending.run_id}",
            content=APPROVAL_PROMPT,
            widgets=[ApprovalWidget(approvals=approvals)],
            intent=pending.intent,
            confidence=pending.confidence,
            thread_id=pending.thread_id,
            run_id=pending.run_id,
            agent_type=pending.agent_type,
            requires_approval=True,
            approval_id=approvals[0].id if approvals else None,
        )
        return ChatResponse(
            message=message,
            status=ChatStatus.PENDING_APPROVAL,
            requires_approval=approvals[0] if approvals else None,
        )

    def _error_response(
        self,
        code: ChatErrorCode,
        thread_id: str | None = None,
        classification: ClassificationResult | None = None,
    ) -> ChatResponse:
        message = AIMessage(
            id=f"error_{uuid.uuid4().hex[:12]}",
            content=ERROR_MESSAGES[code],
            thread_id=thread_id,
            intent=classification.intent if classification else None,
            confidence=classification.confidence if classification else None,
        )
        return ChatResponse(message=message, status=ChatStatus.ERROR, error=code.value, error_code=code)

    # Helpers ----------------------------------------------------------------------

    def _claim(self, session_id: str) -> bool:
        with self._in_flight_lock:
            if session_id in self._in_flight:
                return False
            self._in_flight.add(session_id)
            return True

    def _release(self, session_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(session_id)

    def _assistant_id(self, agent_type: AgentType) -> str:
        return self.assistant_ids.get(agent_type) or self.assistant_ids.get(AgentType.GENERAL_SUPPORT, "")

    def _suggestions(self, intent: IntentCategory) -> List[str]:
        return list(QUICK_ACTIONS_BY_INTENT.get(intent, QUICK_ACTIONS_BY_INTENT[IntentCategory.GENERAL_INQUIRY]))

    def _context_instructions(self, context: SessionContext, unmatched_tickets: List[str]) -> str:
        page = context.page_context or {}
        copilot = page.get("copilot_state") or {}
        lines = [
            "Current context:",
            f"- Role: {context.user_role}",
            f"- Page: {context.current_page}",
        ]
        if page.get("section"):
            lines.append(f"- Section: {page['section']} ({page.get('feature', 'general')})")
        if copilot:
            lines.append(f"- Recently viewed records: {len(copilot.get('recent_record_ids') or [])}")
            lines.append(f"- Filters active: {'yes' if copilot.get('current_filters') else 'no'}")
        if unmatched_tickets:
            lines.append(f"- Ticket numbers not found in records: {', '.join(unmatched_tickets)}")
            lines.append("Tell the user the ticket could not be found and ask them to confirm the number.")
        lines.append("Use this context to give relevant assistance.")
        return "\n".join(lines)
