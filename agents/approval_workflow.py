from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple

from compliance.audit_logger import AuditLogger
from models.schemas import (
    AgentType,
    ApprovalAlreadyResolvedError,
    ApprovalNotFoundError,
    ApprovalStatus,
    IntentCategory,
    PendingAction,
    RiskLevel,
    ToolApproval,
)
from settings import SETTINGS

logger = logging.getLogger(__name__)

SENSITIVE_TOOLS: Dict[str, Tuple[RiskLevel, str]] = {
    "delete_document": (RiskLevel.HIGH, "Permanently delete a document or record"),
    "update_permit_status": (RiskLevel.MEDIUM, "Change the status of a permit application"),
    "modify_user_role": (RiskLevel.HIGH, "Change a user's role and permissions"),
    "bulk_update": (RiskLevel.HIGH, "Apply one change to many records at once"),
    "export_sensitive_data": (RiskLevel.HIGH, "Export records that contain personal data"),
}


@dataclass
class PendingRun:
    """A paused assistant run waiting on one or more human decisions."""

    session_id: str
    thread_id: str
    run_id: str
    agent_type: AgentType
    actions: List[PendingAction]
    approvals: "OrderedDict[str, ToolApproval]"
    outcomes: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    intent: Optional[IntentCategory] = None
    confidence: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def remaining(self) -> List[ToolApproval]:
        return [a for a in self.approvals.values() if a.status == ApprovalStatus.PENDING]

    def is_complete(self) -> bool:
        return all(action.id in self.outcomes for action in self.actions)

    def outcome_batch(self) -> List[Dict[str, Any]]:
        return [{"action_id": action.id, "output": self.outcomes[action.id]} for action in self.actions]


class ApprovalWorkflow:
    def __init__(
        self,
        enabled: bool | None = None,
        audit_logger: AuditLogger | None = None,
        sensitive_tools: Dict[str, Tuple[RiskLevel, str]] | None = None,
        tombstone_limit: int = 1000,
    ) -> None:
        self.enabled = SETTINGS.enable_human_in_loop if enabled is None else enabled
        self.audit_logger = audit_logger or AuditLogger()
        self.sensitive_tools = dict(sensitive_tools or SENSITIVE_TOOLS)
        self.tombstone_limit = tombstone_limit
        self._runs: Dict[Tuple[str, str], PendingRun] = {}
        self._tombstones: "OrderedDict[str, ApprovalStatus]" = OrderedDict()
        self._lock = Lock()

    def is_sensitive(self, tool_name: str) -> bool:
        return tool_name in self.sensitive_tools

    def requires_approval(self, tool_name: str) -> bool:
        return self.enabled and self.is_sensitive(tool_name)

    def build_approval(self, action: PendingAction, thread_id: str, run_id: str) -> ToolApproval:
        risk, description = self.sensitive_tools.get(action.name, (RiskLevel.HIGH, f"Execute {action.name}"))
        return ToolApproval(
            id=action.id,
            tool_name=action.name,
            tool_description=description,
            parameters=dict(action.arguments),
            reasoning="This action changes records and needs your confirmation.",
            risk_level=risk,
            requires_confirmation=True,
            thread_id=thread_id,
            run_id=run_id,
        )

    def open_run(
        self,
        session_id: str,
        thread_id: str,
        run_id: str,
        agent_type: AgentType,
        actions: Iterable[PendingAction],
        outcomes: Dict[str, Dict[str, Any]] | None = None,
        intent: IntentCategory | None = None,
        confidence: float | None = None,
    ) -> PendingRun:
        """Register a paused run; actions without an outcome yet become approvals."""
        action_list = list(actions)
        settled = dict(outcomes or {})
        approvals: "OrderedDict[str, ToolApproval]" = OrderedDict(
            (a.id, self.build_approval(a, thread_id, run_id)) for a in action_list if a.id not in settled
        )
        pending = PendingRun(
            session_id=session_id,
            thread_id=thread_id,
            run_id=run_id,
            agent_type=agent_type,
            actions=action_list,
            approvals=approvals,
            outcomes=settled,
            intent=intent,
            confidence=confidence,
        )
        with self._lock:
            self._runs[(thread_id, run_id)] = pending
        for approval in approvals.values():
            self.audit_logger.log_approval(session_id, approval)
        logger.info("approval_run_opened", extra={"session_id": session_id, "run_id": run_id, "approvals": len(approvals)})
        return pending

    def get_run(self, thread_id: str, run_id: str) -> Optional[PendingRun]:
        with self._lock:
            return self._runs.get((thread_id, run_id))

    def resolve(self, thread_id: str, run_id: str, approval_id: str, approved: bool) -> Tuple[PendingRun, ToolApproval]:
        with self._lock:
            if approval_id in self._tombstones:
                raise ApprovalAlreadyResolvedError(f"approval {approval_id} already {self._tombstones[approval_id].value}")
            pending = self._runs.get((thread_id, run_id))
            if pending is None:
                raise ApprovalNotFoundError(f"no pending run {run_id} on thread {thread_id}")
            approval = pending.approvals.get(approval_id)
            if approval is None:
                raise ApprovalNotFoundError(f"approval {approval_id} is not part of run {run_id}")
            approval.resolve(approved)
        self.audit_logger.log_approval(pending.session_id, approval)
        return pending, approval

    def record_outcome(self, thread_id: str, run_id: str, action_id: str, outcome: Dict[str, Any]) -> Optional[PendingRun]:
        """Store an outcome; returns the run exactly once, when it became complete and was closed."""
        with self._lock:
            pending = self._runs.get((thread_id, run_id))
            if pending is None:
                return None
            pending.outcomes[action_id] = dict(outcome)
            if not pending.is_complete():
                return None
            self._close_locked(pending)
            return pending

    def discard_run(self, thread_id: str, run_id: str) -> Optional[PendingRun]:
        with self._lock:
            pending = self._runs.pop((thread_id, run_id), None)
        if pending is not None:
            logger.info("approval_run_discarded", extra={"session_id": pending.session_id, "run_id": run_id})
        return pending

    def discard_session(self, session_id: str) -> int:
        with self._lock:
            keys = [key for key, pending in self._runs.items() if pending.session_id == session_id]
            for key in keys:
                self._runs.pop(key, None)
        return len(keys)

    def pending_runs_count(self) -> int:
        with self._lock:
            return len(self._runs)

    def _close_locked(self, pending: PendingRun) -> None:
        self._runs.pop((pending.thread_id, pending.run_id), None)
        for approval in pending.approvals.values():
            if approval.status != ApprovalStatus.PENDING:
                self._tombstones[approval.id] = approval.status
        while len(self._tombstones) > self.tombstone_limit:
            self._tombstones.popitem(last=False)
