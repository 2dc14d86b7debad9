from __future__ import annotations

import json
import logging
import os
from threading import Lock
from typing import Any, Dict

from models.schemas import AgentDecisionLog, ToolApproval
from settings import SETTINGS

logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only JSONL trail of guardrail, fast-path and approval decisions.

    An empty path disables file output; records are still emitted at DEBUG level.
    """

    def __init__(self, path: str | None = None) -> None:
        self.path = SETTINGS.audit_log_path if path is None else path
        self._lock = Lock()
        if self.path:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def log_decision(self, record: AgentDecisionLog) -> None:
        self.log_json({"kind": "decision", **record.model_dump(mode="json")})

    def log_approval(self, session_id: str, approval: ToolApproval) -> None:
        self.log_json(
            {
                "kind": "approval",
                "session_id": session_id,
                "approval_id": approval.id,
                "tool_name": approval.tool_name,
                "risk_level": approval.risk_level.value,
                "status": approval.status.value,
                "thread_id": approval.thread_id,
                "run_id": approval.run_id,
            }
        )

    def log_json(self, payload: Dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True, default=str)
        logger.debug("audit_record", extra={"audit": payload})
        if not self.path:
            return
        with self._lock:
            try:
                with open(self.path, "a", encoding="utf-8") as fh:
                    fh.write(line + "\n")
            except OSError as exc:
                logger.warning("audit_log_write_failed", extra={"path": self.path, "error": repr(exc)})
