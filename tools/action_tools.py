from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

from tools.knowledge_tools import KnowledgeBaseTools
from tools.record_tools import ComplaintRecordTools, PermitRecordTools

logger = logging.getLogger(__name__)

ActionHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class ActionExecutor:
    """Runs actions a persona asks for once they are cleared to execute.

    Read-only lookups are built in. Mutating actions (deletes, status changes, exports)
    belong to the host application, which registers them with ``register``.
    """

    def __init__(
        self,
        permit_tools: PermitRecordTools | None = None,
        complaint_tools: ComplaintRecordTools | None = None,
        knowledge_tools: KnowledgeBaseTools | None = None,
    ) -> None:
        self.permit_tools = permit_tools or PermitRecordTools()
        self.complaint_tools = complaint_tools or ComplaintRecordTools()
        self.knowledge_tools = knowledge_tools or KnowledgeBaseTools()
        self._handlers: Dict[str, ActionHandler] = {
            "get_permit_status": self._get_permit_status,
            "get_complaint_status": self._get_complaint_status,
            "search_knowledge_base": self._search_knowledge_base,
        }

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    async def execute(self, name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        handler = self._handlers.get(name)
        if handler is None:
            logger.warning("action_handler_missing", extra={"action": name})
            return {"status": "not_executed", "message": f"No handler is registered for {name}."}
        try:
            return await handler(dict(arguments or {}))
        except Exception as exc:
            logger.exception("action_execution_failed", extra={"action": name})
            return {"status": "error", "message": f"{name} failed: {type(exc).__name__}"}

    async def _get_permit_status(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        record = await self.permit_tools.lookup_permit_by_ticket(str(arguments.get("ticket_number", "")))
        if record is None:
            return {"status": "not_found"}
        return {"status": "ok", "ticket_number": record["ticket_number"], "permit_status": record.get("status")}

    async def _get_complaint_status(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        record = await self.complaint_tools.lookup_complaint_by_ticket(str(arguments.get("ticket_number", "")))
        if record is None:
            return {"status": "not_found"}
        return {"status": "ok", "ticket_number": record["ticket_number"], "complaint_status": record.get("status")}

    async def _search_knowledge_base(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        hits = await self.knowledge_tools.search_knowledge_base(str(arguments.get("query", "")))
        return {
            "status": "ok",
            "results": [{"question": h.get("question"), "answer": h.get("answer")} for h in hits],
        }
