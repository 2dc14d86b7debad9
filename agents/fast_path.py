from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from models.schemas import (
    ComplaintStatusData,
    ComplaintStatusWidget,
    FastPathResolution,
    ListData,
    ListItem,
    ListWidget,
    PermitStatusData,
    PermitStatusWidget,
    TimelineStage,
)
from settings import SETTINGS
from tools.knowledge_tools import KnowledgeBaseTools
from tools.record_tools import ComplaintRecordTools, PermitRecordTools

logger = logging.getLogger(__name__)

TICKET_RE = re.compile(r"\b([A-Z]{3}-\d{4}-\d{4})\b", re.IGNORECASE)

CATEGORY_NAMES = {
    "WORK_PERMIT": "Work Permit Application",
    "RESIDENCE_ID": "Residence ID Application",
    "LICENSE": "License Application",
    "PIP": "PIP Application",
}

Lookup = Callable[[str], Awaitable[Optional[dict]]]


def extract_tickets(text: str) -> List[str]:
    seen: List[str] = []
    for match in TICKET_RE.finditer(text or ""):
        ticket = match.group(1).upper()
        if ticket not in seen:
            seen.append(ticket)
    return seen


def _display_date(raw: object) -> Optional[str]:
    if not raw:
        return None
    try:
        parsed = raw if isinstance(raw, (date, datetime)) else datetime.fromisoformat(str(raw))
    except ValueError:
        return str(raw)
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"


class FastPathResolver:
    """Deterministic, model-free shortcuts: ticket lookups first, then the FAQ."""

    def __init__(
        self,
        permit_tools: PermitRecordTools | None = None,
        complaint_tools: ComplaintRecordTools | None = None,
        knowledge_tools: KnowledgeBaseTools | None = None,
        relevance_threshold: int | None = None,
        max_results: int | None = None,
    ) -> None:
        self.permit_tools = permit_tools or PermitRecordTools()
        self.complaint_tools = complaint_tools or ComplaintRecordTools()
        self.knowledge_tools = knowledge_tools or KnowledgeBaseTools()
        self.relevance_threshold = relevance_threshold if relevance_threshold is not None else SETTINGS.faq_relevance_threshold
        self.max_results = max_results or SETTINGS.faq_max_results

    def _collections(self) -> List[Tuple[str, frozenset, Lookup]]:
        # Fixed order: permits before complaints.
        return [
            ("permit", self.permit_tools.prefixes, self.permit_tools.lookup_permit_by_ticket),
            ("complaint", self.complaint_tools.prefixes, self.complaint_tools.lookup_complaint_by_ticket),
        ]

    async def try_resolve(self, text: str) -> Optional[FastPathResolution]:
        tickets = extract_tickets(text)
        try:
            if tickets:
                resolution = await self._resolve_tickets(tickets)
                if resolution is not None:
                    return resolution
            return await self._resolve_knowledge(text)
        except Exception:
            # Malformed records fall through to the assistant path.
            logger.warning("fast_path_resolution_failed", extra={"tickets": tickets}, exc_info=True)
            return None

    async def _resolve_tickets(self, tickets: List[str]) -> Optional[FastPathResolution]:
        collections = self._collections()
        for ticket in tickets:
            prefix = ticket.split("-", 1)[0]
            claimed = [c for c in collections if prefix in c[1]] or collections
            for kind, _, lookup in claimed:
                try:
                    record = await lookup(ticket)
                except Exception:
                    logger.warning("fast_path_lookup_failed", extra={"ticket": ticket, "collection": kind}, exc_info=True)
                    continue
                if not record:
                    continue
                if kind == "permit":
                    return self._permit_resolution(ticket, record)
                return self._complaint_resolution(ticket, record)
        return None

    async def _resolve_knowledge(self, text: str) -> Optional[FastPathResolution]:
        try:
            hits = await self.knowledge_tools.search_knowledge_base(text, limit=self.max_results)
        except Exception:
            logger.warning("fast_path_knowledge_lookup_failed", exc_info=True)
            return None
        relevant = [h for h in hits if int(h.get("score", 0)) >= self.relevance_threshold]
        if not relevant:
            return None
        items = [
            ListItem(id=str(h.get("id", "")), title=str(h.get("question", "")), description=str(h.get("answer", "")), category=h.get("category"))
            for h in relevant
        ]
        lead = items[0]
        return FastPathResolution(
            kind="knowledge",
            summary=f"{lead.description}" if len(items) == 1 else f"Here are {len(items)} answers that may help.",
            widgets=[ListWidget(data=ListData(title="Related help articles", items=items))],
            matched=[i.id for i in items],
        )

    def _permit_resolution(self, ticket: str, record: dict) -> FastPathResolution:
        checklist = list(record.get("checklist") or [])
        person = record.get("person") or {}
        person_name = " ".join(p for p in [person.get("first_name"), person.get("last_name")] if p) or None
        due = _display_date(record.get("due_date"))
        data = PermitStatusData(
            ticket_number=ticket,
            status=str(record.get("status", "unknown")).lower(),
            type=CATEGORY_NAMES.get(str(record.get("category")), str(record.get("category", "Permit"))),
            person_name=person_name,
            submitted_date=_display_date(record.get("created_at")),
            last_updated=_display_date(record.get("updated_at")),
            due_date=due,
            current_stage=self._current_stage(checklist),
            next_action=self._next_action(checklist),
            estimated_completion=due or "Pending review",
            notes=record.get("notes") or "Your application is being processed.",
            timeline=self._timeline(record.get("history") or [], checklist),
        )
        summary = f"{data.type} {ticket} is currently {data.status.replace('_', ' ')}. {data.next_action}."
        return FastPathResolution(kind="ticket", summary=summary, widgets=[PermitStatusWidget(data=data)], matched=[ticket])

    def _complaint_resolution(self, ticket: str, record: dict) -> FastPathResolution:
        updates = list(record.get("updates") or [])
        data = ComplaintStatusData(
            ticket_number=ticket,
            status=str(record.get("status", "unknown")).lower(),
            category=str(record.get("category", "")),
            subject=str(record.get("subject", "")),
            submitted_date=_display_date(record.get("created_at")),
            latest_update=str(updates[0].get("message")) if updates else None,
        )
        summary = f"Complaint {ticket} is currently {data.status.replace('_', ' ')}."
        if data.latest_update:
            summary += f" Latest update: {data.latest_update}."
        return FastPathResolution(kind="ticket", summary=summary, widgets=[ComplaintStatusWidget(data=data)], matched=[ticket])

    def _current_stage(self, checklist: List[dict]) -> str:
        incomplete = next((item for item in checklist if not item.get("completed")), None)
        return str(incomplete.get("label")) if incomplete else "Final Review"

    def _next_action(self, checklist: List[dict]) -> str:
        incomplete = next((item for item in checklist if not item.get("completed") and item.get("required")), None)
        return f"Please complete: {incomplete.get('label')}" if incomplete else "All requirements completed"

    def _timeline(self, history: List[dict], checklist: List[dict]) -> List[TimelineStage]:
        stages: List[TimelineStage] = []
        for entry in history:
            stages.append(
                TimelineStage(
                    name=f"Status changed to {entry.get('to_status')}",
                    status="completed",
                    date=_display_date(entry.get("changed_at")),
                    description=entry.get("notes") or f"Status updated from {entry.get('from_status')} to {entry.get('to_status')}",
                )
            )
        for item in checklist:
            stages.append(
                TimelineStage(
                    name=str(item.get("label")),
                    status="completed" if item.get("completed") else "pending",
                    date=_display_date(item.get("completed_at")),
                    description=item.get("hint") or str(item.get("label")),
                )
            )
        return stages
