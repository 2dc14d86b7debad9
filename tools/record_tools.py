from __future__ import annotations

import copy
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional


def _days_ago(days: int) -> str:
    return (date.today() - timedelta(days=days)).isoformat()


def _seed_permits() -> List[dict]:
    return [
        {
            "ticket_number": "WRK-2024-0001",
            "category": "WORK_PERMIT",
            "status": "PROCESSING",
            "person": {"first_name": "Sarah", "last_name": "Ahmed", "nationality": "Kenyan"},
            "created_at": _days_ago(12),
            "updated_at": _days_ago(2),
            "due_date": (date.today() + timedelta(days=9)).isoformat(),
            "notes": "Medical clearance under review.",
            "checklist": [
                {"label": "Passport copy", "completed": True, "required": True, "completed_at": _days_ago(11)},
                {"label": "Medical clearance", "completed": False, "required": True, "hint": "Upload the clinic certificate"},
                {"label": "Employment contract", "completed": False, "required": False},
            ],
            "history": [
                {"from_status": "PENDING", "to_status": "SUBMITTED", "changed_at": _days_ago(11)},
                {"from_status": "SUBMITTED", "to_status": "PROCESSING", "changed_at": _days_ago(2), "notes": "Assigned to reviewer"},
            ],
        },
        {
            "ticket_number": "RES-2025-0042",
            "category": "RESIDENCE_ID",
            "status": "APPROVED",
            "person": {"first_name": "Daniel", "last_name": "Okafor", "nationality": "Nigerian"},
            "created_at": _days_ago(40),
            "updated_at": _days_ago(5),
            "due_date": None,
            "notes": "",
            "checklist": [
                {"label": "Residence application form", "completed": True, "required": True, "completed_at": _days_ago(38)},
                {"label": "Photo", "completed": True, "required": True, "completed_at": _days_ago(38)},
            ],
            "history": [{"from_status": "PROCESSING", "to_status": "APPROVED", "changed_at": _days_ago(5)}],
        },
    ]


def _seed_complaints() -> List[dict]:
    return [
        {
            "ticket_number": "COM-2025-1234",
            "category": "PROCESSING_DELAY",
            "subject": "Work permit taking longer than expected",
            "status": "IN_REVIEW",
            "created_at": _days_ago(3),
            "updates": [{"message": "Forwarded to the permits desk", "created_at": _days_ago(1)}],
        }
    ]


class _TicketIndexedRecords:
    def __init__(self, records: Iterable[dict]) -> None:
        self._records: Dict[str, dict] = {str(r["ticket_number"]).upper(): dict(r) for r in records}

    def _get(self, ticket_number: str) -> Optional[dict]:
        record = self._records.get((ticket_number or "").strip().upper())
        return copy.deepcopy(record) if record else None


class PermitRecordTools(_TicketIndexedRecords):
    """Read-only permit lookups; production deployments back this with the records service."""

    prefixes = frozenset({"WRK", "PER", "RES", "LIC", "PIP"})

    def __init__(self, records: Iterable[dict] | None = None) -> None:
        super().__init__(_seed_permits() if records is None else records)

    async def lookup_permit_by_ticket(self, ticket_number: str) -> Optional[dict]:
        return self._get(ticket_number)


class ComplaintRecordTools(_TicketIndexedRecords):
    prefixes = frozenset({"COM"})

    def __init__(self, records: Iterable[dict] | None = None) -> None:
        super().__init__(_seed_complaints() if records is None else records)

    async def lookup_complaint_by_ticket(self, ticket_number: str) -> Optional[dict]:
        return self._get(ticket_number)
