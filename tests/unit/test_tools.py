from __future__ import annotations

import asyncio
import json

from tools.action_tools import ActionExecutor
from tools.knowledge_tools import KnowledgeBaseTools
from tools.record_tools import ComplaintRecordTools, PermitRecordTools


def test_permit_lookup_is_case_insensitive_and_returns_copies():
    tools = PermitRecordTools()
    record = asyncio.run(tools.lookup_permit_by_ticket("wrk-2024-0001"))
    assert record["status"] == "PROCESSING"
    record["status"] = "TAMPERED"
    assert asyncio.run(tools.lookup_permit_by_ticket("WRK-2024-0001"))["status"] == "PROCESSING"
    assert asyncio.run(tools.lookup_permit_by_ticket("WRK-2024-9999")) is None


def test_complaint_lookup():
    tools = ComplaintRecordTools()
    assert asyncio.run(tools.lookup_complaint_by_ticket("COM-2025-1234"))["status"] == "IN_REVIEW"
    assert asyncio.run(tools.lookup_complaint_by_ticket("")) is None


def test_knowledge_scoring_weights():
    tools = KnowledgeBaseTools(entries=[])
    entry = {"question": "How do I upload a document?", "answer": "Click upload on the record.", "keywords": ["upload", "attach"]}
    # question contains query (+10), keyword "upload" in query (+5), answer contains query (+2)
    assert tools.score("upload", entry) == 17
    assert tools.score("attach a file", entry) == 5
    assert tools.score("   ", entry) == 0


def test_knowledge_search_filters_unpublished_and_category():
    entries = [
        {"id": "a", "question": "Permit renewal", "answer": "", "category": "permits"},
        {"id": "b", "question": "Permit fees", "answer": "", "category": "billing"},
        {"id": "c", "question": "Permit archive", "answer": "", "category": "permits", "published": False},
    ]
    tools = KnowledgeBaseTools(entries=entries)
    hits = asyncio.run(tools.search_knowledge_base("permit", category="permits"))
    assert [h["id"] for h in hits] == ["a"]
    assert hits[0]["score"] == 10


def test_knowledge_snapshot_loads_from_file(tmp_path):
    path = tmp_path / "kb.json"
    path.write_text(json.dumps({"entries": [{"id": "kb-x", "question": "Where is the calendar?", "answer": "Sidebar."}]}), encoding="utf-8")
    tools = KnowledgeBaseTools(snapshot_path=str(path))
    assert [e["id"] for e in tools.entries] == ["kb-x"]


def test_action_executor_runs_builtins_and_reports_missing_handlers():
    executor = ActionExecutor()
    permit = asyncio.run(executor.execute("get_permit_status", {"ticket_number": "RES-2025-0042"}))
    assert permit == {"status": "ok", "ticket_number": "RES-2025-0042", "permit_status": "APPROVED"}
    missing = asyncio.run(executor.execute("delete_document", {"document_id": "doc-1"}))
    assert missing["status"] == "not_executed"
    assert not executor.has_handler("delete_document")


def test_action_executor_contains_handler_errors():
    executor = ActionExecutor()

    async def broken(arguments):
        raise ValueError("bad input")

    executor.register("bulk_update", broken)
    result = asyncio.run(executor.execute("bulk_update", {}))
    assert result["status"] == "error"
    assert "bad input" not in result["message"]
