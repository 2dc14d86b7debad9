from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from agents import llm_runtime
from agents.llm_runtime import AssistantBackendError, LLMRuntime
from models.schemas import RunStatus


def _offline() -> LLMRuntime:
    return LLMRuntime(api_key="")


def _mock_backend(monkeypatch, handler):
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(llm_runtime.httpx, "AsyncClient", factory)


def test_offline_moderation_never_flags():
    result = asyncio.run(_offline().moderate("anything"))
    assert result == {"flagged": False, "category_scores": {}, "provider": "heuristic"}


def test_offline_thread_round_trip_with_unknown_ticket():
    runtime = _offline()

    async def _run():
        thread_id = await runtime.create_thread({"session_id": "s-1"})
        await runtime.append_message(thread_id, "status of WRK-2024-5678?")
        run_id = await runtime.start_run(thread_id, "asst_docs")
        return await runtime.retrieve_run(thread_id, run_id)

    result = asyncio.run(_run())
    assert result.status == RunStatus.COMPLETED
    assert "WRK-2024-5678" in result.output_text
    assert "couldn't find" in result.output_text


def test_offline_delete_request_pauses_for_an_action():
    runtime = _offline()

    async def _run():
        thread_id = await runtime.create_thread()
        await runtime.append_message(thread_id, "please delete WRK-2030-0001")
        run_id = await runtime.start_run(thread_id, "")
        paused = await runtime.retrieve_run(thread_id, run_id)
        with pytest.raises(AssistantBackendError):
            await runtime.start_run(thread_id, "")
        action = paused.pending_actions[0]
        await runtime.submit_action_outcome(thread_id, run_id, action.id, {"status": "rejected"})
        return paused, await runtime.retrieve_run(thread_id, run_id)

    paused, done = asyncio.run(_run())
    assert paused.status == RunStatus.REQUIRES_ACTION
    assert paused.pending_actions[0].name == "delete_document"
    assert paused.pending_actions[0].arguments == {"ticket_number": "WRK-2030-0001"}
    assert done.status == RunStatus.COMPLETED
    assert "not made any changes" in done.output_text


def test_offline_unknown_thread_raises():
    with pytest.raises(AssistantBackendError):
        asyncio.run(_offline().append_message("thread_missing", "hi"))


def test_heuristic_classification_keywords():
    runtime = _offline()
    assert asyncio.run(runtime.classify_intent("the page shows an error", ["technical_issue", "general_inquiry"]))["intent"] == "technical_issue"
    assert asyncio.run(runtime.classify_intent("how do i submit this", ["workflow_help"]))["intent"] == "workflow_help"
    fallback = asyncio.run(runtime.classify_intent("good morning", ["general_inquiry"]))
    assert fallback["intent"] == "general_inquiry"
    assert fallback["confidence"] == 0.55


def test_moderation_over_http(monkeypatch):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"results": [{"flagged": True, "category_scores": {"violence": 0.83, "note": "x"}}]})

    _mock_backend(monkeypatch, handler)
    result = asyncio.run(LLMRuntime(api_key="sk-test", base_url="https://llm.test/v1").moderate("text"))
    assert seen == {"path": "/v1/moderations", "auth": "Bearer sk-test"}
    assert result["flagged"] is True
    assert result["category_scores"] == {"violence": 0.83}


def test_retrieve_run_parses_required_actions(monkeypatch):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers.get("OpenAI-Beta") == "assistants=v2"
        return httpx.Response(
            200,
            json={
                "id": "run_1",
                "status": "requires_action",
                "required_action": {
                    "submit_tool_outputs": {
                        "tool_calls": [
                            {"id": "call_1", "function": {"name": "delete_document", "arguments": json.dumps({"document_id": "d-1"})}},
                            {"id": "call_2", "function": {"name": "bulk_update", "arguments": "not json"}},
                        ]
                    }
                },
            },
        )

    _mock_backend(monkeypatch, handler)
    result = asyncio.run(LLMRuntime(api_key="sk-test", base_url="https://llm.test/v1").retrieve_run("thread_1", "run_1"))
    assert result.status == RunStatus.REQUIRES_ACTION
    assert [a.id for a in result.pending_actions] == ["call_1", "call_2"]
    assert result.pending_actions[0].arguments == {"document_id": "d-1"}
    assert result.pending_actions[1].arguments == {"_raw": "not json"}


def test_submit_action_outcomes_serialises_outputs(monkeypatch):
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "run_1", "status": "queued"})

    _mock_backend(monkeypatch, handler)
    runtime = LLMRuntime(api_key="sk-test", base_url="https://llm.test/v1")
    asyncio.run(runtime.submit_action_outcomes("thread_1", "run_1", [{"action_id": "call_1", "output": {"status": "approved"}}]))
    assert captured["path"] == "/v1/threads/thread_1/runs/run_1/submit_tool_outputs"
    assert captured["body"] == {"tool_outputs": [{"tool_call_id": "call_1", "output": '{"status": "approved"}'}]}


def test_http_errors_become_backend_errors(monkeypatch):
    _mock_backend(monkeypatch, lambda request: httpx.Response(500, json={"error": "down"}))
    with pytest.raises(AssistantBackendError):
        asyncio.run(LLMRuntime(api_key="sk-test", base_url="https://llm.test/v1").create_thread({"session_id": "s-1"}))


def test_classification_must_be_json(monkeypatch):
    _mock_backend(monkeypatch, lambda request: httpx.Response(200, json={"choices": [{"message": {"content": "document_query"}}]}))
    with pytest.raises(AssistantBackendError):
        asyncio.run(LLMRuntime(api_key="sk-test", base_url="https://llm.test/v1").classify_intent("x", ["document_query"]))
