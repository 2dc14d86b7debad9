from __future__ import annotations

import json
import re
import uuid
from typing import Any, Dict, Iterable, List

import httpx

from models.schemas import PendingAction, RunResult, RunStatus
from settings import SETTINGS

TICKET_PATTERN = re.compile(r"\b([A-Z]{3}-\d{4}-\d{4})\b", re.IGNORECASE)


class AssistantBackendError(RuntimeError):
    """Raised for any failure talking to the language-model backend."""


class LLMRuntime:
    """OpenAI-compatible assistants backend with a deterministic offline mode for local development.

    The offline mode keeps threads in memory, classifies by keyword and answers with
    canned replies so the pipeline stays usable without credentials.
    """

    def __init__(self, api_key: str | None = None, base_url: str | None = None, model: str | None = None) -> None:
        self.api_key = SETTINGS.openai_api_key if api_key is None else api_key
        self.base_url = (base_url or SETTINGS.openai_base_url).rstrip("/")
        self.model = model or SETTINGS.openai_model
        self.classification_model = SETTINGS.openai_classification_model or self.model
        self.provider = "openai" if self.api_key else "heuristic"
        self._local_threads: Dict[str, Dict[str, Any]] = {}

    def available(self) -> bool:
        return bool(self.api_key)

    # Moderation / classification ------------------------------------------------

    async def moderate(self, text: str) -> Dict[str, Any]:
        if not self.available():
            return {"flagged": False, "category_scores": {}, "provider": "heuristic"}
        data = await self._request("POST", "/moderations", payload={"model": SETTINGS.openai_moderation_model, "input": text})
        results = data.get("results") or []
        if not results or not isinstance(results[0], dict):
            raise AssistantBackendError("moderation_empty_result")
        result = results[0]
        scores = {str(k): float(v) for k, v in (result.get("category_scores") or {}).items() if isinstance(v, (int, float))}
        return {"flagged": bool(result.get("flagged")), "category_scores": scores, "provider": "openai"}

    async def classify_intent(
        self,
        text: str,
        intents: Iterable[str],
        context: Dict[str, Any] | None = None,
    ) -> Dict[str, Any]:
        candidates = list(intents)
        if not self.available():
            return self._heuristic_classification(text, candidates)
        body = {
            "model": self.classification_model,
            "messages": [
                {
                    "role": "system",
                    "content": (
                        "Classify the support request for a permit and document tracking system. "
                        "Return strict JSON with keys: intent, confidence, suggestedAgent, reasoning, requiresHumanReview. "
                        f"intent must be one of: {', '.join(candidates)}."
                    ),
                },
                {"role": "user", "content": self._compose_user_content(text, context or {})},
            ],
            "temperature": 0.3,
            "max_tokens": 200,
            "response_format": {"type": "json_object"},
        }
        data = await self._request("POST", "/chat/completions", payload=body, assistants=False)
        content = self._extract_chat_completion_text(data)
        if not content:
            raise AssistantBackendError("classification_empty_response")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise AssistantBackendError("classification_not_json") from exc
        if not isinstance(parsed, dict):
            raise AssistantBackendError("classification_not_object")
        parsed.setdefault("provider", self.provider)
        return parsed

    # Threads / runs -----------------------------------------------------------

    async def create_thread(self, metadata: Dict[str, str] | None = None) -> str:
        if not self.available():
            thread_id = f"thread_local_{uuid.uuid4().hex[:16]}"
            self._local_threads[thread_id] = {"metadata": dict(metadata or {}), "messages": [], "runs": {}}
            return thread_id
        data = await self._request("POST", "/threads", payload={"metadata": {k: str(v)[:512] for k, v in (metadata or {}).items()}})
        thread_id = data.get("id")
        if not thread_id:
            raise AssistantBackendError("thread_id_missing")
        return str(thread_id)

    async def append_message(self, thread_id: str, text: str) -> None:
        if not self.available():
            self._local_thread(thread_id)["messages"].append({"role": "user", "content": text})
            return
        await self._request("POST", f"/threads/{thread_id}/messages", payload={"role": "user", "content": text})

    async def start_run(self, thread_id: str, assistant_id: str, instructions: str = "") -> str:
        if not self.available():
            return self._start_local_run(thread_id, assistant_id)
        data = await self._request(
            "POST",
            f"/threads/{thread_id}/runs",
            payload={"assistant_id": assistant_id, "additional_instructions": instructions},
        )
        run_id = data.get("id")
        if not run_id:
            raise AssistantBackendError("run_id_missing")
        return str(run_id)

    async def retrieve_run(self, thread_id: str, run_id: str) -> RunResult:
        if not self.available():
            run = self._local_thread(thread_id)["runs"].get(run_id)
            if run is None:
                raise AssistantBackendError("run_not_found")
            return RunResult.model_validate(run)
        data = await self._request("GET", f"/threads/{thread_id}/runs/{run_id}")
        try:
            status = RunStatus(str(data.get("status")))
        except ValueError:
            status = RunStatus.FAILED
        result = RunResult(run_id=run_id, status=status)
        if status == RunStatus.REQUIRES_ACTION:
            calls = ((data.get("required_action") or {}).get("submit_tool_outputs") or {}).get("tool_calls") or []
            result.pending_actions = [self._pending_action(call) for call in calls if isinstance(call, dict)]
        elif status == RunStatus.COMPLETED:
            message_id, text = await self._latest_assistant_message(thread_id, run_id)
            result.output_message_id = message_id
            result.output_text = text
        elif data.get("last_error"):
            result.last_error = str((data.get("last_error") or {}).get("code") or "run_failed")
        return result

    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        if not self.available():
            run = self._local_thread(thread_id)["runs"].get(run_id)
            if run is not None:
                run["status"] = RunStatus.CANCELLED.value
            return
        await self._request("POST", f"/threads/{thread_id}/runs/{run_id}/cancel")

    async def submit_action_outcomes(self, thread_id: str, run_id: str, outcomes: List[Dict[str, Any]]) -> None:
        """Submit ``[{"action_id": ..., "output": {...}}]`` for every action the run is waiting on."""
        if not self.available():
            self._complete_local_run(thread_id, run_id, outcomes)
            return
        tool_outputs = [
            {"tool_call_id": item["action_id"], "output": json.dumps(item.get("output", {}), ensure_ascii=True, default=str)}
            for item in outcomes
        ]
        await self._request("POST", f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs", payload={"tool_outputs": tool_outputs})

    async def submit_action_outcome(self, thread_id: str, run_id: str, action_id: str, outcome: Dict[str, Any]) -> None:
        await self.submit_action_outcomes(thread_id, run_id, [{"action_id": action_id, "output": outcome}])

    # HTTP ---------------------------------------------------------------------

    async def _request(self, method: str, path: str, payload: Dict[str, Any] | None = None, assistants: bool = True) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if assistants:
            headers["OpenAI-Beta"] = "assistants=v2"
        try:
            async with httpx.AsyncClient(timeout=SETTINGS.llm_timeout_seconds) as client:
                resp = await client.request(method, f"{self.base_url}{path}", headers=headers, json=payload)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise AssistantBackendError(f"{method} {path} -> {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise AssistantBackendError(f"{method} {path} failed: {exc!r}") from exc
        if not isinstance(data, dict):
            raise AssistantBackendError(f"{method} {path} returned non-object payload")
        return data

    async def _latest_assistant_message(self, thread_id: str, run_id: str) -> tuple[str | None, str]:
        data = await self._request("GET", f"/threads/{thread_id}/messages?order=desc&limit=1&run_id={run_id}")
        for message in data.get("data") or []:
            if message.get("role") != "assistant":
                continue
            parts: List[str] = []
            for block in message.get("content") or []:
                if isinstance(block, dict) and block.get("type") == "text":
                    parts.append(str((block.get("text") or {}).get("value", "")))
            return message.get("id"), "\n".join(p for p in parts if p).strip()
        raise AssistantBackendError("assistant_message_missing")

    def _pending_action(self, call: Dict[str, Any]) -> PendingAction:
        function = call.get("function") or {}
        raw_args = function.get("arguments") or "{}"
        try:
            arguments = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
        except (json.JSONDecodeError, TypeError, ValueError):
            arguments = {"_raw": raw_args}
        if not isinstance(arguments, dict):
            arguments = {"value": arguments}
        return PendingAction(id=str(call.get("id")), name=str(function.get("name") or ""), arguments=arguments)

    def _compose_user_content(self, user_prompt: str, context: Dict[str, Any]) -> str:
        if not context:
            return user_prompt
        blob = json.dumps(context, ensure_ascii=True, default=str)[:4000]
        return f"User message: {user_prompt}\n\nContext JSON:\n{blob}\nReturn valid JSON only."

    def _extract_chat_completion_text(self, data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") if isinstance(choices[0], dict) else {}
        content = message.get("content", "") if isinstance(message, dict) else ""
        if isinstance(content, str):
            return content.strip()
        return str(content or "").strip()

    # Offline mode -----------------------------------------------------------

    def _local_thread(self, thread_id: str) -> Dict[str, Any]:
        thread = self._local_threads.get(thread_id)
        if thread is None:
            raise AssistantBackendError("thread_not_found")
        return thread

    def _start_local_run(self, thread_id: str, assistant_id: str) -> str:
        thread = self._local_thread(thread_id)
        if any(r["status"] == RunStatus.REQUIRES_ACTION.value for r in thread["runs"].values()):
            raise AssistantBackendError("thread_has_active_run")
        run_id = f"run_local_{uuid.uuid4().hex[:16]}"
        last_user = next((m["content"] for m in reversed(thread["messages"]) if m["role"] == "user"), "")
        proposed = self._heuristic_action(last_user)
        if proposed is not None:
            thread["runs"][run_id] = {
                "run_id": run_id,
                "status": RunStatus.REQUIRES_ACTION.value,
                "pending_actions": [{"id": f"call_{uuid.uuid4().hex[:12]}", **proposed}],
            }
            return run_id
        reply = self._heuristic_reply(last_user)
        thread["runs"][run_id] = self._local_completed(thread, run_id, reply)
        return run_id

    def _complete_local_run(self, thread_id: str, run_id: str, outcomes: List[Dict[str, Any]]) -> None:
        thread = self._local_thread(thread_id)
        run = thread["runs"].get(run_id)
        if run is None or run["status"] != RunStatus.REQUIRES_ACTION.value:
            raise AssistantBackendError("run_not_waiting_for_outcomes")
        statuses = [str((item.get("output") or {}).get("status", "")) for item in outcomes]
        if statuses and all(s == "rejected" for s in statuses):
            reply = "Understood. I have not made any changes. Let me know if there is anything else I can help with."
        elif "rejected" in statuses:
            reply = "I completed the approved steps and skipped the ones you declined."
        else:
            reply = "Done. The requested change has been carried out."
        thread["runs"][run_id] = self._local_completed(thread, run_id, reply)

    def _local_completed(self, thread: Dict[str, Any], run_id: str, reply: str) -> Dict[str, Any]:
        message_id = f"msg_local_{uuid.uuid4().hex[:16]}"
        thread["messages"].append({"role": "assistant", "content": reply, "id": message_id})
        return {"run_id": run_id, "status": RunStatus.COMPLETED.value, "output_message_id": message_id, "output_text": reply}

    def _heuristic_action(self, text: str) -> Dict[str, Any] | None:
        lower = text.lower()
        ticket = TICKET_PATTERN.search(text)
        if ticket and re.search(r"\b(delete|remove)\b", lower):
            return {"name": "delete_document", "arguments": {"ticket_number": ticket.group(1).upper()}}
        return None

    def _heuristic_reply(self, text: str) -> str:
        lower = text.lower().strip()
        ticket = TICKET_PATTERN.search(text)
        if ticket:
            return (
                f"I couldn't find a permit or complaint with ticket number {ticket.group(1).upper()}. "
                "Please double-check the number (for example WRK-2024-0001), or open the Permits page and search by the applicant's name."
            )
        if any(g in lower.split() for g in ["hello", "hi", "hey"]):
            return "Hello. How can I help with your permits, documents or tasks today?"
        if "upload" in lower:
            return "To upload a document, open the record, choose Documents, then Upload. PDF and JPG files under 5MB are accepted."
        return "I can help with that. Could you share the ticket number or tell me a bit more about what you need?"

    def _heuristic_classification(self, text: str, candidates: List[str]) -> Dict[str, Any]:
        lower = text.lower()
        keyword_map = [
            ("technical_issue", ["error", "bug", "not loading", "crash", "can't upload", "cannot upload", "broken", "doesn't work"]),
            ("document_query", ["status", "permit", "document", "ticket", "application", "residence id", "license"]),
            ("workflow_help", ["how do i", "how to", "process", "approval", "submit", "checklist", "requirement", "timeline"]),
            ("navigation", ["where is", "where can i", "go to", "navigate", "find the", "menu"]),
        ]
        intent = "general_inquiry"
        reasoning = "No specific keywords matched."
        confidence = 0.55
        if TICKET_PATTERN.search(text):
            intent, reasoning, confidence = "document_query", "Message carries a ticket number.", 0.85
        else:
            for mapped, keys in keyword_map:
                if any(k in lower for k in keys):
                    intent, reasoning, confidence = mapped, f"Matched keywords for {mapped}.", 0.7
                    break
        if candidates and intent not in candidates:
            intent = "general_inquiry"
        return {
            "intent": intent,
            "confidence": confidence,
            "suggestedAgent": None,
            "reasoning": reasoning,
            "requiresHumanReview": False,
            "provider": "heuristic",
        }
