from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from models.schemas import CopilotState, SessionContext
from settings import SETTINGS

logger = logging.getLogger(__name__)

PAGE_SECTIONS = [
    ("/documents", "documents", "document_management"),
    ("/permits", "permits", "permit_tracking"),
    ("/tasks", "tasks", "task_management"),
    ("/people", "people", "people_records"),
    ("/foreigners", "people", "people_records"),
    ("/company", "companies", "company_records"),
    ("/vehicle", "vehicles", "vehicle_records"),
    ("/import", "imports", "data_import"),
    ("/calendar", "calendar", "scheduling"),
    ("/reports", "reports", "reporting"),
    ("/dashboard", "dashboard", "overview"),
]


def generate_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


def extract_page_context(pathname: str, search_params: Dict[str, str] | None = None) -> Dict[str, Any]:
    context: Dict[str, Any] = {"pathname": pathname}
    if pathname == "/":
        context.update(section="landing", feature="marketing")
    else:
        for prefix, section, feature in PAGE_SECTIONS:
            if prefix in pathname:
                context.update(section=section, feature=feature)
                break
    if search_params:
        context["search_params"] = dict(search_params)
    return context


@dataclass
class SessionData:
    context: SessionContext
    copilot_state: CopilotState = field(default_factory=CopilotState)
    thread_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_activity: datetime = field(default_factory=datetime.utcnow)
    lock: Lock = field(default_factory=Lock, repr=False, compare=False)


class SessionStore:
    """In-memory per-session conversational state with a sliding TTL.

    Expiry is enforced lazily on every access and proactively by ``cleanup_expired``
    (run periodically by ``start_sweeper``). Mutations lock only the session they touch;
    the registry lock guards map membership and is never held across session work.
    """

    def __init__(
        self,
        ttl_seconds: int | None = None,
        list_limit: int | None = None,
        sweep_interval_seconds: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else SETTINGS.session_ttl_seconds
        self.list_limit = list_limit or SETTINGS.copilot_list_limit
        self.sweep_interval_seconds = sweep_interval_seconds or SETTINGS.session_sweep_interval_seconds
        self._clock = clock or datetime.utcnow
        self._sessions: Dict[str, SessionData] = {}
        self._registry_lock = Lock()
        self._sweeper: asyncio.Task | None = None

    def _is_expired(self, data: SessionData, now: datetime) -> bool:
        return now - data.last_activity > timedelta(seconds=self.ttl_seconds)

    def _live(self, session_id: str) -> Optional[SessionData]:
        now = self._clock()
        with self._registry_lock:
            data = self._sessions.get(session_id)
            if data is None:
                return None
            if self._is_expired(data, now):
                self._sessions.pop(session_id, None)
                logger.info("session_expired", extra={"session_id": session_id})
                return None
        with data.lock:
            data.last_activity = now
        return data

    async def create_session(self, session_id: str, context: SessionContext, thread_id: str | None = None) -> SessionData:
        existing = self._live(session_id)
        now = self._clock()
        ctx = context.model_copy(update={"session_id": session_id, "timestamp": now})
        data = SessionData(
            context=ctx,
            copilot_state=existing.copilot_state if existing else CopilotState(),
            thread_id=thread_id or (existing.thread_id if existing else None) or ctx.thread_id,
            created_at=existing.created_at if existing else now,
            last_activity=now,
        )
        data.context.thread_id = data.thread_id
        with self._registry_lock:
            self._sessions[session_id] = data
        return data

    async def get_session(self, session_id: str) -> Optional[SessionData]:
        return self._live(session_id)

    async def update_context(self, session_id: str, **changes: Any) -> Optional[SessionContext]:
        data = self._live(session_id)
        if data is None:
            return None
        with data.lock:
            changes.pop("session_id", None)
            data.context = data.context.model_copy(update={**changes, "timestamp": self._clock()})
            return data.context

    async def update_copilot_state(self, session_id: str, **changes: Any) -> Optional[CopilotState]:
        data = self._live(session_id)
        if data is None:
            return None
        with data.lock:
            data.copilot_state = data.copilot_state.model_copy(update=changes)
            return data.copilot_state

    def _push_recent(self, session_id: str, attr: str, value: str) -> Optional[List[str]]:
        data = self._live(session_id)
        if data is None:
            return None
        with data.lock:
            current: List[str] = getattr(data.copilot_state, attr)
            updated = [value] + [item for item in current if item != value]
            setattr(data.copilot_state, attr, updated[: self.list_limit])
            return list(getattr(data.copilot_state, attr))

    async def add_recent_record(self, session_id: str, record_id: str) -> Optional[List[str]]:
        return self._push_recent(session_id, "recent_record_ids", record_id)

    async def add_recent_task(self, session_id: str, task_id: str) -> Optional[List[str]]:
        return self._push_recent(session_id, "recent_tasks", task_id)

    async def add_recent_search(self, session_id: str, query: str) -> Optional[List[str]]:
        return self._push_recent(session_id, "recent_searches", query)

    async def update_filters(self, session_id: str, filters: Dict[str, Any]) -> Optional[CopilotState]:
        return await self.update_copilot_state(session_id, current_filters=dict(filters))

    async def update_conversation_summary(self, session_id: str, summary: str) -> Optional[CopilotState]:
        return await self.update_copilot_state(session_id, conversation_summary=summary)

    async def get_enriched_context(self, session_id: str) -> Optional[SessionContext]:
        data = self._live(session_id)
        if data is None:
            return None
        with data.lock:
            page_context = dict(data.context.page_context)
            page_context["copilot_state"] = data.copilot_state.model_dump(mode="json")
            return data.context.model_copy(update={"page_context": page_context, "thread_id": data.thread_id})

    async def set_thread(self, session_id: str, thread_id: str) -> bool:
        data = self._live(session_id)
        if data is None:
            return False
        with data.lock:
            data.thread_id = thread_id
            data.context.thread_id = thread_id
        return True

    async def get_thread(self, session_id: str) -> Optional[str]:
        data = self._live(session_id)
        return data.thread_id if data else None

    async def delete_session(self, session_id: str) -> None:
        with self._registry_lock:
            self._sessions.pop(session_id, None)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._registry_lock:
            expired = [sid for sid, data in self._sessions.items() if self._is_expired(data, now)]
            for sid in expired:
                self._sessions.pop(sid, None)
        if expired:
            logger.info("session_sweep_evicted", extra={"count": len(expired)})
        return len(expired)

    def active_sessions_count(self) -> int:
        self.cleanup_expired()
        with self._registry_lock:
            return len(self._sessions)

    # Background sweep ---------------------------------------------------------

    def start_sweeper(self) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        return self._sweeper

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                self.cleanup_expired()
            except Exception:  # pragma: no cover - keep the sweeper alive
                logger.exception("session_sweep_failed")
