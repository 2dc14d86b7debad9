from __future__ import annotations

import json
import logging
import os
from typing import List

from settings import SETTINGS

logger = logging.getLogger(__name__)

DEFAULT_ENTRIES: List[dict] = [
    {
        "id": "kb-upload",
        "question": "How do I upload a document?",
        "answer": "Open the record, choose the Documents tab and click Upload. PDF, JPG and PNG files up to 5MB are accepted.",
        "category": "documents",
        "keywords": ["upload", "attach file"],
        "helpful": 14,
    },
    {
        "id": "kb-processing-time",
        "question": "How long does permit processing take?",
        "answer": "Work permits take 10-14 days on average once every required checklist item is complete.",
        "category": "permits",
        "keywords": ["processing time", "how long"],
        "helpful": 22,
    },
    {
        "id": "kb-residence-renewal",
        "question": "How do I renew a residence ID?",
        "answer": "Create a new Residence ID permit from the person's page; the previous checklist is copied automatically.",
        "category": "permits",
        "keywords": ["renew", "residence id"],
        "helpful": 9,
    },
    {
        "id": "kb-approval-flow",
        "question": "What is the approval process?",
        "answer": "Applications move from Submitted to Processing to Approved. Each stage is logged in the permit history.",
        "category": "workflow",
        "keywords": ["approval process", "approval workflow"],
        "helpful": 11,
    },
    {
        "id": "kb-reset-password",
        "question": "How do I reset my password?",
        "answer": "Use Forgot password on the login page; a reset link is sent to your registered email.",
        "category": "account",
        "keywords": ["password", "reset password"],
        "helpful": 30,
    },
]


class KnowledgeBaseTools:
    """FAQ store used by the fast path; entries load from ``KNOWLEDGE_BASE_PATH`` when set."""

    def __init__(self, entries: List[dict] | None = None, snapshot_path: str | None = None) -> None:
        self.snapshot_path = snapshot_path if snapshot_path is not None else SETTINGS.knowledge_base_path
        if entries is not None:
            self.entries = [e for e in entries if e.get("published", True)]
        else:
            self.entries = self._load_snapshot()

    def _load_snapshot(self) -> List[dict]:
        if not self.snapshot_path or not os.path.exists(self.snapshot_path):
            return [dict(e) for e in DEFAULT_ENTRIES]
        with open(self.snapshot_path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
        rows = payload.get("entries", []) if isinstance(payload, dict) else payload
        return [dict(r) for r in rows if isinstance(r, dict) and r.get("published", True)]

    def score(self, query: str, entry: dict) -> int:
        lower = query.strip().lower()
        if not lower:
            return 0
        score = 0
        if lower in str(entry.get("question", "")).lower():
            score += 10
        for keyword in entry.get("keywords") or []:
            if str(keyword).lower() in lower:
                score += 5
        if lower in str(entry.get("answer", "")).lower():
            score += 2
        return score

    async def search_knowledge_base(self, query: str, category: str | None = None, limit: int = 3) -> List[dict]:
        ranked: List[tuple[int, dict]] = []
        for entry in self.entries:
            if category and entry.get("category") != category:
                continue
            score = self.score(query, entry)
            if score > 0:
                ranked.append((score, entry))
        ranked.sort(key=lambda item: (item[0], int(item[1].get("helpful", 0))), reverse=True)
        return [{**entry, "score": score} for score, entry in ranked[:limit]]
