from __future__ import annotations

import os
from dataclasses import dataclass


def _bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    openai_model: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    openai_classification_model: str = os.getenv("OPENAI_CLASSIFICATION_MODEL", "")
    openai_moderation_model: str = os.getenv("OPENAI_MODERATION_MODEL", "omni-moderation-latest")
    assistant_id_general_support: str = os.getenv("OPENAI_ASSISTANT_ID_GENERAL_SUPPORT", "")
    assistant_id_document_support: str = os.getenv("OPENAI_ASSISTANT_ID_DOCUMENT_SUPPORT", "")
    assistant_id_technical_support: str = os.getenv("OPENAI_ASSISTANT_ID_TECHNICAL_SUPPORT", "")
    assistant_id_workflow_support: str = os.getenv("OPENAI_ASSISTANT_ID_WORKFLOW_SUPPORT", "")
    llm_timeout_seconds: int = _int("LLM_TIMEOUT_SECONDS", 25)

    enable_guardrails: bool = _bool("ENABLE_GUARDRAILS", True)
    moderation_fail_open: bool = _bool("MODERATION_FAIL_OPEN", True)
    moderation_timeout_seconds: float = _float("MODERATION_TIMEOUT_SECONDS", 5.0)
    enable_human_in_loop: bool = _bool("ENABLE_HUMAN_IN_LOOP", True)

    classification_timeout_seconds: float = _float("CLASSIFICATION_TIMEOUT_SECONDS", 8.0)
    run_poll_interval_seconds: float = _float("RUN_POLL_INTERVAL_SECONDS", 1.0)
    run_timeout_seconds: float = _float("RUN_TIMEOUT_SECONDS", 60.0)
    max_action_rounds: int = _int("MAX_ACTION_ROUNDS", 4)

    session_ttl_seconds: int = _int("SESSION_TTL_SECONDS", 30 * 60)
    session_sweep_interval_seconds: int = _int("SESSION_SWEEP_INTERVAL_SECONDS", 5 * 60)
    copilot_list_limit: int = _int("COPILOT_LIST_LIMIT", 10)

    faq_relevance_threshold: int = _int("FAQ_RELEVANCE_THRESHOLD", 10)
    faq_max_results: int = _int("FAQ_MAX_RESULTS", 3)
    knowledge_base_path: str = os.getenv("KNOWLEDGE_BASE_PATH", "")

    audit_log_path: str = os.getenv("AUDIT_LOG_PATH", "./data/audit.log.jsonl")
    rate_limit_per_minute: int = _int("RATE_LIMIT_PER_MINUTE", 60)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    debug: bool = _bool("DEBUG", True)


SETTINGS = Settings()
