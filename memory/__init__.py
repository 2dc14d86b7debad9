from .session_memory import SessionData, SessionStore, extract_page_context, generate_session_id

__all__ = ["SessionData", "SessionStore", "extract_page_context", "generate_session_id"]
