from .schemas import (
    AgentType,
    AIMessage,
    ApprovalStatus,
    ChatErrorCode,
    ChatResponse,
    ChatStatus,
    ClassificationResult,
    CopilotState,
    GuardrailResult,
    IntentCategory,
    SessionContext,
    ToolApproval,
)

__all__ = [
    "AgentType",
    "AIMessage",
    "ApprovalStatus",
    "ChatErrorCode",
    "ChatResponse",
    "ChatStatus",
    "ClassificationResult",
    "CopilotState",
    "GuardrailResult",
    "IntentCategory",
    "SessionContext",
    "ToolApproval",
]
