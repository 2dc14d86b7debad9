from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class IntentCategory(str, Enum):
    DOCUMENT_QUERY = "document_query"
    TECHNICAL_ISSUE = "technical_issue"
    WORKFLOW_HELP = "workflow_help"
    GENERAL_INQUIRY = "general_inquiry"
    NAVIGATION = "navigation"
    UNKNOWN = "unknown"


class AgentType(str, Enum):
    GENERAL_SUPPORT = "general_support"
    DOCUMENT_SUPPORT = "document_support"
    TECHNICAL_SUPPORT = "technical_support"
    WORKFLOW_SUPPORT = "workflow_support"


class ChatStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING_APPROVAL = "pending_approval"


class ChatErrorCode(str, Enum):
    GUARDRAIL_BLOCKED = "guardrail_blocked"
    THREAD_CREATION_FAILED = "thread_creation_failed"
    ADD_MESSAGE_FAILED = "add_message_failed"
    ASSISTANT_RUN_FAILED = "assistant_run_failed"
    TURN_IN_PROGRESS = "turn_in_progress"
    UNKNOWN = "unknown"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RunStatus(str, Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ApprovalAlreadyResolvedError(RuntimeError):
    pass


class ApprovalNotFoundError(LookupError):
    pass


class AgentDecisionLog(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    session_id: str
    agent: str
    action: str
    reasoning: str
    duration_ms: int = 0
    outcome: str = "ok"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SessionContext(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    user_role: str = "guest"
    current_page: str = "/"
    page_context: Dict[str, Any] = Field(default_factory=dict)
    thread_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CopilotState(BaseModel):
    recent_record_ids: List[str] = Field(default_factory=list)
    recent_tasks: List[str] = Field(default_factory=list)
    recent_searches: List[str] = Field(default_factory=list)
    current_filters: Dict[str, Any] = Field(default_factory=dict)
    conversation_summary: Optional[str] = None


class ClassificationResult(BaseModel):
    intent: IntentCategory
    confidence: float = Field(ge=0.0, le=1.0)
    suggested_agent: AgentType
    reasoning: str = ""
    requires_human_review: bool = False


class GuardrailResult(BaseModel):
    passed: bool
    flagged: bool = False
    reason: Optional[str] = None
    category: Optional[Literal["jailbreak", "inappropriate", "off_topic", "sensitive"]] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


class ToolApproval(BaseModel):
    id: str
    tool_name: str
    tool_description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    reasoning: str = ""
    risk_level: RiskLevel = RiskLevel.HIGH
    requires_confirmation: bool = True
    status: ApprovalStatus = ApprovalStatus.PENDING
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    thread_id: Optional[str] = None
    run_id: Optional[str] = None

    def resolve(self, approved: bool) -> "ToolApproval":
        if self.status != ApprovalStatus.PENDING:
            raise ApprovalAlreadyResolvedError(f"approval {self.id} already {self.status.value}")
        self.status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED
        return self


class PendingAction(BaseModel):
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class RunResult(BaseModel):
    run_id: str
    status: RunStatus
    output_message_id: Optional[str] = None
    output_text: Optional[str] = None
    pending_actions: List[PendingAction] = Field(default_factory=list)
    last_error: Optional[str] = None


# Widgets ----------------------------------------------------------------------


class TimelineStage(BaseModel):
    name: str
    status: Literal["completed", "current", "pending", "skipped"] = "pending"
    date: Optional[str] = None
    description: str = ""


class PermitStatusData(BaseModel):
    ticket_number: str
    status: str
    type: str
    person_name: Optional[str] = None
    submitted_date: Optional[str] = None
    last_updated: Optional[str] = None
    due_date: Optional[str] = None
    current_stage: str = "Final Review"
    next_action: str = ""
    estimated_completion: str = "Pending review"
    notes: str = ""
    timeline: List[TimelineStage] = Field(default_factory=list)


class ComplaintStatusData(BaseModel):
    ticket_number: str
    status: str
    category: str = ""
    subject: str = ""
    submitted_date: Optional[str] = None
    latest_update: Optional[str] = None


class ListItem(BaseModel):
    id: str
    title: str
    description: str = ""
    category: Optional[str] = None


class ListData(BaseModel):
    title: str
    items: List[ListItem] = Field(default_factory=list)


class QuickActionsData(BaseModel):
    actions: List[str] = Field(default_factory=list)


class PermitStatusWidget(BaseModel):
    type: Literal["permit-status"] = "permit-status"
    data: PermitStatusData


class ComplaintStatusWidget(BaseModel):
    type: Literal["complaint-status"] = "complaint-status"
    data: ComplaintStatusData


class ListWidget(BaseModel):
    type: Literal["list"] = "list"
    data: ListData


class ApprovalWidget(BaseModel):
    type: Literal["approval-widget"] = "approval-widget"
    approvals: List[ToolApproval] = Field(default_factory=list)


class QuickActionsWidget(BaseModel):
    type: Literal["quick-actions"] = "quick-actions"
    data: QuickActionsData


ChatWidget = Annotated[
    Union[PermitStatusWidget, ComplaintStatusWidget, ListWidget, ApprovalWidget, QuickActionsWidget],
    Field(discriminator="type"),
]

CHAT_WIDGET_ADAPTER: TypeAdapter = TypeAdapter(ChatWidget)


class AIMessage(BaseModel):
    id: str
    role: Literal["user", "assistant", "system"] = "assistant"
    content: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    widgets: List[ChatWidget] = Field(default_factory=list)
    intent: Optional[IntentCategory] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    thread_id: Optional[str] = None
    run_id: Optional[str] = None
    agent_type: Optional[AgentType] = None
    requires_approval: bool = False
    approval_id: Optional[str] = None


class ChatResponse(BaseModel):
    message: AIMessage
    status: ChatStatus
    requires_approval: Optional[ToolApproval] = None
    suggestions: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[ChatErrorCode] = None


class FastPathResolution(BaseModel):
    kind: Literal["ticket", "knowledge"]
    summary: str
    widgets: List[ChatWidget] = Field(default_factory=list)
    matched: List[str] = Field(default_factory=list)
