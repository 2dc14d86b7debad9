from .action_tools import ActionExecutor
from .knowledge_tools import KnowledgeBaseTools
from .record_tools import ComplaintRecordTools, PermitRecordTools

__all__ = [
    "ActionExecutor",
    "ComplaintRecordTools",
    "KnowledgeBaseTools",
    "PermitRecordTools",
]
