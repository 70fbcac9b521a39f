from inkflow.backends.base import (
    AuditLog,
    ChatLog,
    DocumentStore,
    TaskPlannerBackend,
    WorkflowBackend,
)
from inkflow.backends.http import HttpBackend

__all__ = [
    "AuditLog",
    "ChatLog",
    "DocumentStore",
    "HttpBackend",
    "TaskPlannerBackend",
    "WorkflowBackend",
]
