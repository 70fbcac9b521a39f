from inkflow.state.local import LocalAuditLog, LocalChatLog, LocalDocumentStore
from inkflow.state.store import LocalStateStore

__all__ = ["LocalAuditLog", "LocalChatLog", "LocalDocumentStore", "LocalStateStore"]
