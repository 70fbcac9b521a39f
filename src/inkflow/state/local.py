from __future__ import annotations

from pathlib import Path
from typing import Any

from inkflow.backends.base import AuditLog, ChatLog, DocumentStore
from inkflow.errors import StateError
from inkflow.models import AuditStatus
from inkflow.state.store import LocalStateStore, utcnow_iso


class LocalChatLog(ChatLog):
    def __init__(self, store: LocalStateStore) -> None:
        self.store = store

    async def append_chat_message(self, project_ref: str, role: str, content: str) -> None:
        entry = {
            "role": role,
            "content": content,
            "created_at": utcnow_iso(),
        }

        def _updater(payload: Any) -> dict[str, Any]:
            projects = payload if isinstance(payload, dict) else {}
            messages = projects.get(project_ref)
            if not isinstance(messages, list):
                messages = []
            messages.append(entry)
            projects[project_ref] = messages
            return projects

        self.store.update_json("chat", _updater, default={})

    def messages(self, project_ref: str) -> list[dict[str, Any]]:
        projects = self.store.get_json("chat", default={})
        if not isinstance(projects, dict):
            return []
        messages = projects.get(project_ref, [])
        return messages if isinstance(messages, list) else []


class LocalAuditLog(AuditLog):
    """Audit entries keyed by log id; a second decision for one id is refused."""

    def __init__(self, store: LocalStateStore) -> None:
        self.store = store

    async def update_audit_status(self, log_id: str, status: AuditStatus) -> None:
        now = utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            entries = payload if isinstance(payload, dict) else {}
            existing = entries.get(log_id)
            if isinstance(existing, dict):
                raise StateError(
                    f"Audit entry {log_id} already recorded as '{existing.get('status')}'."
                )
            entries[log_id] = {"log_id": log_id, "status": status, "decided_at": now}
            return entries

        self.store.update_json("audit", _updater, default={})

    def entries(self) -> dict[str, dict[str, Any]]:
        entries = self.store.get_json("audit", default={})
        return entries if isinstance(entries, dict) else {}


class LocalDocumentStore(DocumentStore):
    """Documents are plain text files addressed relative to `root`."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _path(self, document_ref: str) -> Path:
        path = (self.root / document_ref).resolve()
        if not path.is_relative_to(self.root):
            raise StateError(f"Document path escapes the workspace: {document_ref}")
        return path

    async def read_document(self, document_ref: str) -> str:
        path = self._path(document_ref)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except UnicodeDecodeError as exc:
            raise StateError(f"Document {document_ref} is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise StateError(f"Cannot read document {document_ref}: {exc}") from exc

    async def apply_document_content(self, document_ref: str, content: str) -> None:
        path = self._path(document_ref)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise StateError(f"Cannot write document {document_ref}: {exc}") from exc
