from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from inkflow.models import AgentSnapshot, AuditStatus, PlannerSnapshot, PlannerStatus, TodoItem


class WorkflowBackend(ABC):
    @abstractmethod
    async def start_workflow(
        self,
        model_ref: str,
        context_ref: str,
        message: str,
        current_file: dict[str, str] | None = None,
    ) -> str:
        """Submit a multi-stage agent request and return its request id."""

    @abstractmethod
    async def poll_workflow(self, request_id: str) -> AgentSnapshot:
        """Fetch the current state of a running agent request."""


class TaskPlannerBackend(ABC):
    @abstractmethod
    async def start_task_planner(self, model_ref: str, context_ref: str, repo_url: str) -> str:
        """Start (or resume from snapshot) a task-planner run."""

    @abstractmethod
    async def poll_task_planner(self, request_id: str) -> PlannerSnapshot:
        """Fetch the current todo list, history and status."""

    @abstractmethod
    async def pause_workflow(self, request_id: str, paused: bool) -> PlannerStatus:
        """Toggle a task-planner run between running and paused."""

    @abstractmethod
    async def update_todo_item(
        self, request_id: str, item_id: str, fields: dict[str, Any]
    ) -> TodoItem | None:
        """Apply a partial update to one todo item; None when the item is unknown."""


class ChatLog(ABC):
    @abstractmethod
    async def append_chat_message(self, project_ref: str, role: str, content: str) -> None:
        """Durably append one message to the project's chat history."""


class AuditLog(ABC):
    @abstractmethod
    async def update_audit_status(self, log_id: str, status: AuditStatus) -> None:
        """Record the decision taken on a proposed file modification."""


class DocumentStore(ABC):
    @abstractmethod
    async def read_document(self, document_ref: str) -> str:
        """Return the live content of a document."""

    @abstractmethod
    async def apply_document_content(self, document_ref: str, content: str) -> None:
        """Replace the content of a document."""
