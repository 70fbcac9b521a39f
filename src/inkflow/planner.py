from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from inkflow.backends.base import TaskPlannerBackend
from inkflow.errors import InkflowError, SessionConflictError
from inkflow.models import (
    TODO_PRIORITIES,
    TODO_STATUSES,
    ChatMessage,
    PlannerSnapshot,
    PlannerStatus,
    Session,
    SessionStatus,
    TodoItem,
)
from inkflow.poller import TracePoller
from inkflow.progress import percent_complete
from inkflow.reducer import HistoryReducer
from inkflow.session import SessionStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
MessageHook = Callable[[ChatMessage], None]

STATUS_LABELS = {
    "completed": "Completed",
    "error": "Error",
    "paused": "Paused",
}


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


def filter_items(
    todo: Sequence[TodoItem],
    *,
    status: str | None = None,
    priority: str | None = None,
    search: str = "",
) -> list[TodoItem]:
    needle = search.strip().lower()
    selected: list[TodoItem] = []
    for item in todo:
        if status and status != "all" and item.status != status:
            continue
        if priority and priority != "all" and item.priority != priority:
            continue
        if needle:
            haystack = f"{item.id} {item.title} {' '.join(item.accepts)}".lower()
            if needle not in haystack:
                continue
        selected.append(item)
    return selected


def ready_items(todo: Sequence[TodoItem]) -> list[TodoItem]:
    by_id = {item.id: item for item in todo}
    ready: list[TodoItem] = []
    for item in todo:
        if item.status != "pending":
            continue
        if all(
            by_id.get(dep_id) and by_id[dep_id].status == "completed"
            for dep_id in item.depends_on
        ):
            ready.append(item)
    return ready


def render_todo_markdown(snapshot: PlannerSnapshot, *, updated_at: str | None = None) -> str:
    progress = percent_complete(snapshot.todo, snapshot.progress)
    lines = [
        "# Task list",
        "",
        f"- Repository: {snapshot.repo_url}",
        f"- Status: {STATUS_LABELS.get(snapshot.status, 'Running')}",
        f"- Progress: {progress}%",
        f"- Updated: {updated_at or _utcnow_iso()}",
        "",
        "## Tasks",
    ]
    for item in snapshot.todo:
        checked = "x" if item.status == "completed" else " "
        estimate = (
            f"{item.estimate_minutes} min" if item.estimate_minutes is not None else "not estimated"
        )
        lines.append(
            f"- [{checked}] [{item.id}] {item.title} "
            f"(status: {item.status}, priority: {item.priority}, estimate: {estimate})"
        )
        if item.depends_on:
            lines.append(f"  - Depends on: {', '.join(item.depends_on)}")
        if item.accepts:
            lines.append("  - Acceptance criteria:")
            lines.extend(f"    - {text}" for text in item.accepts)
    lines.append("")
    return "\n".join(lines)


@dataclass(slots=True)
class PlannerResult:
    request_id: str | None
    status: SessionStatus
    todo: list[TodoItem] = field(default_factory=list)
    progress: int = 0
    error: str | None = None
    messages: list[ChatMessage] = field(default_factory=list)


class TaskPlannerCoordinator:
    """Follows one task-planner run: its todo list, history feed and pause state.

    Item updates are applied to the local todo list immediately and stay layered
    over incoming snapshots until the backend has acknowledged them.
    """

    def __init__(
        self,
        backend: TaskPlannerBackend,
        *,
        model_ref: str = "",
        context_ref: str = "",
        interval_seconds: float = 1.0,
        timeout_seconds: float | None = 30.0,
        event_hook: EventHook | None = None,
        on_message: MessageHook | None = None,
    ) -> None:
        self.backend = backend
        self.model_ref = model_ref
        self.context_ref = context_ref
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook
        self.on_message = on_message

        self.store = SessionStore()
        self.reducer = HistoryReducer(on_message=self._deliver)
        self.snapshot: PlannerSnapshot | None = None
        self.todo: list[TodoItem] = []
        self.messages: list[ChatMessage] = []

        self._request_id: str | None = None
        self._error: str | None = None
        self._pending: dict[str, dict[str, Any]] = {}
        self._poller: TracePoller | None = None
        self._poll_task: asyncio.Task[None] | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _deliver(self, message: ChatMessage) -> None:
        self.messages.append(message)
        if self.on_message:
            self.on_message(message)

    @property
    def session(self) -> Session:
        return self.store.current()

    @property
    def request_id(self) -> str | None:
        return self._request_id

    @property
    def progress(self) -> int:
        return percent_complete(self.todo, self.snapshot.progress if self.snapshot else None)

    async def start(self, repo_url: str) -> str:
        request_id = await self.store.submit(
            lambda: self.backend.start_task_planner(self.model_ref, self.context_ref, repo_url)
        )
        self._begin(request_id)
        return request_id

    async def attach(self, request_id: str, *, follow: bool = True) -> str:
        """Adopt a run started elsewhere, optionally polling it from now on."""

        async def _existing() -> str:
            return request_id

        await self.store.submit(_existing)
        self._begin(request_id, follow=follow)
        return request_id

    def _begin(self, request_id: str, *, follow: bool = True) -> None:
        self._request_id = request_id
        self._error = None
        self._pending.clear()
        self.snapshot = None
        self.todo = []
        self.messages = []
        self._emit({"event": "session_started", "request_id": request_id, "kind": "planner"})
        if not follow:
            return
        self._poller = TracePoller(
            self.store,
            self.backend.poll_task_planner,
            self._on_snapshot,
            self._on_failure,
            interval_seconds=self.interval_seconds,
            timeout_seconds=self.timeout_seconds,
            event_hook=self.event_hook,
        )
        self._poll_task = self._poller.start(request_id)

    async def refresh(self) -> PlannerSnapshot:
        if self._request_id is None:
            raise InkflowError("No task-planner run has been started.")
        snapshot = await self.backend.poll_task_planner(self._request_id)
        await self._on_snapshot(self._request_id, snapshot)
        return snapshot

    async def wait(self) -> PlannerResult:
        if self._poll_task is not None:
            await self._poll_task
        return self.result()

    def result(self) -> PlannerResult:
        return PlannerResult(
            request_id=self._request_id,
            status=self.store.session.status,
            todo=list(self.todo),
            progress=self.progress,
            error=self._error,
            messages=list(self.messages),
        )

    def cancel(self) -> None:
        request_id = self.store.session.request_id
        if request_id is None:
            return
        self.store.clear()
        if self._poller is not None:
            self._poller.stop()
        self._emit({"event": "session_abandoned", "request_id": request_id})

    def _overlay(self, todo: Sequence[TodoItem]) -> list[TodoItem]:
        merged: list[TodoItem] = []
        for item in todo:
            fields = self._pending.get(item.id)
            merged.append(replace(item, **fields) if fields else item)
        return merged

    async def _on_snapshot(self, request_id: str, snapshot: PlannerSnapshot) -> bool:
        await self.reducer.reduce(
            self.store.session,
            snapshot.history,
            is_current=lambda: self.store.session.request_id == request_id,
        )
        if self.store.session.request_id != request_id:
            return True

        self.snapshot = snapshot
        self.todo = self._overlay(snapshot.todo)
        if snapshot.status in {"running", "paused"}:
            self.store.set_status(snapshot.status)
            return False

        if snapshot.status == "error":
            self._error = snapshot.error or "Task planner failed."
            self.store.finish("error")
            self._emit({"event": "session_failed", "request_id": request_id, "error": self._error})
            return True

        self.store.finish("completed")
        self._emit({"event": "session_completed", "request_id": request_id})
        return True

    async def _on_failure(self, request_id: str, error: InkflowError) -> None:
        self._error = str(error)
        self.store.finish("error")
        self._emit({"event": "session_failed", "request_id": request_id, "error": self._error})

    async def pause(self, paused: bool = True) -> PlannerStatus:
        session = self.store.session
        if not session.is_active or session.request_id is None:
            raise SessionConflictError("No task-planner run is active.")
        request_id = session.request_id
        status = await self.backend.pause_workflow(request_id, paused)
        if self.store.session.request_id == request_id and status in {"running", "paused"}:
            self.store.set_status(status)
        logger.info("task planner %s is now %s", request_id, status)
        self._emit(
            {
                "event": "planner_paused",
                "request_id": request_id,
                "paused": paused,
                "status": status,
            }
        )
        return status

    async def resume(self) -> PlannerStatus:
        return await self.pause(False)

    async def update_item(
        self,
        item_id: str,
        *,
        status: str | None = None,
        priority: str | None = None,
    ) -> TodoItem | None:
        if self._request_id is None:
            raise InkflowError("No task-planner run has been started.")
        fields: dict[str, Any] = {}
        if status is not None:
            if status not in TODO_STATUSES:
                raise ValueError(f"Unknown todo status: {status}")
            fields["status"] = status
        if priority is not None:
            if priority not in TODO_PRIORITIES:
                raise ValueError(f"Unknown todo priority: {priority}")
            fields["priority"] = priority
        if not fields:
            raise ValueError("Nothing to update.")

        index = next((i for i, item in enumerate(self.todo) if item.id == item_id), None)
        previous = self.todo[index] if index is not None else None
        if index is not None:
            self.todo[index] = replace(self.todo[index], **fields)
        self._pending[item_id] = {**self._pending.get(item_id, {}), **fields}

        try:
            updated = await self.backend.update_todo_item(self._request_id, item_id, fields)
        except InkflowError:
            self._pending.pop(item_id, None)
            if index is not None and previous is not None:
                self.todo[index] = previous
            raise

        self._pending.pop(item_id, None)
        if updated is not None and index is not None:
            self.todo[index] = updated
        elif updated is None:
            logger.warning("task planner %s has no item %s", self._request_id, item_id)
        self._emit(
            {
                "event": "planner_item_updated",
                "request_id": self._request_id,
                "item_id": item_id,
                "fields": fields,
                "found": updated is not None,
            }
        )
        if updated is not None:
            return updated
        return self.todo[index] if index is not None else None
