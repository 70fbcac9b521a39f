from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from inkflow.errors import ProtocolError

Role = Literal["planner", "writer", "editor", "reviewer"]
SessionStatus = Literal["idle", "running", "completed", "error", "paused"]
RemoteStatus = Literal["running", "completed", "error"]
PlannerStatus = Literal["running", "completed", "error", "paused"]
TodoStatus = Literal["pending", "in_progress", "completed", "paused"]
TodoPriority = Literal["high", "medium", "low"]
AuditStatus = Literal["approved", "rejected", "auto_approved"]
MessageKind = Literal["thought", "plan", "final", "notice", "planner_history"]

STAGES: tuple[Role, ...] = ("planner", "writer", "editor", "reviewer")
ROLE_LABELS: dict[str, str] = {
    "planner": "Planning",
    "writer": "Writing",
    "editor": "Editing",
    "reviewer": "Review",
}
TERMINAL_STATUSES = frozenset({"completed", "error"})
TODO_STATUSES = ("pending", "in_progress", "completed", "paused")
TODO_PRIORITIES = ("high", "medium", "low")

LOOP_TAG_PATTERN = re.compile(r"loop:(\d+)")


def role_label(role: str) -> str:
    return ROLE_LABELS.get(role, role)


def _optional_str(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if isinstance(value, str) and value:
        return value
    return None


def _optional_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


@dataclass(slots=True, frozen=True)
class ChatAction:
    thought: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": "chat", "thought": self.thought, "message": self.message}


@dataclass(slots=True, frozen=True)
class ModifyFileAction:
    file_path: str
    original_content: str
    new_content: str
    thought: str | None = None
    log_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "modify_file",
            "thought": self.thought,
            "filePath": self.file_path,
            "originalContent": self.original_content,
            "newContent": self.new_content,
            "logId": self.log_id,
            "reason": self.reason,
        }


Action = ChatAction | ModifyFileAction


def parse_action(payload: Any) -> Action:
    if not isinstance(payload, dict):
        raise ProtocolError(f"Action payload must be an object, got {type(payload).__name__}.")
    action_type = payload.get("type", "chat")
    if action_type == "chat":
        return ChatAction(
            thought=_optional_str(payload, "thought"),
            message=_optional_str(payload, "message"),
        )
    if action_type == "modify_file":
        log_id = payload.get("logId")
        return ModifyFileAction(
            file_path=str(payload.get("filePath") or ""),
            original_content=str(payload.get("originalContent") or ""),
            new_content=str(payload.get("newContent") or ""),
            thought=_optional_str(payload, "thought"),
            log_id=str(log_id) if log_id not in (None, "") else None,
            reason=_optional_str(payload, "reason"),
        )
    raise ProtocolError(f"Unknown action type: {action_type!r}")


@dataclass(slots=True, frozen=True)
class Step:
    role: str
    action: Action
    notes: str = ""
    loop: int | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> Step:
        if not isinstance(payload, dict):
            raise ProtocolError("Trace step must be an object.")
        role = payload.get("role")
        if not isinstance(role, str) or not role:
            raise ProtocolError("Trace step is missing its role.")
        notes = payload.get("notes")
        return cls(
            role=role,
            action=parse_action(payload.get("action") or {}),
            notes=notes if isinstance(notes, str) else "",
            loop=_optional_int(payload.get("loop")),
        )

    @property
    def loop_index(self) -> int:
        # Older pipelines only tag the loop inside free-text notes ("loop:2;node:planner").
        if self.loop is not None:
            return self.loop
        match = LOOP_TAG_PATTERN.search(self.notes)
        if match:
            return int(match.group(1))
        return 0


@dataclass(slots=True)
class Session:
    request_id: str | None = None
    status: SessionStatus = "idle"
    cursor: int = 0

    @property
    def is_active(self) -> bool:
        return self.request_id is not None and self.status in {"running", "paused"}


@dataclass(slots=True, frozen=True)
class AgentSnapshot:
    status: RemoteStatus
    trace: tuple[Step, ...] = ()
    final: Action | None = None
    error: str | None = None
    max_loops: int = 0
    progress: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, payload: Any) -> AgentSnapshot:
        if not isinstance(payload, dict):
            raise ProtocolError("Poll payload must be an object.")
        status = payload.get("status")
        if status not in {"running", "completed", "error"}:
            raise ProtocolError(f"Unknown workflow status: {status!r}")
        raw_trace = payload.get("trace") or []
        if not isinstance(raw_trace, list):
            raise ProtocolError("Trace must be a list.")
        final = None
        if status == "completed" and payload.get("final") is not None:
            final = parse_action(payload["final"])
        error = payload.get("error")
        return cls(
            status=status,
            trace=tuple(Step.from_dict(item) for item in raw_trace),
            final=final,
            error=str(error) if status == "error" and error is not None else None,
            max_loops=_optional_int(payload.get("maxLoops")) or 0,
            progress=_optional_int(payload.get("progress")),
        )


@dataclass(slots=True)
class TodoItem:
    id: str
    title: str
    status: TodoStatus = "pending"
    priority: TodoPriority = "medium"
    depends_on: list[str] = field(default_factory=list)
    accepts: list[str] = field(default_factory=list)
    estimate_minutes: int | None = None
    started_at: int | None = None
    completed_at: int | None = None

    @classmethod
    def from_dict(cls, payload: Any) -> TodoItem:
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ProtocolError("Todo item must be an object with an id.")
        status = payload.get("status")
        priority = payload.get("priority")
        depends_on = payload.get("dependsOn")
        accepts = payload.get("accepts")
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title") or ""),
            status=status if status in TODO_STATUSES else "pending",
            priority=priority if priority in TODO_PRIORITIES else "medium",
            depends_on=[str(item) for item in depends_on] if isinstance(depends_on, list) else [],
            accepts=[str(item) for item in accepts] if isinstance(accepts, list) else [],
            estimate_minutes=_optional_int(payload.get("estimateMinutes")),
            started_at=_optional_int(payload.get("startedAt")),
            completed_at=_optional_int(payload.get("completedAt")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "dependsOn": list(self.depends_on),
            "accepts": list(self.accepts),
            "estimateMinutes": self.estimate_minutes,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
        }


@dataclass(slots=True, frozen=True)
class HistoryEntry:
    timestamp: int
    message: str


@dataclass(slots=True, frozen=True)
class PlannerSnapshot:
    status: PlannerStatus
    todo: tuple[TodoItem, ...] = ()
    history: tuple[HistoryEntry, ...] = ()
    progress: int | None = None
    message: str | None = None
    repo_url: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def error(self) -> str | None:
        return self.message if self.status == "error" else None

    @classmethod
    def from_dict(cls, payload: Any) -> PlannerSnapshot:
        if not isinstance(payload, dict):
            raise ProtocolError("Task planner payload must be an object.")
        status = payload.get("status")
        if status not in {"running", "completed", "error", "paused"}:
            raise ProtocolError(f"Unknown task planner status: {status!r}")
        raw_history = payload.get("history") or []
        history: list[HistoryEntry] = []
        for item in raw_history if isinstance(raw_history, list) else []:
            if isinstance(item, dict):
                history.append(
                    HistoryEntry(
                        timestamp=_optional_int(item.get("timestamp")) or 0,
                        message=str(item.get("message") or ""),
                    )
                )
        raw_todo = payload.get("todo") or []
        if not isinstance(raw_todo, list):
            raw_todo = []
        message = payload.get("message")
        return cls(
            status=status,
            todo=tuple(TodoItem.from_dict(item) for item in raw_todo),
            history=tuple(history),
            progress=_optional_int(payload.get("progress")),
            message=str(message) if message is not None else None,
            repo_url=str(payload.get("repoUrl") or ""),
        )


@dataclass(slots=True, frozen=True)
class ChatMessage:
    kind: MessageKind
    content: str
    stage: str | None = None
