from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from inkflow.backends.base import ChatLog, WorkflowBackend
from inkflow.config import SubmitPolicy
from inkflow.errors import InkflowError, PipelineError, SessionConflictError
from inkflow.gate import ConfirmationGate, GateOutcome
from inkflow.models import (
    Action,
    AgentSnapshot,
    ChatAction,
    ChatMessage,
    MessageKind,
    ModifyFileAction,
    Session,
    SessionStatus,
)
from inkflow.poller import TracePoller
from inkflow.progress import ProgressEstimator, ProgressView
from inkflow.reducer import TraceReducer
from inkflow.session import SessionStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
MessageHook = Callable[[ChatMessage], None]
ProgressHook = Callable[[ProgressView], None]

FALLBACK_REPLY = "I'm not sure how to answer that."
UPDATED_NOTICE = "File updated successfully."
NO_MATCH_NOTICE = (
    "Could not find an exact match for the original text. Please review and apply manually."
)


@dataclass(slots=True)
class SessionResult:
    request_id: str | None
    status: SessionStatus
    final: Action | None = None
    error: str | None = None
    failure: InkflowError | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    progress: ProgressView | None = None
    gate: GateOutcome | None = None


class AgentSessionCoordinator:
    """Runs one multi-stage agent request at a time for a single editing context."""

    def __init__(
        self,
        backend: WorkflowBackend,
        gate: ConfirmationGate,
        *,
        chat_log: ChatLog | None = None,
        project_ref: str = "",
        model_ref: str = "",
        interval_seconds: float = 1.0,
        timeout_seconds: float | None = 30.0,
        submit_policy: SubmitPolicy = "reject",
        event_hook: EventHook | None = None,
        on_message: MessageHook | None = None,
        on_progress: ProgressHook | None = None,
    ) -> None:
        self.backend = backend
        self.gate = gate
        self.project_ref = project_ref
        self.model_ref = model_ref
        self.interval_seconds = interval_seconds
        self.timeout_seconds = timeout_seconds
        self.submit_policy = submit_policy
        self.event_hook = event_hook
        self.on_message = on_message
        self.on_progress = on_progress

        self.store = SessionStore()
        self.reducer = TraceReducer(chat_log, project_ref, on_message=self._deliver)
        self.estimator = ProgressEstimator()
        self.progress: ProgressView | None = None
        self.messages: list[ChatMessage] = []

        self._poller: TracePoller | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._abandoned: set[asyncio.Task[None]] = set()
        self._request_id: str | None = None
        self._document_ref: str | None = None
        self._final: Action | None = None
        self._error: str | None = None
        self._failure: InkflowError | None = None
        self._gate_outcome: GateOutcome | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _deliver(self, message: ChatMessage) -> None:
        self.messages.append(message)
        if self.on_message:
            self.on_message(message)

    def _notice(self, content: str, kind: MessageKind = "notice") -> None:
        self._deliver(ChatMessage(kind=kind, content=content))

    @property
    def session(self) -> Session:
        return self.store.current()

    async def submit(self, message: str, *, document_ref: str | None = None) -> str:
        if self.store.is_active():
            if self.submit_policy != "replace":
                raise SessionConflictError(
                    f"Agent request {self.store.session.request_id} is still running."
                )
            self.cancel()

        current_file = None
        if document_ref is not None:
            content = await self.gate.documents.read_document(document_ref)
            current_file = {"path": document_ref, "content": content}

        request_id = await self.store.submit(
            lambda: self.backend.start_workflow(
                self.model_ref, self.project_ref, message, current_file
            )
        )
        self._request_id = request_id
        self._document_ref = document_ref
        self._final = None
        self._error = None
        self._failure = None
        self._gate_outcome = None
        self.progress = None
        self.messages = []
        self.estimator.reset()
        self._emit({"event": "session_started", "request_id": request_id})

        self._poller = TracePoller(
            self.store,
            self.backend.poll_workflow,
            self._on_snapshot,
            self._on_failure,
            interval_seconds=self.interval_seconds,
            timeout_seconds=self.timeout_seconds,
            event_hook=self.event_hook,
        )
        self._poll_task = self._poller.start(request_id)
        return request_id

    async def wait(self) -> SessionResult:
        if self._poller is not None:
            await self._poller.wait()
        return self.result()

    async def run(self, message: str, *, document_ref: str | None = None) -> SessionResult:
        await self.submit(message, document_ref=document_ref)
        return await self.wait()

    def result(self) -> SessionResult:
        return SessionResult(
            request_id=self._request_id,
            status=self.store.session.status,
            final=self._final,
            error=self._error,
            failure=self._failure,
            messages=list(self.messages),
            progress=self.progress,
            gate=self._gate_outcome,
        )

    def cancel(self) -> None:
        request_id = self.store.session.request_id
        if request_id is None:
            return
        self.store.clear()
        if self._poller is not None:
            self._poller.stop()
            task = self._poll_task
            if task is not None and not task.done():
                self._abandoned.add(task)
                task.add_done_callback(self._abandoned.discard)
        self._emit({"event": "session_abandoned", "request_id": request_id})

    async def _on_snapshot(self, request_id: str, snapshot: AgentSnapshot) -> bool:
        await self.reducer.reduce(
            self.store.session,
            snapshot.trace,
            is_current=lambda: self.store.session.request_id == request_id,
        )
        if self.store.session.request_id != request_id:
            return True

        self.progress = self.estimator.estimate(snapshot)
        if snapshot.status == "running":
            if self.on_progress:
                self.on_progress(self.progress)
            return False

        if snapshot.status == "error":
            error = PipelineError(snapshot.error or "Agent pipeline failed.", request_id=request_id)
            self._fail(request_id, error)
            self._notice(f"Agent run failed: {error}")
            return True

        self._final = snapshot.final
        self.store.finish("completed")
        self._emit({"event": "session_completed", "request_id": request_id})
        await self._route_final(snapshot.final)
        return True

    async def _on_failure(self, request_id: str, error: InkflowError) -> None:
        self._fail(request_id, error)

    def _fail(self, request_id: str, error: InkflowError) -> None:
        self._error = str(error)
        self._failure = error
        self.store.finish("error")
        self._emit(
            {
                "event": "session_failed",
                "request_id": request_id,
                "error": self._error,
                "error_type": type(error).__name__,
            }
        )

    async def _route_final(self, final: Action | None) -> None:
        if final is None:
            return
        if isinstance(final, ChatAction):
            self._notice(final.message or FALLBACK_REPLY, kind="final")
            return
        if isinstance(final, ModifyFileAction):
            document_ref = self._document_ref or final.file_path
            try:
                outcome = await self.gate.propose(final, document_ref)
            except InkflowError as exc:
                logger.warning("auto-apply of %s failed: %s", document_ref, exc)
                self._emit(
                    {"event": "apply_failed", "file_path": final.file_path, "error": str(exc)}
                )
                self._gate_outcome = GateOutcome(state="pending_review", reason=str(exc))
                self._notice(f"Could not apply the change automatically: {exc}")
                return
            self._record_outcome(outcome)

    def _notice_applied(self, outcome: GateOutcome) -> None:
        self._notice(UPDATED_NOTICE)
        if outcome.reason:
            self._notice(f"The change was applied, but {outcome.reason}.")

    def _record_outcome(self, outcome: GateOutcome) -> None:
        self._gate_outcome = outcome
        if outcome.applied:
            self._notice_applied(outcome)
            return
        if outcome.state == "pending_review" and self.gate.proposal is not None:
            file_path = self.gate.proposal.action.file_path or "the file"
            if outcome.reason:
                self._notice(NO_MATCH_NOTICE)
            self._notice(f"I have proposed changes to {file_path}. Please review them.")

    async def approve(self) -> GateOutcome:
        outcome = await self.gate.approve()
        if outcome.busy:
            return outcome
        self._gate_outcome = outcome
        if outcome.applied:
            self._notice_applied(outcome)
        elif outcome.state == "pending_review" and outcome.reason:
            self._notice(NO_MATCH_NOTICE)
        return outcome

    async def reject(self) -> GateOutcome:
        outcome = await self.gate.reject()
        if not outcome.busy:
            self._gate_outcome = outcome
        return outcome
