from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from typing import Any

from inkflow.backends.base import ChatLog
from inkflow.errors import InkflowError
from inkflow.models import ChatAction, ChatMessage, HistoryEntry, Session, Step, role_label

logger = logging.getLogger(__name__)

MessageHook = Callable[[ChatMessage], None]


def thought_message(step: Step) -> ChatMessage | None:
    thought = step.action.thought
    if not thought:
        return None
    return ChatMessage(
        kind="thought",
        content=f"[{role_label(step.role)} thought]\n{thought}",
        stage=step.role,
    )


def plan_message(step: Step) -> ChatMessage | None:
    if step.role != "planner" or not isinstance(step.action, ChatAction):
        return None
    if not step.action.message:
        return None
    return ChatMessage(
        kind="plan",
        content=f"[Writing plan]\n{step.action.message}",
        stage="planner",
    )


class CursorReducer(ABC):
    """Turns the unseen suffix of an append-only sequence into messages.

    The session cursor is advanced before any message is delivered, so a
    re-delivered prefix, or a reduce call issued while delivery is still in
    progress, never yields the same entry twice. When `is_current` is given,
    delivery stops as soon as it reports that the session was replaced.
    """

    persist = False

    def __init__(
        self,
        chat_log: ChatLog | None = None,
        project_ref: str = "",
        *,
        on_message: MessageHook | None = None,
    ) -> None:
        self.chat_log = chat_log
        self.project_ref = project_ref
        self.on_message = on_message

    @abstractmethod
    def messages_for(self, entry: Any) -> list[ChatMessage]:
        """Render one sequence entry as zero or more chat messages."""

    def claim(self, session: Session, entries: Sequence[Any]) -> list[Any]:
        if session.cursor > len(entries):
            logger.warning(
                "trace for %s shrank below cursor (%d > %d); ignoring",
                session.request_id,
                session.cursor,
                len(entries),
            )
            return []
        fresh = list(entries[session.cursor :])
        session.cursor += len(fresh)
        return fresh

    async def reduce(
        self,
        session: Session,
        entries: Sequence[Any],
        *,
        is_current: Callable[[], bool] | None = None,
    ) -> list[ChatMessage]:
        emitted: list[ChatMessage] = []
        for entry in self.claim(session, entries):
            for message in self.messages_for(entry):
                if is_current is not None and not is_current():
                    logger.debug("session %s replaced; dropping messages", session.request_id)
                    return emitted
                emitted.append(message)
                if self.on_message:
                    self.on_message(message)
                if self.persist:
                    await self._append(message)
        return emitted

    async def _append(self, message: ChatMessage) -> None:
        if self.chat_log is None:
            return
        try:
            await self.chat_log.append_chat_message(self.project_ref, "assistant", message.content)
        except InkflowError as exc:
            logger.warning("could not persist %s message: %s", message.kind, exc)


class TraceReducer(CursorReducer):
    persist = True

    def messages_for(self, entry: Step) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        thought = thought_message(entry)
        if thought is not None:
            messages.append(thought)
        plan = plan_message(entry)
        if plan is not None:
            messages.append(plan)
        return messages


class HistoryReducer(CursorReducer):
    def messages_for(self, entry: HistoryEntry) -> list[ChatMessage]:
        if not entry.message:
            return []
        return [ChatMessage(kind="planner_history", content=entry.message)]
