from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from inkflow.errors import SessionConflictError
from inkflow.models import Session, SessionStatus

logger = logging.getLogger(__name__)


class SessionStore:
    """Holds the single in-flight workflow of one editing context."""

    def __init__(self) -> None:
        self._session = Session()
        self._submitting = False

    def current(self) -> Session:
        return Session(
            request_id=self._session.request_id,
            status=self._session.status,
            cursor=self._session.cursor,
        )

    @property
    def session(self) -> Session:
        return self._session

    def is_active(self) -> bool:
        return self._submitting or self._session.is_active

    async def submit(self, start: Callable[[], Awaitable[str]]) -> str:
        if self.is_active():
            raise SessionConflictError(
                f"Workflow {self._session.request_id or '(starting)'} is still active."
            )
        self._submitting = True
        try:
            request_id = await start()
        finally:
            self._submitting = False
        self._session = Session(request_id=request_id, status="running", cursor=0)
        logger.info("session %s started", request_id)
        return request_id

    def set_status(self, status: SessionStatus) -> None:
        self._session.status = status

    def advance(self, count: int) -> int:
        if count < 0:
            raise ValueError("Cursor can only move forward.")
        self._session.cursor += count
        return self._session.cursor

    def finish(self, status: SessionStatus) -> None:
        """Record a terminal status and release the request id."""
        logger.info("session %s finished with status %s", self._session.request_id, status)
        self._session.status = status
        self._session.request_id = None

    def clear(self) -> None:
        if self._session.request_id is not None:
            logger.info("session %s abandoned", self._session.request_id)
        self._session = Session()
