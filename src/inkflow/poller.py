from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from inkflow.errors import InkflowError, WorkflowTimeoutError
from inkflow.session import SessionStore

logger = logging.getLogger(__name__)

EventHook = Callable[[dict[str, Any]], None]
SnapshotHandler = Callable[[str, Any], Awaitable[bool]]
FailureHandler = Callable[[str, InkflowError], Awaitable[None]]


class TracePoller:
    """Fetches one session at a fixed cadence until it reaches a terminal status.

    Only one fetch is in flight at a time. `stop()` never interrupts a fetch that
    has already been issued; its result is dropped once the session it belongs to
    is no longer the store's current one.
    """

    def __init__(
        self,
        store: SessionStore,
        fetch: Callable[[str], Awaitable[Any]],
        on_snapshot: SnapshotHandler,
        on_failure: FailureHandler,
        *,
        interval_seconds: float = 1.0,
        timeout_seconds: float | None = 30.0,
        event_hook: EventHook | None = None,
    ) -> None:
        self.store = store
        self.fetch = fetch
        self.on_snapshot = on_snapshot
        self.on_failure = on_failure
        self.interval_seconds = max(0.0, float(interval_seconds))
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook
        self._task: asyncio.Task[None] | None = None
        self._wake: asyncio.Event | None = None
        self.fetch_count = 0

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _is_current(self, request_id: str) -> bool:
        return self.store.session.request_id == request_id

    def start(self, request_id: str) -> asyncio.Task[None]:
        if self.running:
            raise RuntimeError("Poller is already running.")
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run(request_id), name=f"poll-{request_id}")
        return self._task

    def stop(self) -> None:
        if self._wake is not None:
            self._wake.set()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _fetch_once(self, request_id: str) -> Any:
        self.fetch_count += 1
        if self.timeout_seconds is None:
            return await self.fetch(request_id)
        try:
            return await asyncio.wait_for(self.fetch(request_id), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            raise WorkflowTimeoutError(
                f"Poll timed out after {self.timeout_seconds:.1f}s",
                request_id=request_id,
            ) from exc

    async def _sleep_interval(self) -> None:
        if self._wake is None:
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.interval_seconds)
        except TimeoutError:
            pass

    async def _run(self, request_id: str) -> None:
        while self._is_current(request_id):
            try:
                snapshot = await self._fetch_once(request_id)
            except InkflowError as exc:
                if not self._is_current(request_id):
                    self._emit({"event": "poll_discarded", "request_id": request_id})
                    return
                logger.warning("poll for %s failed: %s", request_id, exc)
                self._emit(
                    {"event": "poll_failed", "request_id": request_id, "error": str(exc)}
                )
                await self.on_failure(request_id, exc)
                return

            if not self._is_current(request_id):
                logger.debug("discarding late poll result for %s", request_id)
                self._emit({"event": "poll_discarded", "request_id": request_id})
                return

            if await self.on_snapshot(request_id, snapshot):
                return
            await self._sleep_interval()
