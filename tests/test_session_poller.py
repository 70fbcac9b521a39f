import asyncio
from typing import Any

import pytest

from inkflow.errors import InkflowError, SessionConflictError, WorkflowTransportError
from inkflow.poller import TracePoller
from inkflow.session import SessionStore


async def _start(request_id: str) -> str:
    return request_id


def test_submit_rejects_a_second_active_session() -> None:
    async def scenario() -> None:
        store = SessionStore()
        await store.submit(lambda: _start("req-1"))
        with pytest.raises(SessionConflictError):
            await store.submit(lambda: _start("req-2"))
        assert store.session.request_id == "req-1"

    asyncio.run(scenario())


def test_submit_is_rejected_while_the_first_start_is_in_flight() -> None:
    async def scenario() -> None:
        store = SessionStore()
        release = asyncio.Event()

        async def slow_start() -> str:
            await release.wait()
            return "req-1"

        first = asyncio.create_task(store.submit(slow_start))
        await asyncio.sleep(0)
        with pytest.raises(SessionConflictError):
            await store.submit(lambda: _start("req-2"))
        release.set()
        assert await first == "req-1"

    asyncio.run(scenario())


def test_finish_releases_request_and_clear_resets() -> None:
    async def scenario() -> SessionStore:
        store = SessionStore()
        await store.submit(lambda: _start("req-1"))
        store.advance(3)
        store.finish("completed")
        return store

    store = asyncio.run(scenario())
    assert store.session.request_id is None
    assert store.session.status == "completed"
    assert store.is_active() is False

    store.clear()
    assert store.current().status == "idle"
    assert store.current().cursor == 0


def test_cursor_cannot_move_backwards() -> None:
    store = SessionStore()

    with pytest.raises(ValueError):
        store.advance(-1)


class ScriptedFetch:
    def __init__(self, statuses: list[str]) -> None:
        self.statuses = statuses
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, request_id: str) -> dict[str, Any]:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        status = self.statuses[min(self.calls, len(self.statuses) - 1)]
        self.calls += 1
        self.in_flight -= 1
        return {"request_id": request_id, "status": status}


def test_poller_stops_at_terminal_status_without_overlapping_fetches() -> None:
    fetch = ScriptedFetch(["running", "running", "completed"])
    seen: list[str] = []

    async def on_snapshot(request_id: str, snapshot: dict[str, Any]) -> bool:
        _ = request_id
        seen.append(snapshot["status"])
        return snapshot["status"] == "completed"

    async def on_failure(request_id: str, error: InkflowError) -> None:
        raise AssertionError(f"unexpected failure for {request_id}: {error}")

    async def scenario() -> None:
        store = SessionStore()
        await store.submit(lambda: _start("req-1"))
        poller = TracePoller(store, fetch, on_snapshot, on_failure, interval_seconds=0)
        poller.start("req-1")
        await poller.wait()
        assert poller.running is False

    asyncio.run(scenario())
    assert seen == ["running", "running", "completed"]
    assert fetch.calls == 3
    assert fetch.max_in_flight == 1


def test_poller_discards_result_after_session_is_cleared() -> None:
    events: list[dict[str, Any]] = []
    snapshots: list[Any] = []

    async def scenario() -> None:
        store = SessionStore()
        await store.submit(lambda: _start("req-1"))
        started = asyncio.Event()
        release = asyncio.Event()

        async def fetch(request_id: str) -> dict[str, Any]:
            started.set()
            await release.wait()
            return {"request_id": request_id, "status": "completed"}

        async def on_snapshot(request_id: str, snapshot: Any) -> bool:
            snapshots.append(snapshot)
            return True

        async def on_failure(request_id: str, error: InkflowError) -> None:
            raise AssertionError("no failure expected")

        poller = TracePoller(
            store, fetch, on_snapshot, on_failure, interval_seconds=0, event_hook=events.append
        )
        poller.start("req-1")
        await started.wait()
        store.clear()
        poller.stop()
        release.set()
        await poller.wait()

    asyncio.run(scenario())
    assert snapshots == []
    assert events == [{"event": "poll_discarded", "request_id": "req-1"}]


def test_poll_failure_is_reported_once_without_retry() -> None:
    failures: list[InkflowError] = []
    events: list[dict[str, Any]] = []
    calls = 0

    async def fetch(request_id: str) -> Any:
        nonlocal calls
        calls += 1
        raise WorkflowTransportError("connection reset", request_id=request_id)

    async def on_snapshot(request_id: str, snapshot: Any) -> bool:
        raise AssertionError("no snapshot expected")

    async def on_failure(request_id: str, error: InkflowError) -> None:
        failures.append(error)

    async def scenario() -> None:
        store = SessionStore()
        await store.submit(lambda: _start("req-1"))
        poller = TracePoller(
            store, fetch, on_snapshot, on_failure, interval_seconds=0, event_hook=events.append
        )
        poller.start("req-1")
        await poller.wait()

    asyncio.run(scenario())
    assert calls == 1
    assert len(failures) == 1
    assert events[0]["event"] == "poll_failed"
    assert "connection reset" in events[0]["error"]


def test_slow_poll_times_out_as_transport_failure() -> None:
    failures: list[InkflowError] = []

    async def fetch(request_id: str) -> Any:
        await asyncio.sleep(5)

    async def on_snapshot(request_id: str, snapshot: Any) -> bool:
        return True

    async def on_failure(request_id: str, error: InkflowError) -> None:
        failures.append(error)

    async def scenario() -> None:
        store = SessionStore()
        await store.submit(lambda: _start("req-1"))
        poller = TracePoller(
            store, fetch, on_snapshot, on_failure, interval_seconds=0, timeout_seconds=0.01
        )
        poller.start("req-1")
        await poller.wait()

    asyncio.run(scenario())
    assert len(failures) == 1
    assert isinstance(failures[0], WorkflowTransportError)
    assert "timed out" in str(failures[0])
