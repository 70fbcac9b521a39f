import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from inkflow.backends.http import HttpBackend
from inkflow.errors import (
    ProtocolError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
    WorkflowTransportError,
)
from inkflow.models import ModifyFileAction

Handler = Callable[[httpx.Request], httpx.Response]


def _call(handler: Handler, action: Callable[[HttpBackend], Any]) -> Any:
    async def scenario() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            backend = HttpBackend("https://ink.test/api/", api_token="secret", client=client)
            return await action(backend)

    return asyncio.run(scenario())


def test_start_workflow_posts_message_and_current_file() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"requestId": "req-7"})

    request_id = _call(
        handler,
        lambda backend: backend.start_workflow(
            "model-1", "project-1", "Tighten it", {"path": "a.md", "content": "ABC"}
        ),
    )

    assert request_id == "req-7"
    assert seen["method"] == "POST"
    assert seen["path"] == "/api/agent/start"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"] == {
        "modelRef": "model-1",
        "contextRef": "project-1",
        "message": "Tighten it",
        "currentFile": {"path": "a.md", "content": "ABC"},
    }


def test_poll_workflow_parses_trace_and_final() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/agent/req-7"
        return httpx.Response(
            200,
            json={
                "status": "completed",
                "maxLoops": 2,
                "trace": [
                    {"role": "planner", "action": {"type": "chat", "thought": "t"}, "loop": 1}
                ],
                "final": {
                    "type": "modify_file",
                    "filePath": "a.md",
                    "originalContent": "B",
                    "newContent": "Q",
                    "logId": "log-1",
                },
            },
        )

    snapshot = _call(handler, lambda backend: backend.poll_workflow("req-7"))

    assert snapshot.status == "completed"
    assert snapshot.max_loops == 2
    assert snapshot.trace[0].loop_index == 1
    assert isinstance(snapshot.final, ModifyFileAction)
    assert snapshot.final.log_id == "log-1"


def test_unknown_request_raises_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "no such request"})

    with pytest.raises(WorkflowNotFoundError) as excinfo:
        _call(handler, lambda backend: backend.poll_workflow("gone"))

    assert excinfo.value.status_code == 404
    assert excinfo.value.request_id == "gone"
    assert "no such request" in str(excinfo.value)


def test_server_error_carries_status_code_and_detail() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "pipeline crashed"})

    with pytest.raises(WorkflowTransportError) as excinfo:
        _call(handler, lambda backend: backend.poll_workflow("req-7"))

    assert excinfo.value.status_code == 500
    assert "pipeline crashed" in str(excinfo.value)


def test_timeout_maps_to_workflow_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow server", request=request)

    with pytest.raises(WorkflowTimeoutError):
        _call(handler, lambda backend: backend.poll_workflow("req-7"))


def test_connection_error_maps_to_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(WorkflowTransportError):
        _call(handler, lambda backend: backend.poll_workflow("req-7"))


def test_invalid_json_is_a_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>oops</html>")

    with pytest.raises(ProtocolError):
        _call(handler, lambda backend: backend.poll_workflow("req-7"))


def test_start_without_request_id_is_a_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    with pytest.raises(ProtocolError):
        _call(handler, lambda backend: backend.start_task_planner("m", "p", "https://git.example"))


def test_pause_and_todo_update_endpoints() -> None:
    seen: list[tuple[str, str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        seen.append((request.method, request.url.path, body))
        if request.url.path.endswith("/pause"):
            return httpx.Response(200, json={"status": "paused"})
        if request.url.path.endswith("/items/t2"):
            return httpx.Response(
                200, json={"item": {"id": "t2", "title": "Outline", "status": "in_progress"}}
            )
        return httpx.Response(404, json={"message": "unknown item"})

    async def action(backend: HttpBackend) -> tuple[Any, Any, Any]:
        status = await backend.pause_workflow("plan-1", True)
        item = await backend.update_todo_item("plan-1", "t2", {"status": "in_progress"})
        missing = await backend.update_todo_item("plan-1", "t9", {"priority": "low"})
        return status, item, missing

    status, item, missing = _call(handler, action)

    assert status == "paused"
    assert item.status == "in_progress"
    assert missing is None
    assert seen[0] == ("POST", "/api/planner/plan-1/pause", {"paused": True})
    assert seen[1] == ("PATCH", "/api/planner/plan-1/items/t2", {"status": "in_progress"})


def test_chat_audit_and_document_endpoints() -> None:
    seen: list[tuple[str, str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        seen.append((request.method, request.url.path, body))
        if request.method == "GET":
            return httpx.Response(200, json={"content": "ABCXYZ"})
        return httpx.Response(204)

    async def action(backend: HttpBackend) -> str:
        await backend.append_chat_message("project-1", "assistant", "hello")
        await backend.update_audit_status("log-1", "approved")
        content = await backend.read_document("notes.md")
        await backend.apply_document_content("notes.md", "AQYZ")
        return content

    content = _call(handler, action)

    assert content == "ABCXYZ"
    assert seen == [
        ("POST", "/api/projects/project-1/messages", {"role": "assistant", "content": "hello"}),
        ("POST", "/api/audit/log-1", {"status": "approved"}),
        ("GET", "/api/documents/notes.md", None),
        ("PUT", "/api/documents/notes.md", {"content": "AQYZ"}),
    ]
