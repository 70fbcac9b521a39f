from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import quote

import httpx

from inkflow.backends.base import (
    AuditLog,
    ChatLog,
    DocumentStore,
    TaskPlannerBackend,
    WorkflowBackend,
)
from inkflow.errors import (
    ProtocolError,
    WorkflowNotFoundError,
    WorkflowTimeoutError,
    WorkflowTransportError,
)
from inkflow.models import AgentSnapshot, AuditStatus, PlannerSnapshot, PlannerStatus, TodoItem

logger = logging.getLogger(__name__)


def _normalize_base_url(url: str) -> str:
    return url.rstrip("/")


def _segment(value: str) -> str:
    return quote(str(value), safe="")


def _raise_for_status(response: httpx.Response, *, request_id: str | None = None) -> None:
    if 200 <= response.status_code < 300:
        return
    detail = None
    body = response.text
    if body:
        try:
            payload = json.loads(body)
            if isinstance(payload, Mapping):
                detail = payload.get("message") or payload.get("detail") or payload.get("error")
        except json.JSONDecodeError:
            detail = None
    detail_text = f": {detail}" if detail else ""
    request = response.request
    message = (
        f"{request.method} {request.url.path} failed ({response.status_code}){detail_text}"
    )
    if response.status_code == 404:
        raise WorkflowNotFoundError(message, status_code=404, request_id=request_id)
    raise WorkflowTransportError(message, status_code=response.status_code, request_id=request_id)


class HttpBackend(WorkflowBackend, TaskPlannerBackend, ChatLog, AuditLog, DocumentStore):
    """JSON-over-HTTP client for the writing-assistant pipeline server."""

    def __init__(
        self,
        base_url: str,
        *,
        api_token: str = "",
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = _normalize_base_url(base_url)
        self.api_token = api_token
        self.timeout_seconds = timeout_seconds
        self.client = client

    @asynccontextmanager
    async def _client_context(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.client is not None:
            yield self.client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            yield client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug("%s %s", method, url)
        try:
            async with self._client_context() as client:
                response = await client.request(method, url, json=payload, headers=self._headers())
        except httpx.TimeoutException as exc:
            raise WorkflowTimeoutError(
                f"{method} {path} timed out after {self.timeout_seconds:.1f}s",
                request_id=request_id,
            ) from exc
        except httpx.HTTPError as exc:
            raise WorkflowTransportError(
                f"{method} {path} failed: {exc}", request_id=request_id
            ) from exc

        _raise_for_status(response, request_id=request_id)
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"{method} {path} returned invalid JSON.") from exc

    @staticmethod
    def _request_id_from(payload: Any) -> str:
        request_id = payload.get("requestId") if isinstance(payload, dict) else None
        if not isinstance(request_id, str) or not request_id:
            raise ProtocolError("Start response did not include a requestId.")
        return request_id

    async def start_workflow(
        self,
        model_ref: str,
        context_ref: str,
        message: str,
        current_file: dict[str, str] | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "modelRef": model_ref,
            "contextRef": context_ref,
            "message": message,
        }
        if current_file is not None:
            body["currentFile"] = {
                "path": current_file.get("path", ""),
                "content": current_file.get("content", ""),
            }
        return self._request_id_from(await self._request("POST", "/agent/start", payload=body))

    async def poll_workflow(self, request_id: str) -> AgentSnapshot:
        payload = await self._request(
            "GET", f"/agent/{_segment(request_id)}", request_id=request_id
        )
        return AgentSnapshot.from_dict(payload)

    async def start_task_planner(self, model_ref: str, context_ref: str, repo_url: str) -> str:
        body = {"modelRef": model_ref, "contextRef": context_ref, "repoUrl": repo_url}
        return self._request_id_from(await self._request("POST", "/planner/start", payload=body))

    async def poll_task_planner(self, request_id: str) -> PlannerSnapshot:
        payload = await self._request(
            "GET", f"/planner/{_segment(request_id)}", request_id=request_id
        )
        return PlannerSnapshot.from_dict(payload)

    async def pause_workflow(self, request_id: str, paused: bool) -> PlannerStatus:
        payload = await self._request(
            "POST",
            f"/planner/{_segment(request_id)}/pause",
            payload={"paused": paused},
            request_id=request_id,
        )
        status = payload.get("status") if isinstance(payload, dict) else None
        if status not in {"running", "completed", "error", "paused"}:
            raise ProtocolError(f"Unexpected pause status: {status!r}")
        return status

    async def update_todo_item(
        self, request_id: str, item_id: str, fields: dict[str, Any]
    ) -> TodoItem | None:
        try:
            payload = await self._request(
                "PATCH",
                f"/planner/{_segment(request_id)}/items/{_segment(item_id)}",
                payload=dict(fields),
                request_id=request_id,
            )
        except WorkflowNotFoundError:
            return None
        item = payload.get("item") if isinstance(payload, dict) else None
        if item is None:
            return None
        return TodoItem.from_dict(item)

    async def append_chat_message(self, project_ref: str, role: str, content: str) -> None:
        await self._request(
            "POST",
            f"/projects/{_segment(project_ref)}/messages",
            payload={"role": role, "content": content},
        )

    async def update_audit_status(self, log_id: str, status: AuditStatus) -> None:
        await self._request("POST", f"/audit/{_segment(log_id)}", payload={"status": status})

    async def read_document(self, document_ref: str) -> str:
        payload = await self._request("GET", f"/documents/{_segment(document_ref)}")
        content = payload.get("content") if isinstance(payload, dict) else None
        return content if isinstance(content, str) else ""

    async def apply_document_content(self, document_ref: str, content: str) -> None:
        await self._request(
            "PUT", f"/documents/{_segment(document_ref)}", payload={"content": content}
        )
