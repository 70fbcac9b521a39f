from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click

from inkflow.backends import AuditLog, ChatLog, HttpBackend
from inkflow.config import InkflowConfig, load_config, save_config
from inkflow.coordinator import AgentSessionCoordinator, SessionResult
from inkflow.errors import InkflowError
from inkflow.gate import ConfirmationGate
from inkflow.models import TODO_PRIORITIES, TODO_STATUSES, ChatMessage
from inkflow.planner import (
    TaskPlannerCoordinator,
    filter_items,
    ready_items,
    render_todo_markdown,
)
from inkflow.progress import ProgressEstimator, ProgressView, percent_complete
from inkflow.state import LocalAuditLog, LocalChatLog, LocalDocumentStore, LocalStateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG = "inkflow.toml"


@dataclass(slots=True)
class Runtime:
    root: Path
    config_path: Path
    config: InkflowConfig
    state: LocalStateStore
    backend: HttpBackend
    documents: LocalDocumentStore
    chat_log: ChatLog
    audit: AuditLog


class _EchoHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(self.format(record), err=True)
        except Exception:
            self.handleError(record)


def _configure_logging(level: str, verbose: bool) -> None:
    package_logger = logging.getLogger("inkflow")
    package_logger.setLevel(logging.DEBUG if verbose else getattr(logging, level, logging.WARNING))
    if not any(isinstance(handler, _EchoHandler) for handler in package_logger.handlers):
        handler = _EchoHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        package_logger.addHandler(handler)


def _verbose_requested() -> bool:
    context = click.get_current_context(silent=True)
    if context is None:
        return False
    return bool(context.find_root().params.get("verbose"))


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _resolve_state_dir(root: Path, config: InkflowConfig) -> Path:
    state_dir = Path(config.state.directory)
    if not state_dir.is_absolute():
        state_dir = root / state_dir
    return state_dir


def _build_backend(config: InkflowConfig) -> HttpBackend:
    return HttpBackend(
        config.server.base_url,
        api_token=config.server.api_token,
        timeout_seconds=max(1.0, float(config.server.timeout_seconds)),
    )


def _record_event(state: LocalStateStore, event: dict[str, Any]) -> None:
    try:
        state.record_event(event)
    except InkflowError as exc:
        logger.warning("could not record event %s: %s", event.get("event"), exc)


def _load_runtime(root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _configure_logging(config.logging.level, _verbose_requested())
    state = LocalStateStore(_resolve_state_dir(root, config))
    backend = _build_backend(config)
    local_records = config.state.records == "local"
    return Runtime(
        root=root,
        config_path=config_path,
        config=config,
        state=state,
        backend=backend,
        documents=LocalDocumentStore(root),
        chat_log=LocalChatLog(state) if local_records else backend,
        audit=LocalAuditLog(state) if local_records else backend,
    )


def _run(awaitable: Awaitable[T]) -> T:
    async def _main() -> T:
        return await awaitable

    try:
        return asyncio.run(_main())
    except InkflowError as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_message(message: ChatMessage) -> None:
    click.echo(message.content)
    click.echo("")


class _ProgressPrinter:
    def __init__(self) -> None:
        self.last = ""

    def __call__(self, view: ProgressView) -> None:
        line = view.message()
        if view.max_loops:
            line += f" (loop {view.loop_count}/{view.max_loops})"
        if line != self.last:
            self.last = line
            click.echo(line)


def _result_payload(result: SessionResult) -> dict[str, Any]:
    payload: dict[str, Any] = {"request_id": result.request_id, "status": result.status}
    if result.error:
        payload["error"] = result.error
    if result.final is not None:
        payload["final"] = result.final.to_dict()
    if result.gate is not None:
        payload["proposal"] = result.gate.state
    return payload


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log debug output to stderr.")
def cli(verbose: bool) -> None:
    """inkflow: drive writing-assistant agent and task-planner workflows."""


@cli.command("init")
@click.option("--server", "base_url", default=None, help="Pipeline server base URL.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(base_url: str | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = load_config(config_path)
    if base_url:
        config.server.base_url = base_url
    save_config(config_path, config)

    state = LocalStateStore(_resolve_state_dir(root, config))

    click.echo(f"Initialized inkflow in {root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Server: {config.server.base_url}")
    click.echo(f"State: {state.state_dir}")


async def _run_agent(
    runtime: Runtime,
    message: str,
    document_ref: str | None,
    auto_accept: bool,
    assume_yes: bool,
) -> SessionResult:
    config = runtime.config

    def _hook(event: dict[str, Any]) -> None:
        _record_event(runtime.state, event)

    gate = ConfirmationGate(
        runtime.documents,
        runtime.audit,
        auto_accept=auto_accept,
        event_hook=_hook,
    )
    coordinator = AgentSessionCoordinator(
        runtime.backend,
        gate,
        chat_log=runtime.chat_log,
        project_ref=config.agent.project_ref,
        model_ref=config.agent.model_ref,
        interval_seconds=config.polling.agent_interval_seconds,
        timeout_seconds=config.server.timeout_seconds,
        submit_policy=config.session.submit_policy,
        event_hook=_hook,
        on_message=_echo_message,
        on_progress=_ProgressPrinter(),
    )
    request_id = await coordinator.submit(message, document_ref=document_ref)
    runtime.state.record_session(
        request_id, {"kind": "agent", "status": "running", "document": document_ref}
    )
    result = await coordinator.wait()

    proposal = gate.proposal
    if proposal is not None and proposal.state == "pending_review":
        click.echo(gate.unified_diff() or "(no textual changes)")
        if assume_yes or click.confirm(f"Apply changes to {proposal.document_ref}?", default=False):
            await coordinator.approve()
        else:
            await coordinator.reject()
            click.echo("Proposal rejected.")
        result = coordinator.result()

    runtime.state.record_session(
        request_id,
        {
            "status": result.status,
            "error": result.error,
            "proposal": result.gate.state if result.gate else None,
        },
    )
    return result


@cli.command("agent")
@click.argument("message")
@click.option("--document", "document_ref", default=None, help="Document the agent may edit.")
@click.option("--auto-accept/--review", "auto_accept", default=None)
@click.option("--yes", "assume_yes", is_flag=True, default=False, help="Approve without asking.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def agent_command(
    message: str,
    document_ref: str | None,
    auto_accept: bool | None,
    assume_yes: bool,
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    if auto_accept is None:
        auto_accept = runtime.config.review.auto_accept
    result = _run(_run_agent(runtime, message, document_ref, auto_accept, assume_yes))
    if result.status == "error":
        raise click.ClickException(f"Agent run failed: {result.error}")
    click.echo(json.dumps(_result_payload(result), ensure_ascii=False, indent=2))


def _planner(runtime: Runtime, *, echo_history: bool = True) -> TaskPlannerCoordinator:
    config = runtime.config
    return TaskPlannerCoordinator(
        runtime.backend,
        model_ref=config.agent.model_ref,
        context_ref=config.agent.project_ref,
        interval_seconds=config.polling.planner_interval_seconds,
        timeout_seconds=config.server.timeout_seconds,
        event_hook=lambda event: _record_event(runtime.state, event),
        on_message=_echo_message if echo_history else None,
    )


async def _run_plan(
    runtime: Runtime, repo_url: str, detach: bool, todo_file: Path | None
) -> dict[str, Any]:
    planner = _planner(runtime)
    request_id = await planner.start(repo_url)
    runtime.state.record_session(
        request_id, {"kind": "planner", "status": "running", "repo_url": repo_url}
    )
    if detach:
        planner.cancel()
        return {"request_id": request_id, "status": "running"}

    result = await planner.wait()
    runtime.state.record_session(request_id, {"status": result.status, "error": result.error})
    if todo_file is not None and planner.snapshot is not None:
        todo_file.write_text(render_todo_markdown(planner.snapshot), encoding="utf-8")
    if result.status == "error":
        raise InkflowError(f"Task planner failed: {result.error}")
    return {
        "request_id": request_id,
        "status": result.status,
        "progress": result.progress,
        "todo": [item.to_dict() for item in result.todo],
    }


@cli.command("plan")
@click.argument("repo_url")
@click.option("--detach", is_flag=True, default=False, help="Start the run and return at once.")
@click.option("--todo-file", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def plan_command(repo_url: str, detach: bool, todo_file: Path | None, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    payload = _run(_run_plan(runtime, repo_url, detach, todo_file))
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


async def _toggle_pause(runtime: Runtime, request_id: str, paused: bool) -> str:
    planner = _planner(runtime, echo_history=False)
    await planner.attach(request_id, follow=False)
    status = await planner.pause(paused)
    runtime.state.record_session(request_id, {"kind": "planner", "status": status})
    return status


@cli.command("pause")
@click.argument("request_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def pause_command(request_id: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    status = _run(_toggle_pause(runtime, request_id, True))
    click.echo(f"Task planner {request_id} is {status}.")


@cli.command("resume")
@click.argument("request_id")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def resume_command(request_id: str, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    status = _run(_toggle_pause(runtime, request_id, False))
    click.echo(f"Task planner {request_id} is {status}.")


async def _update_todo(
    runtime: Runtime, request_id: str, item_id: str, status: str | None, priority: str | None
) -> dict[str, Any] | None:
    planner = _planner(runtime, echo_history=False)
    await planner.attach(request_id, follow=False)
    await planner.refresh()
    item = await planner.update_item(item_id, status=status, priority=priority)
    return item.to_dict() if item is not None else None


@cli.command("todo")
@click.argument("request_id")
@click.argument("item_id")
@click.option("--status", type=click.Choice(TODO_STATUSES), default=None)
@click.option("--priority", type=click.Choice(TODO_PRIORITIES), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def todo_command(
    request_id: str,
    item_id: str,
    status: str | None,
    priority: str | None,
    config_value: str,
) -> None:
    if status is None and priority is None:
        raise click.UsageError("Pass --status and/or --priority.")
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    item = _run(_update_todo(runtime, request_id, item_id, status, priority))
    if item is None:
        raise click.ClickException(f"Todo item not found: {item_id}")
    click.echo(json.dumps(item, ensure_ascii=False, indent=2))


@cli.command("status")
@click.argument("request_id")
@click.option("--planner", "is_planner", is_flag=True, default=False)
@click.option("--filter-status", type=click.Choice(("all", *TODO_STATUSES)), default="all")
@click.option("--filter-priority", type=click.Choice(("all", *TODO_PRIORITIES)), default="all")
@click.option("--search", default="")
@click.option("--markdown", is_flag=True, default=False, help="Render the todo checklist.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(
    request_id: str,
    is_planner: bool,
    filter_status: str,
    filter_priority: str,
    search: str,
    markdown: bool,
    config_value: str,
) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))

    if not is_planner:
        snapshot = _run(runtime.backend.poll_workflow(request_id))
        view = ProgressEstimator().estimate(snapshot)
        payload: dict[str, Any] = {
            "request_id": request_id,
            "status": snapshot.status,
            "steps": len(snapshot.trace),
            "stages": view.stages,
            "current_stage": view.current_stage,
            "loop": view.loop_count,
            "max_loops": view.max_loops,
        }
        if snapshot.error:
            payload["error"] = snapshot.error
        if snapshot.final is not None:
            payload["final"] = snapshot.final.to_dict()
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return

    planner_snapshot = _run(runtime.backend.poll_task_planner(request_id))
    if markdown:
        click.echo(render_todo_markdown(planner_snapshot), nl=False)
        return
    items = filter_items(
        planner_snapshot.todo, status=filter_status, priority=filter_priority, search=search
    )
    payload = {
        "request_id": request_id,
        "status": planner_snapshot.status,
        "progress": percent_complete(planner_snapshot.todo, planner_snapshot.progress),
        "todo": [item.to_dict() for item in items],
        "ready": [item.id for item in ready_items(planner_snapshot.todo)],
    }
    if planner_snapshot.error:
        payload["error"] = planner_snapshot.error
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("audit")
@click.option("--events", "event_limit", type=int, default=20, show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def audit_command(event_limit: int, config_value: str) -> None:
    root = Path.cwd().resolve()
    runtime = _load_runtime(root, _resolve_config_path(root, config_value))
    payload: dict[str, Any] = {
        "sessions": runtime.state.get_sessions(),
        "events": runtime.state.get_events()[-max(0, event_limit) :] if event_limit else [],
    }
    if isinstance(runtime.audit, LocalAuditLog):
        payload["decisions"] = runtime.audit.entries()
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
