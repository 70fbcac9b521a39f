import pytest

from inkflow.errors import ProtocolError
from inkflow.models import (
    AgentSnapshot,
    ChatAction,
    ModifyFileAction,
    PlannerSnapshot,
    Step,
    TodoItem,
    parse_action,
)


def test_parse_action_defaults_to_chat() -> None:
    action = parse_action({"thought": "hmm", "message": "hello"})

    assert action == ChatAction(thought="hmm", message="hello")


def test_parse_modify_file_action_reads_camel_case_fields() -> None:
    action = parse_action(
        {
            "type": "modify_file",
            "filePath": "chapter.md",
            "originalContent": "old",
            "newContent": "new",
            "logId": 17,
            "reason": "tighter",
        }
    )

    assert isinstance(action, ModifyFileAction)
    assert action.file_path == "chapter.md"
    assert action.original_content == "old"
    assert action.new_content == "new"
    assert action.log_id == "17"
    assert action.to_dict()["filePath"] == "chapter.md"


def test_parse_action_rejects_unknown_type() -> None:
    with pytest.raises(ProtocolError):
        parse_action({"type": "delete_project"})


def test_step_loop_index_prefers_structured_field() -> None:
    tagged = Step.from_dict(
        {"role": "planner", "action": {"type": "chat"}, "notes": "loop:2;node:planner"}
    )
    structured = Step.from_dict(
        {"role": "writer", "action": {"type": "chat"}, "notes": "loop:2", "loop": 4}
    )
    untagged = Step.from_dict({"role": "editor", "action": {"type": "chat"}})

    assert tagged.loop_index == 2
    assert structured.loop_index == 4
    assert untagged.loop_index == 0


def test_step_without_role_is_rejected() -> None:
    with pytest.raises(ProtocolError):
        Step.from_dict({"action": {"type": "chat"}})


def test_agent_snapshot_only_reads_final_when_completed() -> None:
    running = AgentSnapshot.from_dict(
        {"status": "running", "trace": [], "final": {"type": "chat", "message": "early"}}
    )
    completed = AgentSnapshot.from_dict(
        {
            "status": "completed",
            "trace": [{"role": "planner", "action": {"type": "chat", "thought": "t"}}],
            "final": {"type": "chat", "message": "done"},
            "maxLoops": 3,
        }
    )

    assert running.final is None
    assert running.is_terminal is False
    assert completed.is_terminal is True
    assert completed.final == ChatAction(message="done")
    assert completed.max_loops == 3
    assert len(completed.trace) == 1


def test_agent_snapshot_error_message_is_kept() -> None:
    snapshot = AgentSnapshot.from_dict({"status": "error", "error": "model exploded"})

    assert snapshot.error == "model exploded"


def test_agent_snapshot_unknown_status_is_rejected() -> None:
    with pytest.raises(ProtocolError):
        AgentSnapshot.from_dict({"status": "sleeping"})


def test_todo_item_normalizes_unknown_status_and_priority() -> None:
    item = TodoItem.from_dict(
        {
            "id": "t1",
            "title": "Outline",
            "status": "blocked",
            "priority": "urgent",
            "dependsOn": ["t0"],
            "estimateMinutes": 30,
        }
    )

    assert item.status == "pending"
    assert item.priority == "medium"
    assert item.depends_on == ["t0"]
    assert item.to_dict()["estimateMinutes"] == 30


def test_planner_snapshot_exposes_error_message_only_on_error() -> None:
    failed = PlannerSnapshot.from_dict({"status": "error", "message": "repo unreachable"})
    paused = PlannerSnapshot.from_dict(
        {
            "status": "paused",
            "message": "waiting",
            "repoUrl": "https://git.example/novel",
            "history": [{"timestamp": 1, "message": "cloned"}],
        }
    )

    assert failed.error == "repo unreachable"
    assert paused.error is None
    assert paused.is_terminal is False
    assert paused.repo_url == "https://git.example/novel"
    assert paused.history[0].message == "cloned"
