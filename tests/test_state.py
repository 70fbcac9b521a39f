import asyncio
import json
from pathlib import Path

import pytest

from inkflow.errors import StateError
from inkflow.state import LocalAuditLog, LocalChatLog, LocalDocumentStore, LocalStateStore
from inkflow.state.store import MAX_EVENTS


def test_state_store_roundtrip(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path / ".inkflow")
    payload = {"req-1": {"status": "running"}}
    store.set_json("sessions", payload)

    assert store.get_json("sessions") == payload
    assert (tmp_path / ".inkflow" / "state" / "sessions.json").exists()


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    local_path = tmp_path / "state" / "sessions.json"
    local_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("sessions") == {"legacy": True}

    store.set_json("sessions", {"legacy": False})
    on_disk = json.loads(local_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == LocalStateStore.SCHEMA_VERSION
    assert on_disk["data"] == {"legacy": False}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    store.set_json("sessions", {"count": 1})
    first_revision = store.get_envelope("sessions")["revision"]

    store.update_json(
        "sessions", lambda payload: {"count": payload["count"] + 1}, default={"count": 0}
    )

    assert store.get_json("sessions")["count"] == 2
    assert store.get_envelope("sessions")["revision"] > first_revision


def test_stale_revision_is_refused(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    store.set_json("sessions", {})

    with pytest.raises(StateError):
        store.set_json("sessions", {"late": True}, expected_revision=0)


def test_unknown_namespace_is_refused(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)

    with pytest.raises(StateError):
        store.set_json("metrics", {})


def test_record_session_merges_updates(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    store.record_session("req-1", {"kind": "agent", "status": "running"})
    store.record_session("req-1", {"status": "completed"})

    record = store.get_sessions()["req-1"]
    assert record["kind"] == "agent"
    assert record["status"] == "completed"
    assert "created_at" in record


def test_event_log_keeps_most_recent_entries(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    for index in range(MAX_EVENTS + 5):
        store.record_event({"event": "poll_failed", "index": index})

    events = store.get_events()
    assert len(events) == MAX_EVENTS
    assert events[0]["index"] == 5
    assert "at" in events[-1]


def test_local_chat_log_appends_per_project(tmp_path: Path) -> None:
    chat_log = LocalChatLog(LocalStateStore(tmp_path))

    async def scenario() -> None:
        await chat_log.append_chat_message("project-1", "assistant", "first")
        await chat_log.append_chat_message("project-1", "assistant", "second")
        await chat_log.append_chat_message("project-2", "assistant", "other")

    asyncio.run(scenario())
    assert [entry["content"] for entry in chat_log.messages("project-1")] == ["first", "second"]
    assert len(chat_log.messages("project-2")) == 1


def test_local_audit_log_refuses_second_decision(tmp_path: Path) -> None:
    audit = LocalAuditLog(LocalStateStore(tmp_path))

    asyncio.run(audit.update_audit_status("log-1", "approved"))
    with pytest.raises(StateError):
        asyncio.run(audit.update_audit_status("log-1", "rejected"))

    assert audit.entries()["log-1"]["status"] == "approved"


def test_local_document_store_reads_and_writes(tmp_path: Path) -> None:
    documents = LocalDocumentStore(tmp_path)

    async def scenario() -> str:
        assert await documents.read_document("drafts/one.md") == ""
        await documents.apply_document_content("drafts/one.md", "hello")
        return await documents.read_document("drafts/one.md")

    assert asyncio.run(scenario()) == "hello"
    assert (tmp_path / "drafts" / "one.md").read_text(encoding="utf-8") == "hello"


def test_local_document_store_refuses_paths_outside_root(tmp_path: Path) -> None:
    documents = LocalDocumentStore(tmp_path / "workspace")

    with pytest.raises(StateError):
        asyncio.run(documents.read_document("../secrets.txt"))


def test_local_document_store_wraps_undecodable_content(tmp_path: Path) -> None:
    (tmp_path / "chapter.md").write_bytes(b"AB\xffCXYZ")
    documents = LocalDocumentStore(tmp_path)

    with pytest.raises(StateError, match="not valid UTF-8"):
        asyncio.run(documents.read_document("chapter.md"))


def test_local_document_store_wraps_write_failures(tmp_path: Path) -> None:
    (tmp_path / "drafts").write_text("a file, not a directory", encoding="utf-8")
    documents = LocalDocumentStore(tmp_path)

    with pytest.raises(StateError, match="Cannot write document"):
        asyncio.run(documents.apply_document_content("drafts/one.md", "hello"))


def test_state_store_wraps_undecodable_namespace_file(tmp_path: Path) -> None:
    store = LocalStateStore(tmp_path)
    (tmp_path / "state" / "chat.json").write_bytes(b'{"p": "\xff"}')
    chat_log = LocalChatLog(store)

    with pytest.raises(StateError, match="Cannot read"):
        asyncio.run(chat_log.append_chat_message("p", "assistant", "hi"))
