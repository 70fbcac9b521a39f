from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from inkflow.errors import StateError

MAX_EVENTS = 200
UPDATE_ATTEMPTS = 4


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class RevisionConflictError(StateError):
    """Another writer bumped the namespace revision first."""

    def __init__(self, namespace: str, expected: int, found: int) -> None:
        super().__init__(
            f"Namespace '{namespace}' is at revision {found}, expected {expected}."
        )
        self.namespace = namespace
        self.expected = expected
        self.found = found


class LocalStateStore:
    """Schema-versioned JSON namespaces under `<root>/state/`.

    Every namespace file holds an envelope::

        {"schema_version": 1, "revision": 3, "updated_at": "...", "data": ...}

    Files written before envelopes existed are read as bare data at revision 1.
    """

    NAMESPACES = frozenset({"sessions", "events", "chat", "audit"})
    SCHEMA_VERSION = 1

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / "state"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    def _path(self, namespace: str) -> Path:
        if namespace not in self.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")
        return self.state_dir / f"{namespace}.json"

    def _envelope(self, data: Any, revision: int, updated_at: str | None = None) -> dict[str, Any]:
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": updated_at or utcnow_iso(),
            "data": data,
        }

    @contextmanager
    def _locked(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        deadline = time.monotonic() + timeout_seconds
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError as exc:
                if time.monotonic() > deadline:
                    raise StateError(f"Timed out waiting for {self.lock_file}.") from exc
                time.sleep(0.02)
                continue
            except OSError as exc:
                raise StateError(f"Cannot create {self.lock_file}: {exc}") from exc
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            break

        try:
            yield
        finally:
            self.lock_file.unlink(missing_ok=True)

    def _read(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise StateError(f"Cannot read {path}: {exc}") from exc

    def _write(self, path: Path, payload: dict[str, Any]) -> None:
        staging = path.with_suffix(".json.tmp")
        try:
            staging.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(staging, path)
        except OSError as exc:
            raise StateError(f"Cannot write {path}: {exc}") from exc

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        fallback = {} if default is None else default
        raw = self._read(self._path(namespace))
        if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
            envelope = self._envelope(
                raw.get("data", fallback),
                int(raw.get("revision") or 1),
                raw.get("updated_at"),
            )
            envelope["schema_version"] = int(raw.get("schema_version") or self.SCHEMA_VERSION)
            return envelope
        return self._envelope(fallback if raw is None else raw, 1)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default)["data"]

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        path = self._path(namespace)
        with self._locked():
            revision = self.get_envelope(namespace)["revision"]
            if expected_revision is not None and expected_revision != revision:
                raise RevisionConflictError(namespace, expected_revision, revision)
            self._write(path, self._envelope(data, revision + 1))

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        """Read-modify-write with optimistic retries on revision conflicts."""
        fallback = {} if default is None else default
        conflict: RevisionConflictError | None = None
        for _ in range(UPDATE_ATTEMPTS):
            current = self.get_envelope(namespace, default=fallback)
            updated = updater(current["data"])
            try:
                self.set_json(namespace, updated, expected_revision=current["revision"])
            except RevisionConflictError as exc:
                conflict = exc
                time.sleep(0.01)
                continue
            return updated
        raise StateError(f"Gave up updating '{namespace}': {conflict}")

    def get_sessions(self) -> dict[str, dict[str, Any]]:
        sessions = self.get_json("sessions", default={})
        return sessions if isinstance(sessions, dict) else {}

    def record_session(self, request_id: str, updates: dict[str, Any]) -> None:
        now = utcnow_iso()

        def _merge(payload: Any) -> dict[str, Any]:
            sessions = payload if isinstance(payload, dict) else {}
            record = sessions.get(request_id)
            if not isinstance(record, dict):
                record = {"request_id": request_id, "created_at": now}
            record.update(updates)
            record["updated_at"] = now
            sessions[request_id] = record
            return sessions

        self.update_json("sessions", _merge, default={})

    def get_events(self) -> list[dict[str, Any]]:
        events = self.get_json("events", default=[])
        return events if isinstance(events, list) else []

    def record_event(self, event: dict[str, Any]) -> None:
        entry = {**event, "at": utcnow_iso()}

        def _append(current: Any) -> list[dict[str, Any]]:
            events = current if isinstance(current, list) else []
            events.append(entry)
            return events[-MAX_EVENTS:]

        self.update_json("events", _append, default=[])
