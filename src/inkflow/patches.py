from __future__ import annotations

import difflib
from dataclasses import dataclass

MANUAL_RECONCILIATION = "manual reconciliation required"


@dataclass(slots=True, frozen=True)
class ReconcileResult:
    applied: bool
    content: str
    reason: str = ""


def reconcile(current: str, original: str, new: str) -> ReconcileResult:
    """Apply a proposed `original -> new` replacement to the live `current` text.

    Only an exact substring match is accepted; the first occurrence is replaced.
    An empty `original` means the proposal is a full overwrite. When `original`
    cannot be found the live text is returned untouched.
    """
    if not original:
        return ReconcileResult(applied=True, content=new)
    index = current.find(original)
    if index < 0:
        return ReconcileResult(applied=False, content=current, reason=MANUAL_RECONCILIATION)
    content = current[:index] + new + current[index + len(original) :]
    return ReconcileResult(applied=True, content=content)


@dataclass(slots=True)
class DiffPart:
    value: str
    added: bool = False
    removed: bool = False


def diff_lines(original: str, new: str) -> list[DiffPart]:
    old_lines = [line + "\n" for line in original.split("\n")]
    new_lines = [line + "\n" for line in new.split("\n")]
    matcher = difflib.SequenceMatcher(a=old_lines, b=new_lines, autojunk=False)

    parts: list[DiffPart] = []

    def _push(value: str, *, added: bool = False, removed: bool = False) -> None:
        if parts and parts[-1].added == added and parts[-1].removed == removed:
            parts[-1].value += value
            return
        parts.append(DiffPart(value=value, added=added, removed=removed))

    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            _push("".join(old_lines[i1:i2]))
            continue
        if tag in {"replace", "delete"}:
            _push("".join(old_lines[i1:i2]), removed=True)
        if tag in {"replace", "insert"}:
            _push("".join(new_lines[j1:j2]), added=True)
    return parts


def render_unified(original: str, new: str, file_path: str = "document") -> str:
    return "".join(
        difflib.unified_diff(
            original.splitlines(keepends=True),
            new.splitlines(keepends=True),
            fromfile=f"a/{file_path}",
            tofile=f"b/{file_path}",
        )
    )
