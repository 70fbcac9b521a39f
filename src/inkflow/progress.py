from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from inkflow.models import STAGES, AgentSnapshot, Step, TodoItem, role_label

StageStatus = Literal["waiting", "running", "completed"]


def current_stage(trace: Sequence[Step], *, running: bool) -> str | None:
    """Guess which stage is working right now.

    The pipeline alternates planner and writer turns, so the stage after a
    planner step is the writer and every other step hands back to the planner.
    Editor/reviewer turns are not predicted.
    """
    if not running:
        return None
    if not trace:
        return "planner"
    return "writer" if trace[-1].role == "planner" else "planner"


def loop_count(trace: Sequence[Step]) -> int:
    return max((step.loop_index for step in trace), default=0)


def percent_complete(todo: Sequence[TodoItem], progress: int | None = None) -> int:
    if progress is not None:
        return progress
    if not todo:
        return 0
    done = sum(1 for item in todo if item.status == "completed")
    return int(done * 100 / len(todo) + 0.5)


@dataclass(slots=True, frozen=True)
class ProgressView:
    stages: dict[str, StageStatus] = field(default_factory=dict)
    current_stage: str | None = None
    loop_count: int = 0
    max_loops: int = 0
    progress: int | None = None

    @property
    def completed_stages(self) -> frozenset[str]:
        return frozenset(name for name, status in self.stages.items() if status == "completed")

    @property
    def loop_bound_reached(self) -> bool:
        return self.max_loops > 0 and self.loop_count >= self.max_loops

    def message(self) -> str:
        parts = [f"{role_label(name)} {status}" for name, status in self.stages.items()]
        return "[Agent working] " + " / ".join(parts)


class ProgressEstimator:
    """Derives stage display state from successive snapshots of one session."""

    def __init__(self) -> None:
        self._completed: set[str] = set()

    def reset(self) -> None:
        self._completed.clear()

    def estimate(self, snapshot: AgentSnapshot) -> ProgressView:
        running = snapshot.status == "running"
        self._completed.update(step.role for step in snapshot.trace if step.role in STAGES)
        active = current_stage(snapshot.trace, running=running)

        stages: dict[str, StageStatus] = {}
        for stage in STAGES:
            if stage in self._completed:
                stages[stage] = "completed"
            elif stage == active:
                stages[stage] = "running"
            else:
                stages[stage] = "waiting"

        return ProgressView(
            stages=stages,
            current_stage=active,
            loop_count=loop_count(snapshot.trace),
            max_loops=snapshot.max_loops,
            progress=snapshot.progress,
        )
