"""Domain models for task discovery, claiming and dispatch."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Lifecycle states the harness distinguishes."""

    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    OTHER = "other"


class SchedulerState(str, Enum):
    """Dispatch scheduler states."""

    IDLE = "idle"
    SCANNING = "scanning"


class ScanTrigger(str, Enum):
    """What asked for a scan."""

    STARTUP = "startup"
    TIMER = "timer"
    MARKER = "marker"
    MANUAL = "manual"


@dataclass(slots=True, frozen=True)
class StatusNames:
    """Store-side names for the statuses the harness reads and writes."""

    pending: str = "Todo"
    active: str = "In Progress"
    done: str = "Done"

    def resolve(self, name: str) -> TaskStatus:
        if name == self.pending:
            return TaskStatus.PENDING
        if name == self.active:
            return TaskStatus.ACTIVE
        if name == self.done:
            return TaskStatus.DONE
        return TaskStatus.OTHER


@dataclass(slots=True, frozen=True)
class RawTaskRecord:
    """Fields read from one store record, before project resolution."""

    task_id: str
    title: str
    status_name: str
    assignee: str
    project: str
    url: str


@dataclass(slots=True, frozen=True)
class Task:
    """Point-in-time snapshot of a store task."""

    task_id: str
    title: str
    status: TaskStatus
    status_name: str
    assignee: str
    project: str
    project_path: str
    url: str

    @property
    def is_actionable(self) -> bool:
        return bool(self.project_path)


@dataclass(slots=True)
class EligibleTasks:
    """Outcome of one eligibility listing."""

    tasks: list[Task] = field(default_factory=list)
    excluded: list[Task] = field(default_factory=list)
    store_error: str | None = None


@dataclass(slots=True, frozen=True)
class ModelSelector:
    """Provider/model pair the runner should use."""

    provider_id: str
    model_id: str

    def __str__(self) -> str:
        return f"{self.provider_id}/{self.model_id}"


@dataclass(slots=True, frozen=True)
class DispatchRequest:
    """Everything one dispatch call sends to the runner."""

    title: str
    working_dir: str
    instructions: str
    model: ModelSelector


@dataclass(slots=True)
class DispatchOutcome:
    """Result of handing one task to the runner."""

    task_id: str
    session_id: str | None = None
    failed_stage: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed_stage is None


@dataclass(slots=True)
class ScanSummary:
    """Per-scan counters for logging and CLI reporting."""

    trigger: ScanTrigger
    started_at: datetime
    finished_at: datetime | None = None
    found: int = 0
    excluded: int = 0
    claimed: int = 0
    claim_lost: int = 0
    dispatched: int = 0
    dispatch_failed: int = 0
    errors: int = 0
    store_error: str | None = None
    outcomes: list[DispatchOutcome] = field(default_factory=list)
