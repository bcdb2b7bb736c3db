"""Run records, their status machine, and trigger results.

A run's status only moves forward:

    PENDING -> RUNNING -> SUCCEEDED | FAILED
    PENDING -> FAILED   (cancelled before it started)

Terminal runs are immutable.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from task_trigger.errors import InvalidTransition


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[RunStatus] = frozenset({RunStatus.SUCCEEDED, RunStatus.FAILED})

ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED},
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: set(),
}


def check_transition(current: RunStatus, to: RunStatus) -> None:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise InvalidTransition(f"Illegal transition: {current.value} -> {to.value}")


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex}"


class TriggerOptions(BaseModel):
    """Caller-supplied options for a single trigger."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    idempotency_key: str | None = None
    max_attempts: int | None = Field(default=None, ge=1)
    start_at: datetime | None = None
    start_after: float | None = Field(default=None, ge=0, description="Delay in seconds")
    concurrency_key: str | None = None

    @field_validator("start_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def due_at(self, created_at: datetime) -> datetime:
        """When the first attempt may start. With both delays set, the later one wins."""

        due = created_at
        if self.start_after:
            due = created_at + timedelta(seconds=self.start_after)
        if self.start_at is not None and self.start_at > due:
            due = self.start_at
        return due


class ErrorRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    message: str
    stack: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, stack: str | None = None) -> ErrorRecord:
        return cls(name=type(exc).__name__, message=str(exc), stack=stack)


class UsageSample(BaseModel):
    """CPU and wall-clock time spent in a run's handler, summed over attempts."""

    model_config = ConfigDict(frozen=True)

    cpu_time_ms: float = 0.0
    wall_time_ms: float = 0.0

    def __add__(self, other: UsageSample) -> UsageSample:
        return UsageSample(
            cpu_time_ms=self.cpu_time_ms + other.cpu_time_ms,
            wall_time_ms=self.wall_time_ms + other.wall_time_ms,
        )


class Run(BaseModel):
    """One execution instance of a task. Stores hand out immutable snapshots."""

    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    status: RunStatus = RunStatus.PENDING
    payload: Any = None
    output: Any = None
    error: ErrorRecord | None = None
    options: TriggerOptions = Field(default_factory=TriggerOptions)

    attempts: int = 0
    usage: UsageSample = Field(default_factory=UsageSample)

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def idempotency_expired(self, ttl_seconds: float | None, now: datetime | None = None) -> bool:
        """A key stays bound to its run until the run is terminal and `ttl_seconds` old."""

        if ttl_seconds is None or not self.is_terminal or self.finished_at is None:
            return False
        now = now or utc_now()
        return now >= self.finished_at + timedelta(seconds=ttl_seconds)


class RunSummary(BaseModel):
    """What `runs.retrieve` hands back to callers."""

    id: str
    task_id: str
    status: RunStatus
    output: Any = None
    error: ErrorRecord | None = None
    attempts: int = 0
    usage: UsageSample = Field(default_factory=UsageSample)
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @classmethod
    def from_run(cls, run: Run) -> RunSummary:
        return cls(
            id=run.id,
            task_id=run.task_id,
            status=run.status,
            output=run.output,
            error=run.error,
            attempts=run.attempts,
            usage=run.usage,
            created_at=run.created_at,
            updated_at=run.updated_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
        )


@dataclass(frozen=True, slots=True)
class TriggerResult:
    id: str


@dataclass(frozen=True, slots=True)
class TaskRunResult:
    """Outcome of a waited-on run.

    `ok=False` means the task ran and failed (or the wait timed out); request
    errors are raised instead.
    """

    ok: bool
    id: str
    output: Any = None
    error: ErrorRecord | None = None

    @classmethod
    def from_run(cls, run: Run) -> TaskRunResult:
        if run.status is RunStatus.SUCCEEDED:
            return cls(ok=True, id=run.id, output=run.output)
        return cls(ok=False, id=run.id, error=run.error)

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"ok": self.ok, "id": self.id}
        if self.ok:
            out["output"] = self.output
        else:
            out["error"] = self.error.model_dump(mode="json") if self.error else None
        return out
