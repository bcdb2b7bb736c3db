"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from task_trigger.runs import ErrorRecord, TaskRunResult, TriggerOptions


class TriggerRequest(BaseModel):
    task_id: str
    payload: Any = None
    options: TriggerOptions = Field(default_factory=TriggerOptions)


class TriggerAndWaitRequest(TriggerRequest):
    timeout: float | None = Field(default=None, gt=0)


class ApiTriggerResult(BaseModel):
    id: str


class ApiRunResult(BaseModel):
    ok: bool
    id: str
    output: Any = None
    error: ErrorRecord | None = None

    @classmethod
    def from_result(cls, result: TaskRunResult) -> ApiRunResult:
        return cls(ok=result.ok, id=result.id, output=result.output, error=result.error)


class ApiTask(BaseModel):
    id: str
    path: list[str]
    parser: str
    description: str = ""
