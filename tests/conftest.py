"""Test configuration and fixtures."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from pydantic import BaseModel

from task_trigger import (
    InMemoryRunStore,
    JsonFileRunStore,
    RunContext,
    RunStore,
    TaskLibrary,
    TaskTriggerSettings,
    build_library,
    task,
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment and `.env` out of the tests."""
    for key in list(os.environ):
        if key.startswith("TASK_TRIGGER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Undo `configure_logging` so later tests don't write to a closed stream."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def settings() -> TaskTriggerSettings:
    """Provide settings with no retry backoff and no `.env` lookup."""
    return TaskTriggerSettings(_env_file=None, retry_base_delay_seconds=0.0)


class WelcomePayload(BaseModel):
    user_id: str


@task("echo")
async def echo(run: RunContext[object]) -> object:
    """Return the payload unchanged."""
    return run.payload


@task("user/welcome", schema=WelcomePayload)
async def welcome(run: RunContext[WelcomePayload]) -> str:
    return f"welcome {run.payload.user_id}"


@task("shout")
def shout(run: RunContext[str]) -> str:
    return run.payload.upper()


@task("explode")
async def explode(run: RunContext[object]) -> None:
    raise ValueError("boom")


@pytest.fixture
def library() -> TaskLibrary:
    """Provide a small nested library."""
    return build_library(
        {
            "echo": echo,
            "shout": shout,
            "explode": explode,
            "users": {"welcome": welcome},
        }
    )


@pytest.fixture(params=["memory", "json"])
def run_store(request: pytest.FixtureRequest, tmp_path: Path) -> RunStore:
    """Provide each run store implementation in turn."""
    if request.param == "memory":
        return InMemoryRunStore()
    return JsonFileRunStore(tmp_path / "state" / "runs.json")
