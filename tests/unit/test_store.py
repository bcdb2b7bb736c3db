"""Unit tests for the run stores."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path

import pytest

from task_trigger.errors import InvalidTransition, RunNotFound
from task_trigger.runs import Run, RunStatus, TriggerOptions, new_run_id, utc_now
from task_trigger.store import InMemoryRunStore, JsonFileRunStore, RunStore


@pytest.fixture(params=["memory", "json"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> RunStore:
    if request.param == "memory":
        return InMemoryRunStore()
    return JsonFileRunStore(tmp_path / "runs" / "runs.json")


def _run(idempotency_key: str | None = None, payload: object = None) -> Run:
    return Run(
        id=new_run_id(),
        task_id="echo",
        payload=payload,
        options=TriggerOptions(idempotency_key=idempotency_key),
    )


def test_create_and_get(store: RunStore) -> None:
    run = store.create(_run(payload={"a": 1}))

    loaded = store.get(run.id)
    assert loaded.id == run.id
    assert loaded.status is RunStatus.PENDING
    assert loaded.payload == {"a": 1}
    assert [r.id for r in store.list()] == [run.id]


def test_get_unknown_run(store: RunStore) -> None:
    with pytest.raises(RunNotFound) as exc_info:
        store.get("run_missing")
    assert exc_info.value.run_id == "run_missing"


def test_status_moves_forward(store: RunStore) -> None:
    run = store.create(_run())

    running = store.update_status(run.id, RunStatus.RUNNING, started_at=utc_now())
    assert running.status is RunStatus.RUNNING
    assert running.started_at is not None

    done = store.update_status(run.id, RunStatus.SUCCEEDED, output=3, finished_at=utc_now())
    assert done.status is RunStatus.SUCCEEDED
    assert store.get(run.id).output == 3


def test_illegal_transition_leaves_run_unchanged(store: RunStore) -> None:
    run = store.create(_run())

    with pytest.raises(InvalidTransition):
        store.update_status(run.id, RunStatus.SUCCEEDED)
    assert store.get(run.id).status is RunStatus.PENDING


def test_terminal_runs_are_immutable(store: RunStore) -> None:
    run = store.create(_run())
    store.update_status(run.id, RunStatus.FAILED)

    with pytest.raises(InvalidTransition):
        store.update(run.id, attempts=2)
    with pytest.raises(InvalidTransition):
        store.update_status(run.id, RunStatus.RUNNING)


def test_update_refuses_status_changes(store: RunStore) -> None:
    run = store.create(_run())

    with pytest.raises(ValueError):
        store.update(run.id, status=RunStatus.RUNNING)


def test_update_touches_updated_at(store: RunStore) -> None:
    run = store.create(_run())

    updated = store.update(run.id, attempts=1)
    assert updated.attempts == 1
    assert updated.updated_at >= run.updated_at


def test_create_idempotent_returns_existing_run(store: RunStore) -> None:
    first, created = store.create_idempotent("k", lambda: _run("k"), ttl_seconds=60)
    second, created_again = store.create_idempotent("k", lambda: _run("k"), ttl_seconds=60)

    assert created is True
    assert created_again is False
    assert second.id == first.id
    assert len(store.list()) == 1
    assert store.find_by_idempotency_key("k").id == first.id  # type: ignore[union-attr]


def test_create_refuses_a_bound_idempotency_key(store: RunStore) -> None:
    first = store.create(_run("k"))

    with pytest.raises(ValueError, match="already bound"):
        store.create(_run("k"))

    assert len(store.list()) == 1
    assert store.find_by_idempotency_key("k").id == first.id  # type: ignore[union-attr]


def test_idempotency_key_expires_after_finish(store: RunStore) -> None:
    first, _ = store.create_idempotent("k", lambda: _run("k"), ttl_seconds=60)
    store.update_status(first.id, RunStatus.RUNNING)
    store.update_status(
        first.id, RunStatus.SUCCEEDED, finished_at=utc_now() - timedelta(minutes=5)
    )

    kept, created = store.create_idempotent("k", lambda: _run("k"), ttl_seconds=None)
    assert created is False
    assert kept.id == first.id

    fresh, created = store.create_idempotent("k", lambda: _run("k"), ttl_seconds=60)
    assert created is True
    assert fresh.id != first.id
    assert store.find_by_idempotency_key("k").id == fresh.id  # type: ignore[union-attr]


def test_concurrent_idempotent_creates_make_one_run(store: RunStore) -> None:
    def create(_: int) -> str:
        run, _created = store.create_idempotent("same", lambda: _run("same"), ttl_seconds=None)
        return run.id

    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = set(pool.map(create, range(32)))

    assert len(ids) == 1
    assert len(store.list()) == 1


def test_purge(store: RunStore) -> None:
    run = store.create(_run("k"))
    store.purge(run.id)

    with pytest.raises(RunNotFound):
        store.get(run.id)
    with pytest.raises(RunNotFound):
        store.purge(run.id)
    assert store.find_by_idempotency_key("k") is None


def test_json_store_survives_restart(tmp_path: Path) -> None:
    path = tmp_path / "runs.json"
    run = JsonFileRunStore(path).create(_run("k", payload={"n": 1}))
    JsonFileRunStore(path).update_status(run.id, RunStatus.RUNNING)

    reloaded = JsonFileRunStore(path).get(run.id)
    assert reloaded.status is RunStatus.RUNNING
    assert reloaded.payload == {"n": 1}
    assert reloaded.options.idempotency_key == "k"


def test_json_store_treats_corrupt_file_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "runs.json"
    path.write_text("{not json", encoding="utf-8")

    assert JsonFileRunStore(path).list() == []
