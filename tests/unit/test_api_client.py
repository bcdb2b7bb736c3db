"""Unit tests for the HTTP API client (requests is mocked)."""

from __future__ import annotations

from typing import Any
from unittest.mock import Mock

import pytest

from task_trigger.api_client import ApiClient
from task_trigger.config import TaskTriggerSettings
from task_trigger.errors import InvalidPayload, RunNotFound, UnknownTask
from task_trigger.runs import RunStatus, TriggerOptions


def _response(status_code: int, body: Any) -> Mock:
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = body
    return resp


def _session() -> Mock:
    session = Mock()
    session.headers = {}
    return session


def test_headers_and_auth() -> None:
    session = _session()
    ApiClient(base_url="http://example.test/", secret_key="k", session=session)

    assert session.headers["Authorization"] == "Bearer k"
    assert session.headers["Accept"] == "application/json"


def test_no_auth_header_without_secret() -> None:
    session = _session()
    ApiClient(base_url="http://example.test", session=session)

    assert "Authorization" not in session.headers


def test_base_url_is_required() -> None:
    with pytest.raises(ValueError):
        ApiClient(base_url="", session=_session())


def test_from_settings() -> None:
    settings = TaskTriggerSettings(
        _env_file=None, api_base_url="http://tasks.internal:9000", secret_key="abc"
    )
    session = _session()
    client = ApiClient.from_settings(settings)
    client._session = session

    session.get.return_value = _response(200, [])
    assert client.list_tasks() == []
    session.get.assert_called_once_with("http://tasks.internal:9000/api/v1/tasks", timeout=30.0)


def test_trigger_posts_options() -> None:
    session = _session()
    session.post.return_value = _response(200, {"id": "run_1"})
    client = ApiClient(base_url="http://example.test", session=session)

    result = client.trigger("echo", {"a": 1}, TriggerOptions(idempotency_key="k", max_attempts=2))

    assert result.id == "run_1"
    session.post.assert_called_once_with(
        "http://example.test/api/v1/trigger",
        json={
            "task_id": "echo",
            "payload": {"a": 1},
            "options": {"idempotency_key": "k", "max_attempts": 2},
        },
        timeout=30.0,
    )


def test_trigger_and_wait_parses_failure() -> None:
    session = _session()
    session.post.return_value = _response(
        200,
        {"ok": False, "id": "run_1", "error": {"name": "ValueError", "message": "boom"}},
    )
    client = ApiClient(base_url="http://example.test", session=session, timeout=5.0)

    result = client.trigger_and_wait("explode", None, timeout=10.0)

    assert result.ok is False
    assert result.error is not None
    assert result.error.name == "ValueError"
    _args, kwargs = session.post.call_args
    assert kwargs["json"]["timeout"] == 10.0
    assert kwargs["timeout"] == 15.0


def test_request_errors_are_mapped() -> None:
    session = _session()
    client = ApiClient(base_url="http://example.test", session=session)

    session.post.return_value = _response(404, {"detail": "Unknown task"})
    with pytest.raises(UnknownTask):
        client.trigger("nope", None)

    session.post.return_value = _response(
        422,
        {"detail": "bad", "error": {"message": "1 validation error(s)", "issues": [{"loc": ["x"]}]}},
    )
    with pytest.raises(InvalidPayload) as exc_info:
        client.trigger("user/welcome", {})
    assert exc_info.value.error.message == "1 validation error(s)"
    assert exc_info.value.error.issues == [{"loc": ["x"]}]

    session.get.return_value = _response(404, {"detail": "Run not found"})
    with pytest.raises(RunNotFound):
        client.retrieve_run("run_missing")


def test_retrieve_run() -> None:
    session = _session()
    session.get.return_value = _response(
        200,
        {
            "id": "run_1",
            "task_id": "echo",
            "status": "succeeded",
            "output": [1],
            "created_at": "2024-01-01T00:00:00Z",
            "updated_at": "2024-01-01T00:00:01Z",
        },
    )
    client = ApiClient(base_url="http://example.test", session=session)

    summary = client.retrieve_run("run_1")

    assert summary.status is RunStatus.SUCCEEDED
    assert summary.output == [1]
    session.get.assert_called_once_with("http://example.test/api/v1/runs/run_1", timeout=30.0)
