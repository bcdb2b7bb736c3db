"""HTTP client for a remote task-trigger server.

This wraps `requests` so callers outside the server process get the same
results and errors as the in-process client.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import requests

from task_trigger import __version__
from task_trigger.config import TaskTriggerSettings
from task_trigger.errors import InvalidPayload, RunNotFound, UnknownTask
from task_trigger.parsers import ParseError
from task_trigger.runs import (
    ErrorRecord,
    RunSummary,
    TaskRunResult,
    TriggerOptions,
    TriggerResult,
)

logger = logging.getLogger(__name__)


def _options_json(options: TriggerOptions | Mapping[str, Any] | None) -> dict[str, Any]:
    if options is None:
        return {}
    if not isinstance(options, TriggerOptions):
        options = TriggerOptions.model_validate(dict(options))
    return options.model_dump(mode="json", exclude_none=True)


class ApiClient:
    """Small wrapper around `requests` for the task-trigger REST API."""

    def __init__(
        self,
        *,
        base_url: str,
        secret_key: str = "",
        timeout: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("API base URL is required")

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Accept": "application/json",
                "User-Agent": f"task-trigger/{__version__}",
            }
        )
        if secret_key:
            self._session.headers["Authorization"] = f"Bearer {secret_key}"

    @classmethod
    def from_settings(cls, settings: TaskTriggerSettings) -> ApiClient:
        return cls(base_url=settings.api_base_url, secret_key=settings.secret_key)

    def _url(self, path: str) -> str:
        return f"{self._base_url}/api/v1/{path.lstrip('/')}"

    def _raise_for(
        self,
        resp: requests.Response,
        *,
        task_id: str | None = None,
        run_id: str | None = None,
    ) -> None:
        if resp.status_code == 404 and run_id is not None:
            raise RunNotFound(run_id)
        if resp.status_code == 404 and task_id is not None:
            raise UnknownTask(task_id)
        if resp.status_code == 422 and task_id is not None:
            body = resp.json()
            error = body.get("error") if isinstance(body, dict) else None
            if isinstance(error, dict):
                raise InvalidPayload(
                    task_id,
                    ParseError(
                        message=str(error.get("message", "invalid payload")),
                        issues=list(error.get("issues") or []),
                    ),
                )
        resp.raise_for_status()

    def list_tasks(self) -> list[dict[str, Any]]:
        resp = self._session.get(self._url("tasks"), timeout=self._timeout)
        self._raise_for(resp)
        data: list[dict[str, Any]] = resp.json()
        return data

    def trigger(
        self,
        task_id: str,
        payload: Any,
        options: TriggerOptions | Mapping[str, Any] | None = None,
    ) -> TriggerResult:
        body = {"task_id": task_id, "payload": payload, "options": _options_json(options)}
        resp = self._session.post(self._url("trigger"), json=body, timeout=self._timeout)
        self._raise_for(resp, task_id=task_id)
        run_id = str(resp.json()["id"])
        logger.debug("Triggered remote run", extra={"task_id": task_id, "run_id": run_id})
        return TriggerResult(id=run_id)

    def trigger_and_wait(
        self,
        task_id: str,
        payload: Any,
        options: TriggerOptions | Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> TaskRunResult:
        body: dict[str, Any] = {
            "task_id": task_id,
            "payload": payload,
            "options": _options_json(options),
        }
        if timeout is not None:
            body["timeout"] = timeout
        # The server holds the request open for the whole wait.
        http_timeout = None if timeout is None else timeout + self._timeout
        resp = self._session.post(self._url("trigger-and-wait"), json=body, timeout=http_timeout)
        self._raise_for(resp, task_id=task_id)
        data: dict[str, Any] = resp.json()
        error = data.get("error")
        return TaskRunResult(
            ok=bool(data["ok"]),
            id=str(data["id"]),
            output=data.get("output"),
            error=ErrorRecord.model_validate(error) if error else None,
        )

    def retrieve_run(self, run_id: str) -> RunSummary:
        resp = self._session.get(self._url(f"runs/{run_id}"), timeout=self._timeout)
        self._raise_for(resp, run_id=run_id)
        return RunSummary.model_validate(resp.json())

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> ApiClient:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()
