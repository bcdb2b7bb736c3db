"""Run stores.

The run store is the only shared mutable state in the runtime. Every mutation
of a run happens under a lock for that run, and idempotency lookups are done in
the same critical section as run creation so that concurrent identical
triggers cannot create two runs.

Two implementations are provided:

- `InMemoryRunStore`: the default, process-local
- `JsonFileRunStore`: persists runs to a JSON file so they survive restarts
  (best-effort; payloads and outputs must be JSON-serializable)
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from task_trigger.errors import InvalidTransition, RunNotFound
from task_trigger.runs import Run, RunStatus, check_transition, utc_now

logger = logging.getLogger(__name__)


class RunStore(Protocol):
    def create(self, run: Run) -> Run:
        """Insert a new run. Raises ValueError if its idempotency key is already bound."""
        ...

    def create_idempotent(
        self, key: str, factory: Callable[[], Run], *, ttl_seconds: float | None
    ) -> tuple[Run, bool]:
        """Return the live run bound to `key`, or create one with `factory`.

        The boolean is True when a new run was created.
        """
        ...

    def get(self, run_id: str) -> Run: ...

    def update_status(self, run_id: str, to: RunStatus, **fields: Any) -> Run: ...

    def update(self, run_id: str, **fields: Any) -> Run: ...

    def find_by_idempotency_key(self, key: str) -> Run | None: ...

    def list(self) -> list[Run]: ...

    def purge(self, run_id: str) -> None: ...


def _apply_update(current: Run, fields: dict[str, Any]) -> Run:
    if "status" in fields:
        raise ValueError("Use update_status() to change a run's status")
    if current.is_terminal:
        raise InvalidTransition(f"Run {current.id} is {current.status.value} and immutable")
    return current.model_copy(update={**fields, "updated_at": utc_now()})


def _apply_status(current: Run, to: RunStatus, fields: dict[str, Any]) -> Run:
    check_transition(current.status, to)
    return current.model_copy(update={**fields, "status": to, "updated_at": utc_now()})


def _key_taken(key: str, run_id: str) -> ValueError:
    return ValueError(
        f"Idempotency key {key!r} is already bound to run {run_id}; use create_idempotent()"
    )


class InMemoryRunStore:
    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}
        self._keys: dict[str, str] = {}
        self._run_locks: dict[str, threading.Lock] = {}
        # Guards the indexes above; never held while waiting on a run lock.
        self._index_lock = threading.Lock()

    def _insert_unlocked(self, run: Run) -> None:
        if run.id in self._runs:
            raise ValueError(f"Run already exists: {run.id}")
        self._runs[run.id] = run
        self._run_locks[run.id] = threading.Lock()

    def _lock_for(self, run_id: str) -> threading.Lock:
        with self._index_lock:
            lock = self._run_locks.get(run_id)
        if lock is None:
            raise RunNotFound(run_id)
        return lock

    def create(self, run: Run) -> Run:
        key = run.options.idempotency_key
        with self._index_lock:
            if key and key in self._keys:
                raise _key_taken(key, self._keys[key])
            self._insert_unlocked(run)
            if key:
                self._keys[key] = run.id
        return run

    def create_idempotent(
        self, key: str, factory: Callable[[], Run], *, ttl_seconds: float | None
    ) -> tuple[Run, bool]:
        with self._index_lock:
            existing_id = self._keys.get(key)
            existing = self._runs.get(existing_id) if existing_id else None
            if existing is not None and not existing.idempotency_expired(ttl_seconds):
                return existing, False

            run = factory()
            self._insert_unlocked(run)
            self._keys[key] = run.id
            return run, True

    def get(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def update_status(self, run_id: str, to: RunStatus, **fields: Any) -> Run:
        with self._lock_for(run_id):
            updated = _apply_status(self.get(run_id), to, fields)
            self._runs[run_id] = updated
            return updated

    def update(self, run_id: str, **fields: Any) -> Run:
        with self._lock_for(run_id):
            updated = _apply_update(self.get(run_id), fields)
            self._runs[run_id] = updated
            return updated

    def find_by_idempotency_key(self, key: str) -> Run | None:
        with self._index_lock:
            run_id = self._keys.get(key)
            return self._runs.get(run_id) if run_id else None

    def list(self) -> list[Run]:
        with self._index_lock:
            return sorted(self._runs.values(), key=lambda r: r.created_at)

    def purge(self, run_id: str) -> None:
        with self._index_lock:
            run = self._runs.pop(run_id, None)
            if run is None:
                raise RunNotFound(run_id)
            self._run_locks.pop(run_id, None)
            key = run.options.idempotency_key
            if key and self._keys.get(key) == run_id:
                del self._keys[key]


@dataclass
class JsonFileRunStore:
    """A JSON-file backed run store.

    The whole file is rewritten on every mutation under a single lock, which
    also makes every per-run mutation atomic. Fine for local use; a real
    deployment should put runs in a database.
    """

    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[Run]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Run state file is not valid JSON; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        if not isinstance(raw, list):
            logger.warning(
                "Run state file has unexpected shape; treating as empty",
                extra={"path": str(self.path)},
            )
            return []
        return [Run.model_validate(item) for item in raw]

    def _save_unlocked(self, runs: list[Run]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in runs]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    @staticmethod
    def _latest_for_key(runs: list[Run], key: str) -> Run | None:
        matches = [r for r in runs if r.options.idempotency_key == key]
        return max(matches, key=lambda r: r.created_at) if matches else None

    def _replace(self, run_id: str, change: Callable[[Run], Run]) -> Run:
        with self._lock:
            runs = self._load_unlocked()
            for idx, run in enumerate(runs):
                if run.id != run_id:
                    continue
                updated = change(run)
                runs[idx] = updated
                self._save_unlocked(runs)
                return updated
            raise RunNotFound(run_id)

    def create(self, run: Run) -> Run:
        with self._lock:
            runs = self._load_unlocked()
            if any(r.id == run.id for r in runs):
                raise ValueError(f"Run already exists: {run.id}")
            key = run.options.idempotency_key
            if key and (bound := self._latest_for_key(runs, key)) is not None:
                raise _key_taken(key, bound.id)
            runs.append(run)
            self._save_unlocked(runs)
            return run

    def create_idempotent(
        self, key: str, factory: Callable[[], Run], *, ttl_seconds: float | None
    ) -> tuple[Run, bool]:
        with self._lock:
            runs = self._load_unlocked()
            existing = self._latest_for_key(runs, key)
            if existing is not None and not existing.idempotency_expired(ttl_seconds):
                return existing, False
            run = factory()
            runs.append(run)
            self._save_unlocked(runs)
            return run, True

    def get(self, run_id: str) -> Run:
        with self._lock:
            for run in self._load_unlocked():
                if run.id == run_id:
                    return run
        raise RunNotFound(run_id)

    def update_status(self, run_id: str, to: RunStatus, **fields: Any) -> Run:
        return self._replace(run_id, lambda run: _apply_status(run, to, fields))

    def update(self, run_id: str, **fields: Any) -> Run:
        return self._replace(run_id, lambda run: _apply_update(run, fields))

    def find_by_idempotency_key(self, key: str) -> Run | None:
        with self._lock:
            return self._latest_for_key(self._load_unlocked(), key)

    def list(self) -> list[Run]:
        with self._lock:
            return sorted(self._load_unlocked(), key=lambda r: r.created_at)

    def purge(self, run_id: str) -> None:
        with self._lock:
            runs = self._load_unlocked()
            kept = [r for r in runs if r.id != run_id]
            if len(kept) == len(runs):
                raise RunNotFound(run_id)
            self._save_unlocked(kept)
