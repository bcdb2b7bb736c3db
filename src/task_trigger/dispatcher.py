"""The dispatcher: validate, create, schedule and track runs.

`trigger` and `trigger_and_wait` share one dispatch routine. They differ only
in whether the caller then suspends on the run's completion signal.

Execution model: every run is an asyncio task on the dispatcher's event loop.
Async handlers run on the loop; sync handlers run in a worker thread. A run:

1. waits until it is due (`start_at` / `start_after`), staying PENDING
2. waits for its concurrency-key slot (FIFO by creation order)
3. moves to RUNNING and calls the handler up to `max_attempts` times
4. ends SUCCEEDED or FAILED, releases its slot and wakes waiters

Handler exceptions stop here. They are recorded on the run and never
propagate to triggering callers.

Handlers always receive the payload exactly as the task's parser returned it.
The stored copy on the run is for inspection only: a persisting store keeps
plain JSON, so it is never read back into a handler context. Calls into a
store that does file I/O are moved off the event loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import traceback
from collections import deque
from collections.abc import Awaitable, Callable, Mapping, Sequence
from types import MappingProxyType
from typing import Any, TypeVar

from task_trigger.config import TaskTriggerSettings
from task_trigger.errors import InvalidPayload
from task_trigger.library import TaskLibrary
from task_trigger.runs import (
    ErrorRecord,
    Run,
    RunStatus,
    RunSummary,
    TaskRunResult,
    TriggerOptions,
    TriggerResult,
    UsageSample,
    new_run_id,
    utc_now,
)
from task_trigger.store import InMemoryRunStore, RunStore
from task_trigger.tasks import RunContext, RunMetadata, TaskDefinition

logger = logging.getLogger(__name__)

Middleware = Callable[
    [TaskDefinition[Any, Any], RunMetadata],
    "Mapping[str, object] | Awaitable[Mapping[str, object]] | None",
]

# Used when waiting on a run this dispatcher is not executing itself.
_POLL_INTERVAL_SECONDS = 0.05

T = TypeVar("T")


class ConcurrencyGate:
    """One running run per concurrency key, granted in enqueue order."""

    def __init__(self) -> None:
        self._queues: dict[str, deque[tuple[str, asyncio.Event]]] = {}

    def enqueue(self, key: str, run_id: str) -> None:
        queue = self._queues.setdefault(key, deque())
        turn = asyncio.Event()
        queue.append((run_id, turn))
        if len(queue) == 1:
            turn.set()

    async def acquire(self, key: str, run_id: str) -> None:
        for queued_id, turn in self._queues.get(key, ()):
            if queued_id == run_id:
                await turn.wait()
                return
        raise RuntimeError(f"Run {run_id} is not queued under concurrency key {key!r}")

    def release(self, key: str, run_id: str) -> None:
        queue = self._queues.get(key)
        if not queue:
            return
        was_head = queue[0][0] == run_id
        for entry in queue:
            if entry[0] == run_id:
                queue.remove(entry)
                break
        if not queue:
            del self._queues[key]
        elif was_head:
            queue[0][1].set()

    def waiting(self, key: str) -> list[str]:
        return [run_id for run_id, _ in self._queues.get(key, ())]


def _coerce_options(options: TriggerOptions | Mapping[str, Any] | None) -> TriggerOptions:
    if options is None:
        return TriggerOptions()
    if isinstance(options, TriggerOptions):
        return options
    return TriggerOptions.model_validate(dict(options))


def _usage_since(cpu_start: float, wall_start: float) -> UsageSample:
    return UsageSample(
        cpu_time_ms=(time.process_time() - cpu_start) * 1000.0,
        wall_time_ms=(time.perf_counter() - wall_start) * 1000.0,
    )


class Dispatcher:
    """Triggers tasks from a library and tracks their runs in a store."""

    def __init__(
        self,
        library: TaskLibrary,
        store: RunStore | None = None,
        *,
        settings: TaskTriggerSettings | None = None,
        middleware: Sequence[Middleware] = (),
    ) -> None:
        self.library = library
        self.settings = settings or TaskTriggerSettings()
        self.store: RunStore = store if store is not None else InMemoryRunStore()
        # Anything but the in-memory store may block on I/O.
        self._offload = not isinstance(self.store, InMemoryRunStore)
        self._middleware = tuple(middleware)
        self._gate = ConcurrencyGate()
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._closed = False
        self._close_reason = "Cancelled"

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    # ---------- public API ----------

    async def trigger(
        self,
        task_id: str,
        payload: Any,
        options: TriggerOptions | Mapping[str, Any] | None = None,
    ) -> TriggerResult:
        """Start a run and return its id without waiting for the handler.

        Raises:
            UnknownTask: If `task_id` is not in the library.
            InvalidPayload: If the task's parser rejects `payload`.
        """

        run = await self._dispatch(task_id, payload, options)
        return TriggerResult(id=run.id)

    async def trigger_and_wait(
        self,
        task_id: str,
        payload: Any,
        options: TriggerOptions | Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> TaskRunResult:
        """Start a run and suspend until it is terminal.

        Handler failures come back as `ok=False`; only request errors
        (`UnknownTask`, `InvalidPayload`) are raised.
        """

        run = await self._dispatch(task_id, payload, options)
        return await self.wait_for_run(run.id, timeout=timeout)

    async def wait_for_run(self, run_id: str, *, timeout: float | None = None) -> TaskRunResult:
        """Wait for a run to finish.

        On timeout, returns `ok=False` with a "Timeout" error. The run itself is
        left alone and keeps going.
        """

        if timeout is None:
            timeout = self.settings.wait_timeout_seconds

        run = await self._call_store(self.store.get, run_id)
        if run.is_terminal:
            return TaskRunResult.from_run(run)

        done = self._done.get(run_id)
        try:
            async with asyncio.timeout(timeout):
                if done is not None:
                    await done.wait()
                else:
                    while not (await self._call_store(self.store.get, run_id)).is_terminal:
                        await asyncio.sleep(_POLL_INTERVAL_SECONDS)
        except TimeoutError:
            logger.info("Wait for run timed out", extra={"run_id": run_id, "timeout": timeout})
            return TaskRunResult(
                ok=False,
                id=run_id,
                error=ErrorRecord(
                    name="Timeout", message=f"Run {run_id} did not finish within {timeout}s"
                ),
            )
        return TaskRunResult.from_run(await self._call_store(self.store.get, run_id))

    def retrieve(self, run_id: str) -> RunSummary:
        return RunSummary.from_run(self.store.get(run_id))

    async def join(self) -> None:
        """Wait until every run started by this dispatcher has finished."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def aclose(self, *, reason: str = "Cancelled") -> None:
        """Stop accepting triggers and cancel in-flight runs.

        Runs that have not finished end FAILED with an error named `reason`.
        Callers that merely stop waiting for a run pass "Abandoned".
        """

        self._closed = True
        self._close_reason = reason
        tasks = list(self._inflight.values())
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(
                "Dispatcher closed", extra={"cancelled_runs": len(tasks), "reason": reason}
            )

    # ---------- dispatch ----------

    async def _call_store(self, method: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        if self._offload:
            return await asyncio.to_thread(method, *args, **kwargs)
        return method(*args, **kwargs)

    async def _dispatch(
        self,
        task_id: str,
        payload: Any,
        options: TriggerOptions | Mapping[str, Any] | None,
    ) -> Run:
        if self._closed:
            raise RuntimeError("Dispatcher is closed")

        definition = self.library.get(task_id)
        opts = _coerce_options(options)

        parsed = await definition.parser.parse(payload)
        if not parsed.ok:
            assert parsed.error is not None
            logger.info(
                "Payload rejected",
                extra={"task_id": task_id, "reason": parsed.error.message},
            )
            raise InvalidPayload(task_id, parsed.error)

        def new_run() -> Run:
            now = utc_now()
            return Run(
                id=new_run_id(),
                task_id=task_id,
                payload=parsed.value,
                options=opts,
                created_at=now,
                updated_at=now,
            )

        if opts.idempotency_key:
            run, created = await self._call_store(
                self.store.create_idempotent,
                opts.idempotency_key,
                new_run,
                ttl_seconds=self.settings.idempotency_ttl_seconds,
            )
            if not created:
                logger.info(
                    "Idempotency key matched an existing run",
                    extra={"task_id": task_id, "run_id": run.id},
                )
                return run
        else:
            run = await self._call_store(self.store.create, new_run())

        self._schedule(definition, run, parsed.value)
        logger.info("Run triggered", extra={"task_id": task_id, "run_id": run.id})
        return run

    def _schedule(self, definition: TaskDefinition[Any, Any], run: Run, payload: Any) -> None:
        self._done[run.id] = asyncio.Event()
        if run.options.concurrency_key:
            self._gate.enqueue(run.options.concurrency_key, run.id)

        t = asyncio.create_task(
            self._execute(definition, run, payload), name=f"run:{definition.id}:{run.id}"
        )
        self._inflight[run.id] = t
        t.add_done_callback(lambda _t, run_id=run.id: self._inflight.pop(run_id, None))

    # ---------- execution ----------

    async def _execute(self, definition: TaskDefinition[Any, Any], run: Run, payload: Any) -> None:
        run_id = run.id
        key = run.options.concurrency_key
        try:
            delay = (run.options.due_at(run.created_at) - utc_now()).total_seconds()
            if delay > 0:
                logger.debug("Run delayed", extra={"run_id": run_id, "delay_seconds": delay})
                await asyncio.sleep(delay)

            if key:
                await self._gate.acquire(key, run_id)

            run = await self._call_store(
                self.store.update_status, run_id, RunStatus.RUNNING, started_at=utc_now()
            )
            run = await self._run_attempts(definition, run, payload)
            logger.info(
                "Run finished",
                extra={"run_id": run_id, "task_id": definition.id, "status": run.status.value},
            )
        except asyncio.CancelledError:
            reason = self._close_reason
            self._fail_unfinished(
                run_id,
                ErrorRecord(name=reason, message=f"Run was {reason.lower()} before finishing"),
            )
            raise
        except Exception as e:
            # Store invariant violations land here; they are bugs, not task failures.
            logger.exception("Run execution crashed", extra={"run_id": run_id})
            self._fail_unfinished(run_id, ErrorRecord.from_exception(e, traceback.format_exc()))
        finally:
            if key:
                self._gate.release(key, run_id)
            done = self._done.pop(run_id, None)
            if done is not None:
                done.set()

    async def _run_attempts(
        self, definition: TaskDefinition[Any, Any], run: Run, payload: Any
    ) -> Run:
        max_attempts = run.options.max_attempts or self.settings.default_max_attempts
        usage = run.usage

        for attempt in range(run.attempts + 1, max_attempts + 1):
            run = await self._call_store(self.store.update, run.id, attempts=attempt)
            cpu_start, wall_start = time.process_time(), time.perf_counter()
            try:
                context = await self._build_context(
                    definition, run.id, payload, attempt, max_attempts
                )
                output = await self._invoke(definition, context)
            except Exception as e:
                usage = usage + _usage_since(cpu_start, wall_start)
                error = ErrorRecord.from_exception(e, traceback.format_exc())
                logger.warning(
                    "Run attempt failed",
                    extra={
                        "run_id": run.id,
                        "task_id": definition.id,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "error": error.message,
                    },
                )
                if attempt >= max_attempts:
                    return await self._call_store(
                        self.store.update_status,
                        run.id,
                        RunStatus.FAILED,
                        error=error,
                        usage=usage,
                        finished_at=utc_now(),
                    )
                run = await self._call_store(self.store.update, run.id, error=error, usage=usage)
                await asyncio.sleep(self.settings.retry_delay(attempt))
                continue

            usage = usage + _usage_since(cpu_start, wall_start)
            return await self._call_store(
                self.store.update_status,
                run.id,
                RunStatus.SUCCEEDED,
                output=output,
                error=None,
                usage=usage,
                finished_at=utc_now(),
            )

        # Only reachable when a resumed run already used up its attempts.
        return await self._call_store(
            self.store.update_status,
            run.id,
            RunStatus.FAILED,
            error=run.error or ErrorRecord(name="AttemptsExhausted", message="No attempts left"),
            finished_at=utc_now(),
        )

    async def _build_context(
        self,
        definition: TaskDefinition[Any, Any],
        run_id: str,
        payload: Any,
        attempt: int,
        max_attempts: int,
    ) -> RunContext[Any]:
        meta = RunMetadata(
            run=run_id, task=definition.id, attempt=attempt, max_attempts=max_attempts
        )
        injected: dict[str, object] = {}
        for middleware in self._middleware:
            extra = middleware(definition, meta)
            if inspect.isawaitable(extra):
                extra = await extra
            if extra:
                injected.update(extra)
        return RunContext(
            meta=meta, payload=payload, ctx=MappingProxyType(injected), dispatcher=self
        )

    @staticmethod
    async def _invoke(definition: TaskDefinition[Any, Any], context: RunContext[Any]) -> Any:
        handler = definition.handler
        if inspect.iscoroutinefunction(handler):
            return await handler(context)
        result = await asyncio.to_thread(handler, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _fail_unfinished(self, run_id: str, error: ErrorRecord) -> None:
        # Stays synchronous: it runs while the task is being cancelled.
        try:
            run = self.store.get(run_id)
            if not run.is_terminal:
                self.store.update_status(
                    run_id, RunStatus.FAILED, error=error, finished_at=utc_now()
                )
        except Exception:
            logger.exception("Could not mark run as failed", extra={"run_id": run_id})
