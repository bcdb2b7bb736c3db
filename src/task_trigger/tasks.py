"""Task definitions.

A task binds a stable id, an optional payload parser and a run handler. The
definition itself is passive: it does not trigger itself and it does not
decide how or when it runs. The dispatcher does both.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from task_trigger.parsers import IDENTITY_PARSER, PayloadParser, payload_parser

if TYPE_CHECKING:
    from task_trigger.dispatcher import Dispatcher
    from task_trigger.runs import TaskRunResult, TriggerOptions, TriggerResult

PayloadT = TypeVar("PayloadT")
OutputT = TypeVar("OutputT")


@dataclass(frozen=True, slots=True)
class RunMetadata:
    """Metadata about the run a handler is executing for."""

    run: str
    task: str
    attempt: int = 1
    max_attempts: int = 1


@dataclass(frozen=True, slots=True)
class RunContext(Generic[PayloadT]):
    """What a handler receives.

    `ctx` holds whatever the dispatcher's middleware injected. The trigger
    helpers let a task start other tasks through the dispatcher running it.
    """

    meta: RunMetadata
    payload: PayloadT
    ctx: Mapping[str, object] = field(default_factory=dict)
    dispatcher: Dispatcher | None = field(default=None, repr=False, compare=False)

    def _require_dispatcher(self) -> Dispatcher:
        if self.dispatcher is None:
            raise RuntimeError("This run context is not bound to a dispatcher")
        return self.dispatcher

    async def trigger(
        self, task_id: str, payload: Any, options: TriggerOptions | None = None
    ) -> TriggerResult:
        return await self._require_dispatcher().trigger(task_id, payload, options)

    async def trigger_and_wait(
        self,
        task_id: str,
        payload: Any,
        options: TriggerOptions | None = None,
        *,
        timeout: float | None = None,
    ) -> TaskRunResult:
        return await self._require_dispatcher().trigger_and_wait(
            task_id, payload, options, timeout=timeout
        )


@dataclass(frozen=True, slots=True)
class TaskDefinition(Generic[PayloadT, OutputT]):
    """An immutable task descriptor.

    `id` is the durable dispatch key: it must be unique inside a library and
    must not change between versions. Slashes in ids are a naming convention
    only; dispatch always uses the full id.
    """

    id: str
    handler: Callable[[RunContext[PayloadT]], Any] = field(repr=False)
    parser: PayloadParser = field(default=IDENTITY_PARSER)
    description: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id.strip():
            raise ValueError("Task id must be a non-empty string")
        if not callable(self.handler):
            raise TypeError(f"Task {self.id!r}: handler must be callable")


def define_task(
    id: str,  # noqa: A002 (mirrors TaskDefinition.id)
    parser: object = None,
    handler: Callable[[RunContext[Any]], Any] | None = None,
    *,
    description: str = "",
) -> TaskDefinition[Any, Any]:
    """Build a task definition, adapting `parser` to the payload parser contract."""

    if handler is None:
        raise TypeError(f"Task {id!r}: a handler is required")
    return TaskDefinition(
        id=id,
        handler=handler,
        parser=payload_parser(parser),
        description=description,
    )


def task(
    id: str,  # noqa: A002
    *,
    schema: object = None,
    description: str = "",
) -> Callable[[Callable[[RunContext[Any]], Any]], TaskDefinition[Any, Any]]:
    """Decorator form of `define_task`.

    Example:
        @task("user/welcome", schema=WelcomePayload)
        async def welcome(run: RunContext[WelcomePayload]) -> str:
            return f"hello {run.payload.user_id}"
    """

    def decorate(handler: Callable[[RunContext[Any]], Any]) -> TaskDefinition[Any, Any]:
        return define_task(
            id, schema, handler, description=description or (handler.__doc__ or "").strip()
        )

    return decorate
