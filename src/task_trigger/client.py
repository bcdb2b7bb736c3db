"""Client facade.

Mirrors a library's tree as nested attribute namespaces:

    client = create_trigger_client(library)
    await client.lib.users.welcome.trigger("user/welcome", {"user_id": "u_1"})
    summary = await client.runs.retrieve(handle.id)

The facade only forwards to the dispatcher and run store. Names that are not
in the library raise AttributeError/KeyError, and a leaf refuses task ids other
than its own.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Generic

from task_trigger.config import TaskTriggerSettings
from task_trigger.dispatcher import Dispatcher, Middleware
from task_trigger.errors import UnknownTask
from task_trigger.library import TaskLibrary
from task_trigger.runs import RunSummary, TaskRunResult, TriggerOptions, TriggerResult
from task_trigger.store import RunStore
from task_trigger.tasks import OutputT, PayloadT, TaskDefinition


def _merge_options(
    options: TriggerOptions | Mapping[str, Any] | None, fields: dict[str, Any]
) -> TriggerOptions | Mapping[str, Any] | None:
    if not fields:
        return options
    if options is None:
        base: dict[str, Any] = {}
    elif isinstance(options, TriggerOptions):
        base = options.model_dump(exclude_unset=True)
    else:
        base = dict(options)
    return TriggerOptions.model_validate({**base, **fields})


class TaskHandle(Generic[PayloadT, OutputT]):
    """Trigger entry points for one registered task."""

    def __init__(
        self, definition: TaskDefinition[PayloadT, OutputT], dispatcher: Dispatcher
    ) -> None:
        self._definition = definition
        self._dispatcher = dispatcher

    @property
    def id(self) -> str:
        return self._definition.id

    def _check_id(self, task_id: str) -> None:
        if task_id != self._definition.id:
            raise UnknownTask(task_id)

    async def trigger(
        self,
        task_id: str,
        payload: PayloadT,
        options: TriggerOptions | Mapping[str, Any] | None = None,
        **option_fields: Any,
    ) -> TriggerResult:
        self._check_id(task_id)
        return await self._dispatcher.trigger(
            self.id, payload, _merge_options(options, option_fields)
        )

    async def trigger_and_wait(
        self,
        task_id: str,
        payload: PayloadT,
        options: TriggerOptions | Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        **option_fields: Any,
    ) -> TaskRunResult:
        self._check_id(task_id)
        return await self._dispatcher.trigger_and_wait(
            self.id, payload, _merge_options(options, option_fields), timeout=timeout
        )

    def __repr__(self) -> str:
        return f"TaskHandle({self.id!r})"


class LibraryNamespace:
    """One group of the library tree."""

    __slots__ = ("_path", "_children")

    def __init__(
        self, path: tuple[str, ...], children: Mapping[str, TaskHandle[Any, Any] | LibraryNamespace]
    ) -> None:
        self._path = path
        self._children = dict(children)

    def __getattr__(self, name: str) -> TaskHandle[Any, Any] | LibraryNamespace:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._children[name]
        except KeyError:
            where = ".".join(self._path) or "lib"
            raise AttributeError(f"{where} has no task or group named {name!r}") from None

    def __getitem__(self, name: str) -> TaskHandle[Any, Any] | LibraryNamespace:
        return self._children[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._children)

    def __len__(self) -> int:
        return len(self._children)

    def __dir__(self) -> list[str]:
        return sorted(self._children)

    def __repr__(self) -> str:
        return f"LibraryNamespace({'.'.join(self._path) or 'lib'}: {', '.join(self._children)})"


def _project(
    tree: Mapping[str, Any], path: tuple[str, ...], dispatcher: Dispatcher
) -> LibraryNamespace:
    children: dict[str, TaskHandle[Any, Any] | LibraryNamespace] = {}
    for name, value in tree.items():
        if isinstance(value, TaskDefinition):
            children[name] = TaskHandle(value, dispatcher)
        else:
            children[name] = _project(value, (*path, name), dispatcher)
    return LibraryNamespace(path, children)


class RunsClient:
    def __init__(self, store: RunStore) -> None:
        self._store = store

    async def retrieve(self, run_id: str) -> RunSummary:
        """Raises `RunNotFound` for unknown ids."""

        return RunSummary.from_run(self._store.get(run_id))


class TriggerClient:
    """`lib` for the per-task shape, `runs` for run lookups."""

    def __init__(self, dispatcher: Dispatcher) -> None:
        self.dispatcher = dispatcher
        self.lib = _project(dispatcher.library.tree, (), dispatcher)
        self.runs = RunsClient(dispatcher.store)

    async def trigger(
        self,
        task_id: str,
        payload: Any,
        options: TriggerOptions | Mapping[str, Any] | None = None,
        **option_fields: Any,
    ) -> TriggerResult:
        return await self.dispatcher.trigger(task_id, payload, _merge_options(options, option_fields))

    async def trigger_and_wait(
        self,
        task_id: str,
        payload: Any,
        options: TriggerOptions | Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
        **option_fields: Any,
    ) -> TaskRunResult:
        return await self.dispatcher.trigger_and_wait(
            task_id, payload, _merge_options(options, option_fields), timeout=timeout
        )

    async def aclose(self) -> None:
        await self.dispatcher.aclose()

    async def __aenter__(self) -> TriggerClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()


def create_trigger_client(
    library: TaskLibrary,
    dispatcher: Dispatcher | None = None,
    *,
    settings: TaskTriggerSettings | None = None,
    store: RunStore | None = None,
    middleware: tuple[Middleware, ...] = (),
) -> TriggerClient:
    """Build a client over `library`, creating a dispatcher unless one is given."""

    if dispatcher is None:
        dispatcher = Dispatcher(library, store, settings=settings, middleware=middleware)
    elif dispatcher.library is not library:
        raise ValueError("The dispatcher was built for a different library")
    return TriggerClient(dispatcher)
