"""Task libraries.

A library is built once from a nested description and is read-only afterwards.
It keeps two structures:

- `tree`: the nested names, used only to shape the client facade
- `tasks`: a flat table from task id to definition, used for dispatch

Ids are global: two leaves anywhere in the tree may not share one.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Union

from task_trigger.errors import DuplicateTaskId, ReservedNameError, UnknownTask
from task_trigger.tasks import TaskDefinition

# Attribute names the client facade uses on every node.
RESERVED_NAMES: frozenset[str] = frozenset({"id", "runs", "trigger", "trigger_and_wait"})

LibraryNode = Union[TaskDefinition[Any, Any], "TaskLibrary", Mapping[str, Any]]


@dataclass(frozen=True, slots=True)
class TaskLibrary:
    tree: Mapping[str, Any]
    tasks: Mapping[str, TaskDefinition[Any, Any]]
    task_paths: Mapping[str, tuple[str, ...]]

    def get(self, task_id: str) -> TaskDefinition[Any, Any]:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise UnknownTask(task_id) from None

    def path_of(self, task_id: str) -> tuple[str, ...]:
        try:
            return self.task_paths[task_id]
        except KeyError:
            raise UnknownTask(task_id) from None

    def paths(self) -> Iterator[tuple[tuple[str, ...], TaskDefinition[Any, Any]]]:
        """Yield `(path, definition)` for every task, in declaration order."""

        for task_id, path in self.task_paths.items():
            yield path, self.tasks[task_id]

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def __iter__(self) -> Iterator[str]:
        return iter(self.tasks)

    def __len__(self) -> int:
        return len(self.tasks)


def _check_name(name: object, prefix: tuple[str, ...]) -> str:
    where = ".".join(prefix) or "<root>"
    if not isinstance(name, str) or not name:
        raise ReservedNameError(f"Library names must be non-empty strings (under {where})")
    if name in RESERVED_NAMES or name.startswith("_"):
        raise ReservedNameError(f"Library name {name!r} under {where} is reserved")
    return name


def _walk(
    node: Mapping[str, Any] | TaskLibrary,
    prefix: tuple[str, ...],
    tasks: dict[str, TaskDefinition[Any, Any]],
    paths: dict[str, tuple[str, ...]],
) -> Mapping[str, Any]:
    if isinstance(node, TaskLibrary):
        node = node.tree

    out: dict[str, Any] = {}
    for raw_name, value in node.items():
        name = _check_name(raw_name, prefix)
        path = (*prefix, name)

        if isinstance(value, TaskDefinition):
            if value.id in tasks:
                raise DuplicateTaskId(value.id, paths[value.id], path)
            tasks[value.id] = value
            paths[value.id] = path
            out[name] = value
        elif isinstance(value, (TaskLibrary, Mapping)):
            out[name] = _walk(value, path, tasks, paths)
        else:
            raise TypeError(
                f"Library entry {'.'.join(path)} must be a task, a library or a mapping, "
                f"got {type(value).__name__}"
            )
    return MappingProxyType(out)


def build_library(tree: Mapping[str, LibraryNode] | TaskLibrary) -> TaskLibrary:
    """Flatten a nested description into a library.

    Raises:
        DuplicateTaskId: If two tasks anywhere in `tree` share an id.
        ReservedNameError: If a name is empty or shadows a client facade attribute.
        TypeError: If an entry is neither a task nor a nested mapping/library.
    """

    tasks: dict[str, TaskDefinition[Any, Any]] = {}
    paths: dict[str, tuple[str, ...]] = {}
    frozen_tree = _walk(tree, (), tasks, paths)
    return TaskLibrary(
        tree=frozen_tree,
        tasks=MappingProxyType(tasks),
        task_paths=MappingProxyType(paths),
    )
