"""Task Trigger.

Define typed tasks, group them into nested libraries, and trigger them by id:

- `task` / `define_task` bind an id, an optional payload parser and a handler
- `build_library` flattens a nested description into a read-only registry
- `create_trigger_client` exposes `trigger` / `trigger_and_wait` per task and
  `runs.retrieve` for run lookups
"""

__version__ = "0.1.0"

from task_trigger.client import TriggerClient, create_trigger_client
from task_trigger.config import TaskTriggerSettings
from task_trigger.dispatcher import Dispatcher
from task_trigger.errors import (
    DuplicateTaskId,
    InvalidPayload,
    InvalidTransition,
    ReservedNameError,
    RunNotFound,
    TaskTriggerError,
    UnknownTask,
)
from task_trigger.library import TaskLibrary, build_library
from task_trigger.parsers import ParseError, ParseResult, PayloadParser, payload_parser
from task_trigger.runs import (
    ErrorRecord,
    Run,
    RunStatus,
    RunSummary,
    TaskRunResult,
    TriggerOptions,
    TriggerResult,
)
from task_trigger.store import InMemoryRunStore, JsonFileRunStore, RunStore
from task_trigger.tasks import RunContext, RunMetadata, TaskDefinition, define_task, task

__all__ = [
    "__version__",
    "Dispatcher",
    "DuplicateTaskId",
    "ErrorRecord",
    "InMemoryRunStore",
    "InvalidPayload",
    "InvalidTransition",
    "JsonFileRunStore",
    "ParseError",
    "ParseResult",
    "PayloadParser",
    "ReservedNameError",
    "Run",
    "RunContext",
    "RunMetadata",
    "RunNotFound",
    "RunStatus",
    "RunStore",
    "RunSummary",
    "TaskDefinition",
    "TaskLibrary",
    "TaskRunResult",
    "TaskTriggerError",
    "TaskTriggerSettings",
    "TriggerClient",
    "TriggerOptions",
    "TriggerResult",
    "UnknownTask",
    "build_library",
    "create_trigger_client",
    "define_task",
    "payload_parser",
    "task",
]
