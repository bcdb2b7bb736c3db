"""CLI entrypoint.

Loads a task library from `module:attribute`, then lists its tasks or runs one
of them in-process and prints the result as JSON.
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import sys
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from task_trigger import __version__
from task_trigger.config import TaskTriggerSettings
from task_trigger.dispatcher import Dispatcher
from task_trigger.errors import InvalidPayload, UnknownTask
from task_trigger.library import TaskLibrary, build_library
from task_trigger.logging import configure_logging
from task_trigger.runs import TaskRunResult, TriggerOptions
from task_trigger.store import JsonFileRunStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_REJECTED = 3


class LibraryLoadError(Exception):
    pass


def load_library(spec: str) -> TaskLibrary:
    """Import `module:attribute` and return it as a TaskLibrary.

    The attribute may be a built library or a nested mapping of tasks.
    """

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise LibraryLoadError(f"Library must be given as 'module:attribute', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise LibraryLoadError(f"Cannot import {module_name!r}: {e}") from e

    target: Any = module
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise LibraryLoadError(f"{module_name!r} has no attribute {attr!r}") from e

    if isinstance(target, TaskLibrary):
        return target
    if isinstance(target, Mapping):
        return build_library(target)
    raise LibraryLoadError(f"{spec!r} is a {type(target).__name__}, not a task library")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="task-trigger",
        description="Trigger tasks from a task library",
    )
    parser.add_argument("--version", action="version", version=f"task-trigger {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    list_tasks = subparsers.add_parser("list-tasks", help="List the tasks of a library")
    list_tasks.add_argument(
        "--library",
        required=True,
        help="Library to load, in the form 'package.module:attribute'",
    )

    run = subparsers.add_parser("run", help="Trigger a task and wait for its result")
    run.add_argument(
        "--library",
        required=True,
        help="Library to load, in the form 'package.module:attribute'",
    )
    run.add_argument("--task", dest="task_id", required=True, help="Full task id")
    run.add_argument("--payload", default="null", help="JSON payload (default: null)")
    run.add_argument("--idempotency-key", default=None, help="Deduplicate triggers by this key")
    run.add_argument("--max-attempts", type=int, default=None, help="Attempts before failing")
    run.add_argument(
        "--start-after",
        type=float,
        default=None,
        help="Delay the first attempt by this many seconds",
    )
    run.add_argument("--concurrency-key", default=None, help="Serialize runs sharing this key")
    run.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop waiting after this many seconds (the run is then recorded as abandoned)",
    )

    return parser


async def _run_task(
    library: TaskLibrary,
    settings: TaskTriggerSettings,
    task_id: str,
    payload: Any,
    options: TriggerOptions,
    timeout: float | None,
) -> TaskRunResult:
    store = JsonFileRunStore(settings.run_store_path) if settings.run_store_path else None
    async with Dispatcher(library, store, settings=settings) as dispatcher:
        result = await dispatcher.trigger_and_wait(task_id, payload, options, timeout=timeout)
        if not result.ok and result.error is not None and result.error.name == "Timeout":
            # The process exits with the run unfinished; record why.
            await dispatcher.aclose(reason="Abandoned")
        return result


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = TaskTriggerSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your environment / .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_USAGE

    configure_logging(settings.log_level, settings.log_format)

    try:
        library = load_library(args.library)
    except (LibraryLoadError, ValueError, TypeError) as e:
        print(str(e), file=sys.stderr)
        return EXIT_USAGE

    try:
        if args.command == "list-tasks":
            for path, definition in library.paths():
                print(f"{definition.id}\t{'.'.join(path)}")
            return EXIT_OK

        if args.command == "run":
            try:
                payload = json.loads(args.payload)
            except json.JSONDecodeError as e:
                print(f"--payload is not valid JSON: {e}", file=sys.stderr)
                return EXIT_USAGE
            try:
                options = TriggerOptions(
                    idempotency_key=args.idempotency_key,
                    max_attempts=args.max_attempts,
                    start_after=args.start_after,
                    concurrency_key=args.concurrency_key,
                )
            except ValidationError as e:
                print(f"Invalid trigger options: {e}", file=sys.stderr)
                return EXIT_USAGE

            result = asyncio.run(
                _run_task(library, settings, args.task_id, payload, options, args.timeout)
            )
            print(json.dumps(result.to_json(), ensure_ascii=False, default=str))
            return EXIT_OK if result.ok else EXIT_FAILED

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_USAGE

    except (UnknownTask, InvalidPayload) as e:
        logger.warning(str(e))
        print(str(e), file=sys.stderr)
        return EXIT_REJECTED

    except Exception:
        logger.exception("Command failed")
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
