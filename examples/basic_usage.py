#!/usr/bin/env python3
"""Programmatic trigger example.

This demonstrates using the library directly:

* define tasks with and without a payload schema
* group them into a nested library
* trigger them through the client facade and look the runs up afterwards

The same library can be used from the command line:

    task-trigger run --library basic_usage:library --task user/welcome \
        --payload '{"user_id": "u_1"}'
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Sequence

from pydantic import BaseModel

from task_trigger import (
    RunContext,
    TaskTriggerSettings,
    build_library,
    create_trigger_client,
    define_task,
    task,
)
from task_trigger.logging import configure_logging


class WelcomePayload(BaseModel):
    user_id: str
    locale: str = "en"


@task("user/welcome", schema=WelcomePayload)
async def welcome(run: RunContext[WelcomePayload]) -> str:
    """Greet a newly registered user."""
    greeting = "bonjour" if run.payload.locale == "fr" else "hello"
    return f"{greeting} {run.payload.user_id}"


@task("user/onboard", schema=WelcomePayload)
async def onboard(run: RunContext[WelcomePayload]) -> dict[str, object]:
    """Welcome a user, then report what happened."""
    result = await run.trigger_and_wait("user/welcome", run.payload.model_dump())
    return {"welcomed": result.ok, "message": result.output}


def _word_count(raw: object) -> str:
    if not isinstance(raw, str):
        raise TypeError("expected text")
    return raw


def count_words(run: RunContext[str]) -> int:
    return len(run.payload.split())


library = build_library(
    {
        "foo": {"wordCount": define_task("foo/word-count", _word_count, count_words)},
        "bar": {"welcome": welcome, "onboard": onboard},
    }
)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trigger a few tasks (programmatic example).")
    parser.add_argument("--user", default="u_1", help="User id to welcome")
    parser.add_argument("--text", default="the quick brown fox", help="Text to count words in")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> None:
    async with create_trigger_client(library, settings=TaskTriggerSettings()) as client:
        handle = await client.lib.foo.wordCount.trigger("foo/word-count", args.text)
        print(f"Triggered run {handle.id}")

        result = await client.lib.bar.onboard.trigger_and_wait(
            "user/onboard", {"user_id": args.user, "locale": "fr"}
        )
        print(f"Onboarding ok={result.ok}: {result.output}")

        await client.dispatcher.join()
        summary = await client.runs.retrieve(handle.id)
        print(f"Word count run is {summary.status.value}: {summary.output}")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_logging("WARNING", "text")
    asyncio.run(_run(args))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
