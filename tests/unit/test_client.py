"""Unit tests for the client facade."""

from __future__ import annotations

import asyncio

import pytest

from task_trigger import (
    Dispatcher,
    RunNotFound,
    RunStatus,
    TaskLibrary,
    TaskTriggerSettings,
    TriggerOptions,
    UnknownTask,
    build_library,
    create_trigger_client,
)
from task_trigger.client import LibraryNamespace, TaskHandle


def test_lib_mirrors_the_library_tree(library: TaskLibrary, settings: TaskTriggerSettings) -> None:
    client = create_trigger_client(library, settings=settings)

    assert isinstance(client.lib, LibraryNamespace)
    assert isinstance(client.lib.users, LibraryNamespace)
    assert isinstance(client.lib.users.welcome, TaskHandle)
    assert client.lib.users.welcome.id == "user/welcome"
    assert client.lib["users"]["welcome"].id == "user/welcome"
    assert sorted(client.lib) == ["echo", "explode", "shout", "users"]
    assert "welcome" in dir(client.lib.users)


def test_unknown_names_are_attribute_errors(
    library: TaskLibrary, settings: TaskTriggerSettings
) -> None:
    client = create_trigger_client(library, settings=settings)

    with pytest.raises(AttributeError):
        client.lib.nope  # noqa: B018
    with pytest.raises(AttributeError):
        client.lib.users.nope  # noqa: B018
    with pytest.raises(KeyError):
        client.lib["nope"]


def test_trigger_and_wait_through_the_facade(
    library: TaskLibrary, settings: TaskTriggerSettings
) -> None:
    async def _run() -> None:
        async with create_trigger_client(library, settings=settings) as client:
            result = await client.lib.users.welcome.trigger_and_wait(
                "user/welcome", {"user_id": "u_9"}
            )
            assert result.ok is True
            assert result.output == "welcome u_9"

            summary = await client.runs.retrieve(result.id)
            assert summary.status is RunStatus.SUCCEEDED
            assert summary.task_id == "user/welcome"
            assert summary.output == "welcome u_9"

    asyncio.run(_run())


def test_leaf_rejects_other_task_ids(library: TaskLibrary, settings: TaskTriggerSettings) -> None:
    async def _run() -> None:
        async with create_trigger_client(library, settings=settings) as client:
            with pytest.raises(UnknownTask):
                await client.lib.echo.trigger("shout", "x")
            assert client.dispatcher.store.list() == []

    asyncio.run(_run())


def test_option_keywords_merge_with_options(
    library: TaskLibrary, settings: TaskTriggerSettings
) -> None:
    async def _run() -> None:
        async with create_trigger_client(library, settings=settings) as client:
            first = await client.lib.echo.trigger("echo", 1, idempotency_key="k")
            second = await client.lib.echo.trigger(
                "echo", 2, TriggerOptions(max_attempts=2), idempotency_key="k"
            )
            assert second.id == first.id

            run = client.dispatcher.store.get(first.id)
            assert run.options.idempotency_key == "k"

    asyncio.run(_run())


def test_top_level_trigger_by_id(library: TaskLibrary, settings: TaskTriggerSettings) -> None:
    async def _run() -> None:
        async with create_trigger_client(library, settings=settings) as client:
            handle = await client.trigger("echo", "x")
            result = await client.dispatcher.wait_for_run(handle.id, timeout=5)
            assert result.output == "x"

            with pytest.raises(UnknownTask):
                await client.trigger_and_wait("nope", None)

    asyncio.run(_run())


def test_retrieve_unknown_run(library: TaskLibrary, settings: TaskTriggerSettings) -> None:
    client = create_trigger_client(library, settings=settings)

    with pytest.raises(RunNotFound):
        asyncio.run(client.runs.retrieve("run_missing"))


def test_dispatcher_must_match_library(library: TaskLibrary, settings: TaskTriggerSettings) -> None:
    other = build_library({})
    dispatcher = Dispatcher(other, settings=settings)

    with pytest.raises(ValueError):
        create_trigger_client(library, dispatcher)
    assert create_trigger_client(other, dispatcher).dispatcher is dispatcher
