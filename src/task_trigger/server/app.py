"""FastAPI app factory.

Endpoints are intentionally thin wrappers over the dispatcher and run store.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from task_trigger import __version__
from task_trigger.config import TaskTriggerSettings
from task_trigger.dispatcher import Dispatcher, Middleware
from task_trigger.errors import InvalidPayload, RunNotFound, UnknownTask
from task_trigger.library import TaskLibrary
from task_trigger.runs import RunSummary
from task_trigger.server.models import (
    ApiRunResult,
    ApiTask,
    ApiTriggerResult,
    TriggerAndWaitRequest,
    TriggerRequest,
)
from task_trigger.store import JsonFileRunStore, RunStore

logger = logging.getLogger(__name__)


def _dispatcher(request: Request) -> Dispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if not isinstance(dispatcher, Dispatcher):
        # This should never happen for the real app, but keeps the API fail-fast.
        raise HTTPException(status_code=500, detail="Dispatcher not configured")
    return dispatcher


def create_app(
    library: TaskLibrary,
    *,
    settings: TaskTriggerSettings | None = None,
    store: RunStore | None = None,
    middleware: Sequence[Middleware] = (),
) -> FastAPI:
    settings = settings or TaskTriggerSettings()
    if store is None and settings.run_store_path is not None:
        store = JsonFileRunStore(settings.run_store_path)

    dispatcher = Dispatcher(library, store, settings=settings, middleware=middleware)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        await dispatcher.aclose()

    app = FastAPI(
        title="task-trigger",
        version=__version__,
        description="Trigger registered tasks and retrieve their runs.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.dispatcher = dispatcher

    def require_api_key(authorization: str = Header(default="")) -> None:
        if not settings.secret_key:
            return
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not hmac.compare_digest(
            token.strip().encode(), settings.secret_key.encode()
        ):
            raise HTTPException(
                status_code=401,
                detail="Missing or invalid API key",
                headers={"WWW-Authenticate": "Bearer"},
            )

    @app.exception_handler(UnknownTask)
    async def unknown_task(_request: Request, exc: UnknownTask) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc), "task_id": exc.task_id})

    @app.exception_handler(InvalidPayload)
    async def invalid_payload(_request: Request, exc: InvalidPayload) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "task_id": exc.task_id, "error": exc.error.to_json()},
        )

    @app.exception_handler(RunNotFound)
    async def run_not_found(_request: Request, exc: RunNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc), "run_id": exc.run_id})

    @app.get("/api/v1/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    api = APIRouter(prefix="/api/v1", dependencies=[Depends(require_api_key)])

    @api.get("/tasks", response_model=list[ApiTask])
    def list_tasks() -> list[ApiTask]:
        return [
            ApiTask(
                id=definition.id,
                path=list(path),
                parser=definition.parser.kind,
                description=definition.description,
            )
            for path, definition in library.paths()
        ]

    @api.post("/trigger", response_model=ApiTriggerResult)
    async def trigger(
        req: TriggerRequest, dispatcher: Dispatcher = Depends(_dispatcher)
    ) -> ApiTriggerResult:
        result = await dispatcher.trigger(req.task_id, req.payload, req.options)
        return ApiTriggerResult(id=result.id)

    @api.post("/trigger-and-wait", response_model=ApiRunResult)
    async def trigger_and_wait(
        req: TriggerAndWaitRequest, dispatcher: Dispatcher = Depends(_dispatcher)
    ) -> ApiRunResult:
        result = await dispatcher.trigger_and_wait(
            req.task_id, req.payload, req.options, timeout=req.timeout
        )
        return ApiRunResult.from_result(result)

    @api.get("/runs/{run_id}", response_model=RunSummary)
    def get_run(run_id: str, dispatcher: Dispatcher = Depends(_dispatcher)) -> RunSummary:
        return dispatcher.retrieve(run_id)

    app.include_router(api)
    logger.debug("App created", extra={"tasks": len(library)})
    return app
