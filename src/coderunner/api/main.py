"""
FastAPI application for the code runner.

This module configures the FastAPI application, registers the batch
execution endpoints and the terminal websocket, and enforces
authentication via an API key.  Components are built by
:class:`~coderunner.runtime.Runtime` when the application starts and torn
down when it stops.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Set

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..config import Config
from ..docker_backend import DockerBackend
from ..errors import CodeRunnerError
from ..executor import ExecutionRequest
from ..models import (
    CreateEvent,
    ErrorEvent,
    ErrorResponse,
    ExecuteRequest,
    ExecuteResponse,
    LanguageInfo,
    LanguageList,
    ServerEvent,
    client_event_adapter,
)
from ..runtime import Runtime


logger = logging.getLogger("coderunner")

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[coderunner] %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)

logger.setLevel(logging.INFO)

# Close code sent to websocket clients presenting a wrong API key.
WS_POLICY_VIOLATION = 1008


def create_app(config: Optional[Config] = None, backend: Optional[DockerBackend] = None) -> FastAPI:
    """Build the application.

    ``backend`` lets callers supply an already connected isolation backend;
    by default one is connected according to ``config``.
    """
    config = config or Config.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        runtime = Runtime.build(config, backend)
        logger.info(
            "Loaded config: mode=%s, workspace_path=%s, languages=%s, max_exec=%s, max_environments=%s",
            runtime.mode,
            config.workspace_path,
            [p.id for p in runtime.registry.profiles()],
            config.max_execution_seconds,
            config.max_environments,
        )
        runtime.start()
        app.state.runtime = runtime
        try:
            yield
        finally:
            await runtime.close()

    app = FastAPI(title="Code Runner", version="0.1.0", lifespan=lifespan)
    app.state.config = config

    @app.middleware("http")
    async def authenticate(request, call_next):
        """Middleware to enforce API key authentication on all requests."""
        path = request.url.path
        method = request.method
        client = getattr(request.client, "host", "unknown")

        logger.info("Incoming request: %s %s from %s", method, path, client)

        if config.api_key and path != "/health":
            provided_key = request.headers.get("x-api-key")
            if provided_key != config.api_key:
                logger.warning("Invalid API key for %s %s from %s", method, path, client)
                return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

        response = await call_next(request)
        logger.info("Response: %s %s -> %s", method, path, response.status_code)
        return response

    @app.exception_handler(CodeRunnerError)
    async def handle_coderunner_error(request: Request, exc: CodeRunnerError) -> JSONResponse:
        level = logging.WARNING if exc.status_code >= 500 else logging.INFO
        logger.log(level, "%s %s failed: %s: %s", request.method, request.url.path, exc.error_kind, exc.detail)
        body = ErrorResponse(error=exc.error_kind, detail=exc.detail)
        return JSONResponse(status_code=exc.status_code, content=body.model_dump())

    @app.get("/health")
    async def health(request: Request) -> Dict[str, str]:
        """Return a simple health check response."""
        return {"status": "ok", "mode": request.app.state.runtime.mode}

    @app.get("/v1/languages", response_model=LanguageList)
    async def languages(request: Request) -> LanguageList:
        registry = request.app.state.runtime.registry
        return LanguageList(
            languages=[
                LanguageInfo(id=p.id, image=p.image, filename=p.filename, compiles=p.compiles)
                for p in registry.profiles()
            ]
        )

    async def run_execution(req: ExecuteRequest, request: Request, endpoint: str) -> ExecuteResponse:
        runtime: Runtime = request.app.state.runtime
        execution = ExecutionRequest(language=req.language, source_code=req.code, stdin=req.stdin)
        logger.info(
            "[%s] Received %s execution %s (stdin: %s)",
            endpoint,
            req.language,
            execution.id,
            "provided" if req.stdin else "none",
        )
        try:
            result = await runtime.executor.run(execution, req.timeout_seconds)
        except CodeRunnerError:
            raise
        except Exception as exc:
            logger.exception("[%s] Unhandled error during execution: %s", endpoint, exc)
            raise HTTPException(status_code=500, detail="Execution error")
        return ExecuteResponse.from_result(result)

    @app.post("/exec", response_model=ExecuteResponse)
    async def exec_root(req: ExecuteRequest, request: Request) -> ExecuteResponse:
        """Compatibility endpoint mirroring ``/v1/executions``."""
        return await run_execution(req, request, "/exec")

    @app.post("/v1/executions", response_model=ExecuteResponse)
    async def create_execution(req: ExecuteRequest, request: Request) -> ExecuteResponse:
        """Run code once and return its combined output and exit code."""
        return await run_execution(req, request, "/v1/executions")

    @app.websocket("/v1/terminal")
    async def terminal(websocket: WebSocket) -> None:
        """Interactive terminals over one websocket connection.

        A connection can create several sessions.  When it drops, every
        session it created is closed.
        """
        if config.api_key:
            provided = websocket.headers.get("x-api-key") or websocket.query_params.get("api_key")
            if provided != config.api_key:
                logger.warning("Invalid API key for terminal websocket")
                await websocket.close(code=WS_POLICY_VIOLATION)
                return
        await websocket.accept()

        send_lock = asyncio.Lock()

        async def emit(event: ServerEvent) -> None:
            async with send_lock:
                await websocket.send_json(event.model_dump(exclude_none=True))

        terminals = websocket.app.state.runtime.terminals
        if terminals is None:
            await emit(
                ErrorEvent(
                    message="Interactive terminals are unavailable: the isolation backend is unreachable",
                    error_kind="InfrastructureError",
                )
            )
            await websocket.close()
            return

        owner = uuid.uuid4().hex
        logger.info("[/v1/terminal] connection %s opened", owner)

        # Sessions being created for this connection.  Creation may wait for
        # an admission slot or an image pull; events keep flowing meanwhile.
        creating: Set["asyncio.Task[Any]"] = set()

        def creation_done(task: "asyncio.Task[Any]") -> None:
            creating.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            # create() reports its own failures to the client
            if exc is not None and not isinstance(exc, CodeRunnerError):
                logger.error("[/v1/terminal] session creation for %s crashed: %r", owner, exc)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    event = client_event_adapter.validate_json(raw)
                except ValidationError as exc:
                    await emit(ErrorEvent(message=f"Invalid event: {exc.errors()[0]['msg']}"))
                    continue
                if isinstance(event, CreateEvent):
                    task = asyncio.create_task(terminals.create(event.language, emit, owner))
                    creating.add(task)
                    task.add_done_callback(creation_done)
                    continue
                try:
                    await terminals.dispatch(event, owner)
                except CodeRunnerError as exc:
                    await emit(ErrorEvent(session_id=event.session_id, message=exc.detail, error_kind=exc.error_kind))
        except WebSocketDisconnect:
            logger.info("[/v1/terminal] connection %s dropped", owner)
        finally:
            pending = list(creating)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await terminals.close_owned_by(owner)

    return app


app = create_app()
