from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Header, HTTPException, Request
from loguru import logger
from pydantic import ValidationError

from fuzzci.app.orchestrator import Orchestrator

from .models import PingEvent, PushEvent, RunResponse, StatusResponse

def create_app(orchestrator: Orchestrator) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await orchestrator.shutdown()

    app = FastAPI(
        contact={},
        title='fuzz-ci',
        version='1.0',
        servers=[{'url': '/'}],
        lifespan=lifespan,
    )

    @app.post('/run', response_model=RunResponse, tags=['webhook'])
    async def post_run_(request: Request, x_github_event: str = Header(default="")) -> RunResponse:
        """
        GitHub webhook. The fuzzing cycle runs in the background; the response
        never reflects its outcome.
        """
        body = await request.body()
        match x_github_event:
            case "ping":
                try:
                    ping = PingEvent.model_validate_json(body or b"{}")
                except ValidationError as e:
                    raise HTTPException(status_code=422, detail=e.errors(include_url=False))
                logger.debug(f"incoming ping: {ping.zen!r}")
                return RunResponse(status="pong")
            case "push":
                try:
                    push = PushEvent.model_validate_json(body)
                except ValidationError as e:
                    raise HTTPException(status_code=422, detail=e.errors(include_url=False))
            case _:
                logger.debug(f"ignoring {x_github_event!r} event")
                return RunResponse(status="ignored")

        branch, commit = push.branch, push.commit_id
        logger.debug(f"push event: repo={push.repository.url} ref={push.ref} commit={commit}")
        if branch is None or commit is None or push.deleted:
            return RunResponse(status="ignored")
        if not await orchestrator.submit(branch, commit, push.repository.url, push.run_id()):
            logger.debug(f"skipping branch {branch}")
            return RunResponse(status="ignored")
        return RunResponse(status="accepted")

    @app.get('/status', response_model=StatusResponse, tags=['status'])
    async def get_status_() -> StatusResponse:
        """
        Latest cycle of every branch that received a trigger
        """
        return StatusResponse(branches=orchestrator.snapshots())

    return app
