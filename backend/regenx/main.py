from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import services
from .errors import CooldownError, FamiliarError
from .routers import familiar, internal, mutations

logging.basicConfig(
    level=os.getenv("REGENX_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    task = None
    if os.getenv("REGENX_RUN_SCHEDULER", "1") == "1":
        engine = services.get_engine()
        task = asyncio.create_task(engine.jobs.run_forever(engine.settings.scheduler_poll_seconds))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


app = FastAPI(title="Re-GenX Familiar API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(familiar.router)
app.include_router(mutations.router)
app.include_router(internal.router)


@app.exception_handler(FamiliarError)
async def familiar_error_handler(_: Request, exc: FamiliarError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc.message)
    headers = {"Retry-After": str(exc.remaining_seconds)} if isinstance(exc, CooldownError) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=headers)


@app.get("/")
def root() -> dict:
    return {"status": "ok", "message": "Re-GenX familiar API online"}
