# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 Chetter Contributors

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request

from chetter.config import get_settings
from chetter.logging import configure_logging
from chetter.services.dispatcher import start_dispatcher
from chetter.webhooks.github import router as webhook_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: startup and shutdown hooks."""
    settings = get_settings()
    configure_logging(settings.log_level)

    dispatcher = await start_dispatcher(settings)

    # Store on app state for access in endpoints
    app.state.dispatcher = dispatcher

    yield

    # Shutdown: let in-flight reconciliations finish before closing clients
    await dispatcher.stop()


app = FastAPI(
    title="Chetter",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(webhook_router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Liveness check. Returns 200 if the process is running."""
    return {"status": "healthy"}


@app.get("/ready")
async def ready(request: Request) -> dict[str, str]:
    """Readiness check. Fails once shutdown has begun."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None or dispatcher.closed:
        raise HTTPException(status_code=503, detail="Not accepting events")
    return {"status": "ready"}


@app.get("/status")
async def dispatcher_status(request: Request) -> dict[str, Any]:
    """Counters for processed events and failures by error class."""
    return request.app.state.dispatcher.status()
