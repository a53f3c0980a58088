"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import AppConfig, load_config
from .services.ai_service import AIService
from .services.protocols import ModelDriver, SnapshotStore, TerminalCapability
from .services.runtime import build_runtime
from .tools.shell import LocalShellTerminal

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: AppConfig = app.state.config
    terminal = app.state.terminal or LocalShellTerminal()
    driver = app.state.driver or AIService(config.ai, settle_delay=config.agent.terminal_settle)
    runtime = build_runtime(
        config,
        terminal,
        driver,
        snapshot_store=app.state.snapshot_store,
        persist=app.state.persist,
    )
    app.state.runtime = runtime
    app.state.event_bus = runtime.bus

    yield

    await runtime.shutdown()
    close = getattr(driver, "close", None)
    if close is not None and app.state.driver is None:
        await close()


def create_app(
    config: AppConfig | None = None,
    terminal: TerminalCapability | None = None,
    driver: ModelDriver | None = None,
    snapshot_store: SnapshotStore | None = None,
    persist: bool = True,
) -> FastAPI:
    if config is None:
        config = load_config()

    app = FastAPI(title="termpilot", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.terminal = terminal
    app.state.driver = driver
    app.state.snapshot_store = snapshot_store
    app.state.persist = persist

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[f"http://127.0.0.1:{config.app.port}", f"http://localhost:{config.app.port}"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from .routers import agent, events

    app.include_router(agent.router, prefix="/api")
    app.include_router(events.router, prefix="/api")

    return app
