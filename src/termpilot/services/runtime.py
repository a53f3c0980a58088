"""Builds and wires the orchestrator components for one process."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..config import AppConfig
from .agent_runner import AgentRunController
from .approvals import PermissionBroker
from .context_window import ContextWindowManager
from .event_bus import EventBus, session_channel
from .input_queue import InputQueue
from .persistence import JsonSnapshotStore, ThreadPersister
from .protocols import ModelDriver, SnapshotStore, TerminalCapability
from .sessions import ModelConfig, Session, SessionRegistry
from .state_store import AgentState, AgentStateStore

logger = logging.getLogger(__name__)


@dataclass
class AgentRuntime:
    config: AppConfig
    store: AgentStateStore
    bus: EventBus
    sessions: SessionRegistry
    terminal: TerminalCapability
    driver: ModelDriver
    context: ContextWindowManager
    permissions: PermissionBroker
    queue: InputQueue
    controller: AgentRunController
    persister: ThreadPersister | None = None

    def open_session(self, session_id: str | None = None, cwd: str = "", model: ModelConfig | None = None) -> Session:
        session = self.sessions.open(session_id, cwd=cwd, model=model)
        open_terminal = getattr(self.terminal, "open_session", None)
        if open_terminal is not None:
            open_terminal(session.id, cwd or None)
        return session

    def close_session(self, session_id: str) -> bool:
        return self.sessions.close(session_id)

    def state_event(self, session_id: str) -> dict:
        state = self.store.peek(session_id) or AgentState()
        data = state.to_dict()
        data["queue"] = [item.to_dict() for item in self.queue.items(session_id)]
        return {"type": "agent_state", "data": {"session_id": session_id, **data}}

    async def shutdown(self) -> None:
        await self.controller.shutdown()
        if self.persister is not None:
            self.persister.flush()


def build_runtime(
    config: AppConfig,
    terminal: TerminalCapability,
    driver: ModelDriver,
    snapshot_store: SnapshotStore | None = None,
    persist: bool = True,
) -> AgentRuntime:
    store = AgentStateStore()
    bus = EventBus()
    sessions = SessionRegistry(config.ai)
    context = ContextWindowManager(terminal, sessions, driver, store, config.agent)
    permissions = PermissionBroker(store, config.safety)
    queue = InputQueue(store)
    controller = AgentRunController(
        store,
        terminal,
        driver,
        context,
        permissions,
        queue,
        sessions,
        config=config.agent,
        bus=bus,
    )

    persister: ThreadPersister | None = None
    if persist:
        snapshot_store = snapshot_store or JsonSnapshotStore(config.app.data_dir / "agent_threads.json")
        persister = ThreadPersister(store, snapshot_store, delay=config.agent.persist_debounce)
        persister.load()
        store.add_change_listener(persister.schedule)

    runtime = AgentRuntime(
        config=config,
        store=store,
        bus=bus,
        sessions=sessions,
        terminal=terminal,
        driver=driver,
        context=context,
        permissions=permissions,
        queue=queue,
        controller=controller,
        persister=persister,
    )

    def publish_state(session_id: str) -> None:
        channel = session_channel(session_id)
        if bus.subscriber_count(channel):
            bus.publish_nowait(channel, runtime.state_event(session_id))

    def on_session_closed(session_id: str) -> None:
        controller.reset_session(session_id)
        close_terminal = getattr(terminal, "close_session", None)
        if close_terminal is not None:
            close_terminal(session_id)

    store.add_change_listener(publish_state)
    sessions.on_close(on_session_closed)
    logger.info("Agent runtime ready (model=%s, base_url=%s)", config.ai.model, config.ai.base_url)
    return runtime
