"""FIFO of user input that arrives while an agent run is active."""

from __future__ import annotations

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Literal

from .state_store import AgentStateStore

logger = logging.getLogger(__name__)

QueueKind = Literal["command", "agent"]


@dataclass
class QueueItem:
    kind: QueueKind
    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "kind": self.kind, "content": self.content}


# Returns True when dispatching started a run (draining stops there).
Dispatcher = Callable[[str, QueueItem], bool]


class InputQueue:
    """Per-session queues drained on the running -> idle transition.

    Commands are written straight through and draining continues; an
    agent prompt starts a run and draining resumes when that run ends.
    """

    def __init__(self, store: AgentStateStore, dispatcher: Dispatcher | None = None) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._queues: dict[str, deque[QueueItem]] = {}
        store.add_running_listener(self._on_running_changed)

    def set_dispatcher(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher

    def enqueue(self, session_id: str, kind: QueueKind, content: str) -> QueueItem:
        item = QueueItem(kind=kind, content=content)
        self._queues.setdefault(session_id, deque()).append(item)
        logger.debug("Queued %s for session %s: %s", kind, session_id, content)
        return item

    def items(self, session_id: str) -> list[QueueItem]:
        return list(self._queues.get(session_id, ()))

    def size(self, session_id: str) -> int:
        return len(self._queues.get(session_id, ()))

    def withdraw(self, session_id: str, item_id: str) -> bool:
        queue = self._queues.get(session_id)
        if not queue:
            return False
        for item in queue:
            if item.id == item_id:
                queue.remove(item)
                return True
        return False

    def clear(self, session_id: str) -> None:
        self._queues.pop(session_id, None)

    def _on_running_changed(self, session_id: str, running: bool) -> None:
        if running:
            return
        self.drain(session_id)

    def drain(self, session_id: str) -> None:
        queue = self._queues.get(session_id)
        if self._dispatcher is None:
            return
        while queue and not self._store.get(session_id).running:
            item = queue.popleft()
            logger.info("Dispatching queued %s for session %s", item.kind, session_id)
            if self._dispatcher(session_id, item):
                break
