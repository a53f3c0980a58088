"""Durable agent threads: a JSON snapshot file and a debounced writer."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from .protocols import SnapshotStore
from .state_store import TERMINAL_KINDS, AgentStateStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted (process restarted)"


class JsonSnapshotStore:
    """``{session_id: thread}`` snapshot kept in a single JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable agent snapshot %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def write(self, snapshot: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(snapshot, f, ensure_ascii=False)
        os.replace(tmp, self.path)


class ThreadPersister:
    """Writes store snapshots at most once per ``delay`` seconds of quiet.

    Each change cancels the pending flush task and schedules a new one.
    """

    def __init__(self, store: AgentStateStore, snapshot_store: SnapshotStore, delay: float = 0.5) -> None:
        self._store = store
        self._snapshot_store = snapshot_store
        self._delay = delay
        self._task: asyncio.Task[None] | None = None

    def schedule(self, session_id: str | None = None) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller, shutdown): write through.
            self.flush()
            return
        self._task = loop.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self._delay)
        self.flush()

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def flush(self) -> None:
        task = self._task
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()
        try:
            self._snapshot_store.write(self._store.snapshot())
        except OSError as e:
            logger.warning("Could not persist agent threads: %s", e)

    def load(self) -> int:
        """Restore threads into the store; returns how many were loaded.

        A thread that does not end in a terminal step belonged to a run
        that never finished, so it gets an explicit interruption marker.
        """
        snapshot = self._snapshot_store.read()
        threads: dict[str, list[dict[str, str]]] = {}
        for session_id, raw_thread in snapshot.items():
            if not isinstance(raw_thread, list):
                continue
            thread = [item for item in raw_thread if isinstance(item, dict)]
            if thread and thread[-1].get("kind") not in TERMINAL_KINDS:
                thread.append({"kind": "error", "output": INTERRUPTED_MESSAGE})
            threads[session_id] = thread
        self._store.load_snapshot(threads)
        logger.info("Restored %d agent thread(s)", len(threads))
        return len(threads)
