from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass

from ..config import SafetyConfig
from ..tools.safety import check_command
from .state_store import AgentStateStore

logger = logging.getLogger(__name__)

PERMISSION_CHOICES = ("allow", "always", "deny")


@dataclass
class PendingPermission:
    id: str
    fut: asyncio.Future[bool]
    command: str
    dangerous: bool
    reason: str
    created_at: float
    confirmed_once: bool = False


class PermissionBroker:
    """Per-session permission channel for commands the agent wants to run.

    At most one request is outstanding per session and each one resolves
    exactly once. Dangerous commands need two separate ``allow`` answers
    and never honour ``always``.
    """

    def __init__(self, store: AgentStateStore, safety: SafetyConfig | None = None) -> None:
        self._store = store
        self._safety = safety or SafetyConfig()
        self._pending: dict[str, PendingPermission] = {}

    def _is_dangerous(self, command: str) -> tuple[bool, str]:
        if not self._safety.enabled:
            return False, ""
        verdict = check_command(command, self._safety.custom_patterns)
        return verdict.dangerous, verdict.reason

    def get(self, session_id: str) -> PendingPermission | None:
        return self._pending.get(session_id)

    async def request(self, session_id: str, command: str) -> bool:
        dangerous, reason = self._is_dangerous(command)
        state = self._store.get(session_id)
        if state.always_allow and not dangerous:
            return True

        if session_id in self._pending:
            self._settle(session_id, False)

        loop = asyncio.get_running_loop()
        pending = PendingPermission(
            id=secrets.token_urlsafe(8),
            fut=loop.create_future(),
            command=command,
            dangerous=dangerous,
            reason=reason,
            created_at=time.time(),
        )
        self._pending[session_id] = pending
        self._store.update(
            session_id,
            pending_command=command,
            permission_resolver=self._resolver_for(session_id, pending),
            pending_dangerous=dangerous,
            awaiting_confirmation=False,
        )
        logger.info("Permission requested for session %s (dangerous=%s): %s", session_id, dangerous, command)
        try:
            return await pending.fut
        finally:
            # Only clear state we still own; a settled request already cleared it.
            if self._pending.get(session_id) is pending:
                self._settle(session_id, False)

    def _resolver_for(self, session_id: str, pending: PendingPermission):
        def resolver(allowed: bool) -> str:
            if self._pending.get(session_id) is not pending:
                return "none"
            return self.respond(session_id, "allow" if allowed else "deny")

        return resolver

    def respond(self, session_id: str, choice: str) -> str:
        """Apply a user decision.

        Returns one of ``allowed``, ``always``, ``denied``, ``confirm`` (first
        approval of a dangerous command, a second one is needed),
        ``unavailable`` (``always`` on a dangerous command) or ``none``.
        """
        if choice not in PERMISSION_CHOICES:
            raise ValueError(f"Unknown permission choice: {choice!r}")

        pending = self._pending.get(session_id)
        if pending is None or pending.fut.done():
            return "none"

        if choice == "deny":
            self._settle(session_id, False)
            logger.info("Permission denied for session %s: %s", session_id, pending.command)
            return "denied"

        if pending.dangerous:
            if choice == "always":
                return "unavailable"
            if not pending.confirmed_once:
                pending.confirmed_once = True
                self._store.update(session_id, awaiting_confirmation=True)
                return "confirm"
            self._settle(session_id, True)
            logger.info("Dangerous command confirmed twice for session %s: %s", session_id, pending.command)
            return "allowed"

        if choice == "always":
            self._store.update(session_id, always_allow=True)
            self._settle(session_id, True)
            return "always"

        self._settle(session_id, True)
        return "allowed"

    def cancel(self, session_id: str) -> bool:
        """Resolve any outstanding request as denied."""
        return self._settle(session_id, False)

    def _settle(self, session_id: str, allowed: bool) -> bool:
        pending = self._pending.pop(session_id, None)
        if pending is None:
            return False
        resolved = not pending.fut.done()
        if resolved:
            pending.fut.set_result(allowed)
        self._store.update(
            session_id,
            pending_command=None,
            permission_resolver=None,
            pending_dangerous=False,
            awaiting_confirmation=False,
        )
        return resolved
