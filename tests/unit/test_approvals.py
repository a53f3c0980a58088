"""Tests for services/approvals.py permission broker."""

from __future__ import annotations

import asyncio

import pytest
from fakes import wait_for

from termpilot.config import SafetyConfig
from termpilot.services.approvals import PermissionBroker
from termpilot.services.state_store import AgentStateStore


def _broker(**safety) -> tuple[PermissionBroker, AgentStateStore]:
    store = AgentStateStore()
    return PermissionBroker(store, SafetyConfig(**safety)), store


async def _pending(broker: PermissionBroker, session_id: str, command: str) -> asyncio.Task[bool]:
    task = asyncio.ensure_future(broker.request(session_id, command))
    await wait_for(lambda: broker.get(session_id) is not None)
    return task


class TestSafeCommands:
    @pytest.mark.asyncio
    async def test_allow_once(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "ls")
        state = store.get("s1")
        assert state.pending_command == "ls"
        assert state.permission_resolver is not None
        assert state.pending_dangerous is False

        assert broker.respond("s1", "allow") == "allowed"
        assert await task is True
        assert store.get("s1").pending_command is None
        assert store.get("s1").permission_resolver is None
        assert store.get("s1").always_allow is False

    @pytest.mark.asyncio
    async def test_always_skips_future_prompts(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "ls")
        assert broker.respond("s1", "always") == "always"
        assert await task is True
        assert store.get("s1").always_allow is True

        assert await broker.request("s1", "pwd") is True
        assert broker.get("s1") is None

    @pytest.mark.asyncio
    async def test_deny(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "ls")
        assert broker.respond("s1", "deny") == "denied"
        assert await task is False
        assert store.get("s1").pending_command is None

    @pytest.mark.asyncio
    async def test_resolver_in_state_routes_through_broker(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "ls")
        resolver = store.get("s1").permission_resolver
        assert resolver(True) == "allowed"
        assert await task is True
        assert resolver(True) == "none"

    @pytest.mark.asyncio
    async def test_newer_request_resolves_older_false(self) -> None:
        broker, store = _broker()
        first = await _pending(broker, "s1", "ls")
        second = asyncio.ensure_future(broker.request("s1", "pwd"))
        assert await first is False
        await wait_for(lambda: store.get("s1").pending_command == "pwd")
        broker.respond("s1", "allow")
        assert await second is True


class TestDangerousCommands:
    @pytest.mark.asyncio
    async def test_requires_two_allows(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "rm -rf build")
        assert store.get("s1").pending_dangerous is True

        assert broker.respond("s1", "allow") == "confirm"
        assert not task.done()
        assert store.get("s1").awaiting_confirmation is True
        assert store.get("s1").pending_command == "rm -rf build"

        assert broker.respond("s1", "allow") == "allowed"
        assert await task is True
        assert store.get("s1").awaiting_confirmation is False

    @pytest.mark.asyncio
    async def test_always_is_unavailable(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "git push --force")
        assert broker.respond("s1", "always") == "unavailable"
        assert store.get("s1").always_allow is False
        assert not task.done()
        broker.respond("s1", "deny")
        assert await task is False

    @pytest.mark.asyncio
    async def test_deny_after_first_confirmation(self) -> None:
        broker, _ = _broker()
        task = await _pending(broker, "s1", "rm -rf build")
        broker.respond("s1", "allow")
        assert broker.respond("s1", "deny") == "denied"
        assert await task is False

    @pytest.mark.asyncio
    async def test_always_allow_does_not_bypass_dangerous(self) -> None:
        broker, store = _broker()
        store.update("s1", always_allow=True)
        task = await _pending(broker, "s1", "rm -rf build")
        assert not task.done()
        broker.respond("s1", "deny")
        assert await task is False

    @pytest.mark.asyncio
    async def test_single_resolver_call_cannot_bypass_confirmation(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "rm -rf build")
        assert store.get("s1").permission_resolver(True) == "confirm"
        assert not task.done()
        assert store.get("s1").permission_resolver(True) == "allowed"
        assert await task is True

    @pytest.mark.asyncio
    async def test_safety_disabled_treats_everything_as_safe(self) -> None:
        broker, store = _broker(enabled=False)
        store.update("s1", always_allow=True)
        assert await broker.request("s1", "rm -rf build") is True


class TestCancel:
    def test_respond_without_pending(self) -> None:
        broker, _ = _broker()
        assert broker.respond("s1", "allow") == "none"
        assert broker.cancel("s1") is False

    def test_unknown_choice(self) -> None:
        broker, _ = _broker()
        with pytest.raises(ValueError):
            broker.respond("s1", "maybe")

    @pytest.mark.asyncio
    async def test_cancel_resolves_false(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "ls")
        assert broker.cancel("s1") is True
        assert await task is False
        assert store.get("s1").pending_command is None

    @pytest.mark.asyncio
    async def test_cancelled_waiter_clears_state(self) -> None:
        broker, store = _broker()
        task = await _pending(broker, "s1", "ls")
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert broker.get("s1") is None
        assert store.get("s1").pending_command is None
