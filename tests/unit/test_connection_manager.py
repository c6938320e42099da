"""Unit tests for the connection state machine and manager."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from browsermonitor.connection.bridge import BridgeResult, ForwardRule
from browsermonitor.connection.manager import (
    ConnectionManager,
    ConnectionSettings,
    ConnectionState,
    ConnectionStateMachine,
    NonInteractivePrompts,
    Transition,
)
from browsermonitor.errors import ConnectionFailure, FailureReason, HandshakeError, InvalidTransition
from browsermonitor.models.connection import ConnectionIntent, ConnectionMode, Endpoint, LaunchSpec


def make_bridge(requires_forwarding=True, rules=None, bind="::1", candidates=None):
    """Mock bridge whose side effects all succeed."""
    bridge = MagicMock()
    bridge.requires_forwarding = requires_forwarding
    bridge.list_candidates = AsyncMock(return_value=candidates or [])
    bridge.forward_rules = AsyncMock(return_value=rules or [])
    bridge.bind_address = AsyncMock(return_value=bind)
    bridge.remove_forward = AsyncMock(return_value=BridgeResult(ok=True, changed=True))
    bridge.install_forward = AsyncMock(return_value=BridgeResult(ok=True, changed=True))
    bridge.launch = AsyncMock(return_value=BridgeResult(ok=True, changed=True, pid=4242))
    bridge.terminate = AsyncMock(return_value=BridgeResult(ok=True, changed=True))
    bridge.resolve_host = AsyncMock(return_value="172.20.0.1")
    bridge.choose_port = AsyncMock(side_effect=lambda preferred=None: preferred or 9222)
    return bridge


def conflicting_rule(port=9222):
    return ForwardRule(listen_port=port, connect_address="127.0.0.1", connect_port=port)


def make_prompts(confirm=False, wait=True, select=None):
    prompts = MagicMock()
    prompts.confirm = AsyncMock(return_value=confirm)
    prompts.wait_for_browser = AsyncMock(return_value=wait)
    prompts.select_candidate = AsyncMock(return_value=select)
    return prompts


def failing_handshake(failures: int, channel=None):
    """Handshake that fails ``failures`` times, then returns ``channel``."""
    calls = {"count": 0}

    async def handshake(endpoint, pid=None):
        calls["count"] += 1
        if calls["count"] <= failures:
            raise HandshakeError(f"attempt {calls['count']} refused")
        return channel

    handshake.calls = calls
    return handshake


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def join_intent():
    return ConnectionIntent(
        mode=ConnectionMode.JOIN,
        endpoint_hint=Endpoint(host="172.20.0.1", port=9222),
        retry_budget=5,
    )


@pytest.fixture
def launch_spec(tmp_path):
    return LaunchSpec(profile_ref=Path(tmp_path) / "profile", port=9222)


class TestConnectionStateMachine:
    """Tests for the transition table."""

    def test_happy_path(self):
        machine = ConnectionStateMachine()
        machine.fire(Transition.BEGIN)
        machine.fire(Transition.ENDPOINT_READY)
        machine.fire(Transition.HANDSHAKE_OK)
        assert machine.state == ConnectionState.CONNECTED
        assert machine.is_terminal

    def test_invalid_transition_raises(self):
        machine = ConnectionStateMachine()
        with pytest.raises(InvalidTransition):
            machine.fire(Transition.HANDSHAKE_OK)
        assert machine.state == ConnectionState.IDLE

    def test_remediation_loop_returns_to_connecting(self):
        machine = ConnectionStateMachine()
        for transition in (Transition.BEGIN, Transition.ENDPOINT_READY, Transition.RETRIES_EXHAUSTED,
                           Transition.CONFLICT_FOUND, Transition.REMEDIATED):
            machine.fire(transition)
        assert machine.state == ConnectionState.CONNECTING
        assert machine.visited(ConnectionState.REMEDIATING)
        assert not machine.can_fire(Transition.CONFLICT_FOUND)


class TestConnectionManager:
    """Tests for discover, connect, diagnose and remediate."""

    @pytest.mark.asyncio
    async def test_connects_after_transient_failures(self, join_intent, sleep):
        channel = MagicMock()
        handshake = failing_handshake(2, channel)
        manager = ConnectionManager(make_bridge(), handshake=handshake, sleep=sleep,
                                    settings=ConnectionSettings(retry_delay_s=1.5))

        result = await manager.connect(join_intent)

        assert result is channel
        assert manager.state == ConnectionState.CONNECTED
        assert manager.attempts == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)

    @pytest.mark.asyncio
    async def test_conflict_declined(self, join_intent, sleep):
        """Five failed handshakes, a conflicting proxy and a declined fix end in FAILED."""
        bridge = make_bridge(rules=[conflicting_rule()], bind="::1")
        prompts = make_prompts(confirm=False)
        handshake = failing_handshake(100)
        manager = ConnectionManager(bridge, handshake=handshake, prompts=prompts, sleep=sleep)

        with pytest.raises(ConnectionFailure) as exc_info:
            await manager.connect(join_intent)

        assert exc_info.value.reason == FailureReason.CONFLICT_UNRESOLVED
        assert manager.state == ConnectionState.FAILED
        assert handshake.calls["count"] == 5
        prompts.confirm.assert_awaited_once()
        bridge.launch.assert_not_called()
        bridge.remove_forward.assert_not_called()
        assert manager.diagnosis.kind.value == "conflict"
        assert exc_info.value.guidance

    @pytest.mark.asyncio
    async def test_conflict_accepted_relaunches(self, launch_spec, sleep):
        intent = ConnectionIntent(
            mode=ConnectionMode.JOIN,
            endpoint_hint=Endpoint(host="172.20.0.1", port=9222),
            retry_budget=2,
            launch=launch_spec,
        )
        bridge = make_bridge(rules=[conflicting_rule()], bind="::1")
        channel = MagicMock()
        handshake = failing_handshake(2, channel)
        manager = ConnectionManager(bridge, handshake=handshake, prompts=make_prompts(confirm=True), sleep=sleep)

        result = await manager.connect(intent)

        assert result is channel
        assert manager.machine.visited(ConnectionState.REMEDIATING)
        bridge.terminate.assert_awaited_once_with(9222)
        bridge.launch.assert_awaited_once()
        assert bridge.launch.await_args.args[0].port == 9222
        bridge.install_forward.assert_awaited_once_with(9222, "::1")
        assert manager.installed_forward == 9222
        assert manager.launched_pid == 4242

    @pytest.mark.asyncio
    async def test_remediation_happens_once(self, sleep):
        intent = ConnectionIntent(
            mode=ConnectionMode.JOIN,
            endpoint_hint=Endpoint(host="172.20.0.1", port=9222),
            retry_budget=1,
        )
        bridge = make_bridge(rules=[conflicting_rule()], bind="::1")
        manager = ConnectionManager(bridge, handshake=failing_handshake(100),
                                    prompts=make_prompts(confirm=True), sleep=sleep)

        with pytest.raises(ConnectionFailure) as exc_info:
            await manager.connect(intent)

        assert exc_info.value.reason == FailureReason.CONFLICT_UNRESOLVED
        assert bridge.remove_forward.await_count == 1

    @pytest.mark.asyncio
    async def test_nothing_listening(self, join_intent, sleep):
        bridge = make_bridge(bind=None)
        manager = ConnectionManager(bridge, handshake=failing_handshake(100), sleep=sleep)

        with pytest.raises(ConnectionFailure) as exc_info:
            await manager.connect(join_intent)

        assert exc_info.value.reason == FailureReason.HANDSHAKE_TIMEOUT
        assert "--remote-debugging-port=9222" in exc_info.value.guidance

    @pytest.mark.asyncio
    async def test_access_refused(self, join_intent, sleep):
        bridge = make_bridge(bind="127.0.0.1", rules=[])
        manager = ConnectionManager(bridge, handshake=failing_handshake(100), sleep=sleep)

        with pytest.raises(ConnectionFailure) as exc_info:
            await manager.connect(join_intent)

        assert exc_info.value.reason == FailureReason.UNREACHABLE
        assert "netsh interface portproxy add v4tov4" in exc_info.value.guidance

    @pytest.mark.asyncio
    async def test_diagnostics_disabled(self, sleep):
        intent = ConnectionIntent(
            mode=ConnectionMode.JOIN,
            endpoint_hint=Endpoint(port=9222),
            retry_budget=3,
            diagnostics_enabled=False,
        )
        bridge = make_bridge()
        manager = ConnectionManager(bridge, handshake=failing_handshake(100), sleep=sleep)

        with pytest.raises(ConnectionFailure) as exc_info:
            await manager.connect(intent)

        assert exc_info.value.reason == FailureReason.HANDSHAKE_TIMEOUT
        bridge.forward_rules.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_candidates(self, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.JOIN)
        bridge = make_bridge(candidates=[])
        manager = ConnectionManager(bridge, handshake=failing_handshake(0),
                                    settings=ConnectionSettings(discovery_polls=3), sleep=sleep)

        with pytest.raises(ConnectionFailure) as exc_info:
            await manager.connect(intent)

        assert exc_info.value.reason == FailureReason.NO_CANDIDATES
        assert bridge.list_candidates.await_count == 3

    @pytest.mark.asyncio
    async def test_user_aborts_waiting(self, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.JOIN)
        manager = ConnectionManager(make_bridge(), handshake=failing_handshake(0),
                                    prompts=make_prompts(wait=False), sleep=sleep)

        with pytest.raises(ConnectionFailure) as exc_info:
            await manager.connect(intent)

        assert exc_info.value.reason == FailureReason.USER_ABORTED


    @pytest.mark.asyncio
    async def test_no_sleep_after_last_poll(self, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.JOIN)
        prompts = make_prompts()
        manager = ConnectionManager(make_bridge(candidates=[]), handshake=failing_handshake(0), prompts=prompts,
                                    settings=ConnectionSettings(discovery_polls=3), sleep=sleep)

        with pytest.raises(ConnectionFailure):
            await manager.connect(intent)

        assert prompts.wait_for_browser.await_count == 2
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_prefers_project_browser(self, launch_spec, sleep):
        candidates = [
            Endpoint(port=9222, reachable=True, profile="Default"),
            Endpoint(port=9223, reachable=True, profile="profile", project=True),
        ]
        intent = ConnectionIntent(mode=ConnectionMode.JOIN, launch=launch_spec)
        bridge = make_bridge(candidates=candidates)
        handshake = AsyncMock(return_value=MagicMock())
        prompts = make_prompts()
        manager = ConnectionManager(bridge, handshake=handshake, prompts=prompts, sleep=sleep)

        await manager.connect(intent)

        bridge.list_candidates.assert_awaited_once_with("profile")
        assert handshake.await_args.args[0].port == 9223
        prompts.select_candidate.assert_not_called()
        prompts.confirm.assert_not_called()

    @pytest.mark.asyncio
    async def test_offers_launch_without_project_browser(self, launch_spec, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.JOIN, launch=launch_spec)
        bridge = make_bridge(candidates=[Endpoint(port=9222, reachable=True, profile="Default")])
        handshake = AsyncMock(return_value=MagicMock())
        prompts = make_prompts(confirm=True)
        manager = ConnectionManager(bridge, handshake=handshake, prompts=prompts, sleep=sleep)

        await manager.connect(intent)

        prompts.confirm.assert_awaited_once()
        bridge.launch.assert_awaited_once()
        assert manager.launched_pid == 4242
        assert handshake.await_args.args[0] == Endpoint(host="172.20.0.1", port=9222)

    @pytest.mark.asyncio
    async def test_declined_launch_joins_other_browser(self, launch_spec, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.JOIN, launch=launch_spec)
        other = Endpoint(port=9224, reachable=True, profile="Default")
        bridge = make_bridge(candidates=[other])
        handshake = AsyncMock(return_value=MagicMock())
        manager = ConnectionManager(bridge, handshake=handshake, prompts=make_prompts(confirm=False), sleep=sleep)

        await manager.connect(intent)

        bridge.launch.assert_not_called()
        assert handshake.await_args.args[0].port == 9224

    @pytest.mark.asyncio
    async def test_unreachable_candidate_offers_forwarding(self, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.JOIN)
        bridge = make_bridge(candidates=[Endpoint(host="172.20.0.1", port=9225)])
        prompts = make_prompts(confirm=True)
        manager = ConnectionManager(bridge, handshake=AsyncMock(return_value=MagicMock()),
                                    prompts=prompts, sleep=sleep)

        await manager.connect(intent)

        prompts.confirm.assert_awaited_once()
        bridge.install_forward.assert_awaited_once_with(9225, "::1")
        assert manager.installed_forward == 9225

    @pytest.mark.asyncio
    async def test_unreachable_candidate_with_existing_rule(self, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.JOIN)
        bridge = make_bridge(candidates=[Endpoint(port=9222)], rules=[conflicting_rule(9222)])
        prompts = make_prompts(confirm=True)
        manager = ConnectionManager(bridge, handshake=AsyncMock(return_value=MagicMock()),
                                    prompts=prompts, sleep=sleep)

        await manager.connect(intent)

        prompts.confirm.assert_not_called()
        bridge.install_forward.assert_not_called()

    @pytest.mark.asyncio
    async def test_multiple_candidates_prompt(self, sleep):
        candidates = [Endpoint(port=9222, reachable=True), Endpoint(port=9223, reachable=True)]
        intent = ConnectionIntent(mode=ConnectionMode.JOIN)
        channel = MagicMock()
        handshake = AsyncMock(return_value=channel)
        prompts = make_prompts(select=candidates[1])
        manager = ConnectionManager(make_bridge(candidates=candidates), handshake=handshake,
                                    prompts=prompts, sleep=sleep)

        await manager.connect(intent)

        assert handshake.await_args.args[0].port == 9223

    @pytest.mark.asyncio
    async def test_launch_installs_forwarding(self, launch_spec, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.LAUNCH, launch=launch_spec)
        bridge = make_bridge(bind="127.0.0.1")
        channel = MagicMock()
        manager = ConnectionManager(bridge, handshake=AsyncMock(return_value=channel), sleep=sleep)

        await manager.connect(intent)

        bridge.remove_forward.assert_awaited_once_with(9222)
        bridge.install_forward.assert_awaited_once_with(9222, "127.0.0.1")
        assert manager.installed_forward == 9222

        await manager.release()
        await manager.release()
        assert bridge.remove_forward.await_count == 2
        assert manager.installed_forward is None

    @pytest.mark.asyncio
    async def test_launch_failure(self, launch_spec, sleep):
        intent = ConnectionIntent(mode=ConnectionMode.LAUNCH, launch=launch_spec)
        bridge = make_bridge()
        bridge.launch = AsyncMock(return_value=BridgeResult(ok=False, message="chrome not found"))
        manager = ConnectionManager(bridge, handshake=AsyncMock(), sleep=sleep)

        with pytest.raises(ConnectionFailure) as exc_info:
            await manager.connect(intent)

        assert exc_info.value.reason == FailureReason.LAUNCH_FAILED
        assert manager.state == ConnectionState.FAILED

    def test_launch_intent_requires_spec(self):
        with pytest.raises(ValueError):
            ConnectionIntent(mode=ConnectionMode.LAUNCH)


class TestNonInteractivePrompts:

    @pytest.mark.asyncio
    async def test_defaults(self):
        prompts = NonInteractivePrompts()
        candidates = [Endpoint(port=9222), Endpoint(port=9223)]
        assert await prompts.confirm("Remove?") is False
        assert await prompts.wait_for_browser(1) is True
        assert await prompts.select_candidate(candidates) is candidates[0]
