"""Connection manager: discover, connect, diagnose, remediate.

This module provides the ConnectionStateMachine, an explicit transition
table for the connection lifecycle, and the ConnectionManager that drives
it to turn a ConnectionIntent into a ControlChannel:

    IDLE -> DISCOVERING -> CONNECTING -> CONNECTED
    CONNECTING -> DIAGNOSING -> REMEDIATING -> CONNECTING   (once)
    any failure -> FAILED

Handshakes are retried a fixed number of times before diagnostics run.
Only a forwarding conflict is remediated, and only after the operator
confirms; every other outcome ends in FAILED with guidance.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

from ..errors import ConnectionFailure, FailureReason, HandshakeError, InvalidTransition
from ..models.connection import ConnectionIntent, ConnectionMode, Endpoint, LaunchSpec
from .bridge import BridgeResult, PlatformBridge
from .channel import ControlChannel
from .diagnostics import Diagnosis, DiagnosisKind, diagnose, launch_hint
from .handshake import CdpHandshake

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DIAGNOSING = "diagnosing"
    REMEDIATING = "remediating"
    FAILED = "failed"


class Transition(str, Enum):
    BEGIN = "begin"
    ENDPOINT_READY = "endpoint_ready"
    DISCOVERY_FAILED = "discovery_failed"
    HANDSHAKE_OK = "handshake_ok"
    RETRIES_EXHAUSTED = "retries_exhausted"
    GIVE_UP = "give_up"
    CONFLICT_FOUND = "conflict_found"
    UNFIXABLE = "unfixable"
    REMEDIATED = "remediated"
    ABANDON = "abandon"


class ConnectionStateMachine:
    """Explicit transition table for the connection lifecycle."""

    TRANSITIONS: Dict[Transition, Tuple[ConnectionState, ConnectionState]] = {
        Transition.BEGIN: (ConnectionState.IDLE, ConnectionState.DISCOVERING),
        Transition.ENDPOINT_READY: (ConnectionState.DISCOVERING, ConnectionState.CONNECTING),
        Transition.DISCOVERY_FAILED: (ConnectionState.DISCOVERING, ConnectionState.FAILED),
        Transition.HANDSHAKE_OK: (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
        Transition.RETRIES_EXHAUSTED: (ConnectionState.CONNECTING, ConnectionState.DIAGNOSING),
        Transition.GIVE_UP: (ConnectionState.CONNECTING, ConnectionState.FAILED),
        Transition.CONFLICT_FOUND: (ConnectionState.DIAGNOSING, ConnectionState.REMEDIATING),
        Transition.UNFIXABLE: (ConnectionState.DIAGNOSING, ConnectionState.FAILED),
        Transition.REMEDIATED: (ConnectionState.REMEDIATING, ConnectionState.CONNECTING),
        Transition.ABANDON: (ConnectionState.REMEDIATING, ConnectionState.FAILED),
    }

    TERMINAL = (ConnectionState.CONNECTED, ConnectionState.FAILED)

    def __init__(self):
        self.state = ConnectionState.IDLE
        self.history: List[Tuple[Transition, ConnectionState, ConnectionState]] = []

    def can_fire(self, transition: Transition) -> bool:
        source, _ = self.TRANSITIONS[transition]
        return self.state == source

    def fire(self, transition: Transition) -> ConnectionState:
        """Apply a transition.

        Raises:
            InvalidTransition: If the transition does not start from the current state
        """
        source, target = self.TRANSITIONS[transition]
        if self.state != source:
            raise InvalidTransition(
                f"{transition.value} is not allowed from {self.state.value} (requires {source.value})"
            )
        self.history.append((transition, source, target))
        logger.debug(f"Connection {source.value} -> {target.value} ({transition.value})")
        self.state = target
        return target

    @property
    def is_terminal(self) -> bool:
        return self.state in self.TERMINAL

    def visited(self, state: ConnectionState) -> bool:
        return any(target == state for _, _, target in self.history)


class ConnectionSettings(BaseModel):
    """Timing and retry settings for connecting."""
    retry_delay_s: float = Field(default=1.5, ge=0)
    handshake_timeout_s: float = Field(default=3.0, gt=0)
    discovery_polls: int = Field(default=30, ge=1, description="Candidate scans before giving up")
    discovery_interval_s: float = Field(default=2.0, ge=0)
    bind_wait_polls: int = Field(default=10, ge=1, description="Checks for the browser's bind address")
    bind_wait_interval_s: float = Field(default=0.5, ge=0)


class OperatorPrompts(Protocol):
    """Questions the connection manager may need to ask."""

    async def confirm(self, question: str) -> bool:
        ...

    async def wait_for_browser(self, poll: int) -> bool:
        """Called while no candidate is found; False aborts discovery."""
        ...

    async def select_candidate(self, candidates: List[Endpoint]) -> Optional[Endpoint]:
        ...


class NonInteractivePrompts:
    """Prompts for unattended runs: never confirms, keeps waiting, picks the first candidate."""

    async def confirm(self, question: str) -> bool:
        logger.info(f"Not confirmed (non-interactive): {question}")
        return False

    async def wait_for_browser(self, poll: int) -> bool:
        return True

    async def select_candidate(self, candidates: List[Endpoint]) -> Optional[Endpoint]:
        return candidates[0] if candidates else None


Handshake = Callable[..., Awaitable[ControlChannel]]


class ConnectionManager:
    """Turns a ConnectionIntent into a live ControlChannel."""

    def __init__(
        self,
        bridge: PlatformBridge,
        handshake: Optional[Handshake] = None,
        prompts: Optional[OperatorPrompts] = None,
        settings: Optional[ConnectionSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the manager.

        Args:
            bridge: Platform bridge for discovery, launch and forwarding
            handshake: Single-attempt connector; CdpHandshake by default
            prompts: Operator interaction; non-interactive by default
            settings: Retry and timing settings
            sleep: Awaitable delay, replaceable in tests
        """
        self.bridge = bridge
        self.settings = settings or ConnectionSettings()
        self.handshake = handshake or CdpHandshake(timeout=self.settings.handshake_timeout_s)
        self.prompts = prompts or NonInteractivePrompts()
        self._sleep = sleep

        self.machine = ConnectionStateMachine()
        self.attempts = 0
        self.diagnosis: Optional[Diagnosis] = None
        self.failure: Optional[ConnectionFailure] = None
        self.launched_pid: Optional[int] = None
        self.installed_forward: Optional[int] = None

    @property
    def state(self) -> ConnectionState:
        return self.machine.state

    async def connect(self, intent: ConnectionIntent) -> ControlChannel:
        """Run the state machine to completion.

        Args:
            intent: What to connect to and how

        Returns:
            Connected control channel

        Raises:
            ConnectionFailure: With reason and guidance when the machine ends in FAILED
        """
        self.machine.fire(Transition.BEGIN)
        endpoint = await self._discover(intent)
        self.machine.fire(Transition.ENDPOINT_READY)

        remediated = False
        while True:
            channel = await self._connect_with_retries(endpoint, intent.retry_budget)
            if channel is not None:
                self.machine.fire(Transition.HANDSHAKE_OK)
                return channel

            if remediated:
                self._fail(
                    Transition.GIVE_UP,
                    FailureReason.CONFLICT_UNRESOLVED,
                    f"Still cannot connect to {endpoint} after removing the port proxy",
                    self.diagnosis.guidance if self.diagnosis else None,
                )
            if not intent.diagnostics_enabled:
                self._fail(
                    Transition.GIVE_UP,
                    FailureReason.HANDSHAKE_TIMEOUT,
                    f"Cannot connect to {endpoint.url} after {intent.retry_budget} attempts",
                    launch_hint(endpoint.port),
                )

            self.machine.fire(Transition.RETRIES_EXHAUSTED)
            self.diagnosis = await diagnose(self.bridge, endpoint)
            logger.info(f"Diagnosis: {self.diagnosis.kind.value} - {self.diagnosis.summary}")

            if not self.diagnosis.auto_fixable:
                reason = (
                    FailureReason.HANDSHAKE_TIMEOUT
                    if self.diagnosis.kind == DiagnosisKind.NOTHING_LISTENING
                    else FailureReason.UNREACHABLE
                )
                self._fail(Transition.UNFIXABLE, reason, self.diagnosis.summary, self.diagnosis.guidance)

            self.machine.fire(Transition.CONFLICT_FOUND)
            endpoint = await self._remediate(intent, endpoint, self.diagnosis)
            self.machine.fire(Transition.REMEDIATED)
            remediated = True

    async def release(self) -> None:
        """Remove the forwarding rule this manager installed, if any."""
        if self.installed_forward is None:
            return
        port, self.installed_forward = self.installed_forward, None
        result = await self.bridge.remove_forward(port)
        if not result.ok:
            logger.warning(f"Could not remove port proxy on {port}: {result.message}")

    async def _discover(self, intent: ConnectionIntent) -> Endpoint:
        if intent.mode == ConnectionMode.LAUNCH:
            return await self._launch_endpoint(intent.launch)

        if intent.endpoint_hint is not None:
            return intent.endpoint_hint

        project_profile = intent.launch.profile_ref.name if intent.launch is not None else None
        polls = self.settings.discovery_polls
        candidates: List[Endpoint] = []
        for poll in range(1, polls + 1):
            candidates = await self.bridge.list_candidates(project_profile)
            if poll == 1 and intent.launch is not None and not any(c.project for c in candidates):
                if await self.prompts.confirm("No browser is running with this project's profile. Launch one?"):
                    return await self._launch_endpoint(intent.launch)
            if candidates or poll == polls:
                break
            if not await self.prompts.wait_for_browser(poll):
                self._fail(Transition.DISCOVERY_FAILED, FailureReason.USER_ABORTED, "Waiting for a browser was aborted")
            await self._sleep(self.settings.discovery_interval_s)

        if not candidates:
            self._fail(
                Transition.DISCOVERY_FAILED,
                FailureReason.NO_CANDIDATES,
                "No browser with remote debugging was found",
                launch_hint(9222),
            )

        project = [c for c in candidates if c.project]
        if project:
            selected = project[0]
            logger.info(f"Found the browser with this project's profile on port {selected.port}")
        elif len(candidates) == 1:
            selected = candidates[0]
        else:
            selected = await self.prompts.select_candidate(candidates)
            if selected is None:
                self._fail(Transition.DISCOVERY_FAILED, FailureReason.USER_ABORTED, "No browser selected")

        if self.bridge.requires_forwarding and not selected.reachable:
            await self._offer_forward(selected)
        return selected

    async def _launch_endpoint(self, spec: LaunchSpec) -> Endpoint:
        port = await self.bridge.choose_port(spec.port)
        result = await self._launch(spec.with_port(port))
        if not result.ok:
            self._fail(
                Transition.DISCOVERY_FAILED,
                FailureReason.LAUNCH_FAILED,
                f"Could not launch the browser: {result.message}",
                "Set chrome_path in the configuration or install Chrome.",
            )
        return Endpoint(host=await self.bridge.resolve_host(), port=port)

    async def _offer_forward(self, endpoint: Endpoint) -> None:
        # An existing rule is left to diagnosis if the handshake fails
        if any(rule.listen_port == endpoint.port for rule in await self.bridge.forward_rules()):
            return
        question = (
            f"The browser on port {endpoint.port} is only reachable through a port proxy. "
            f"Create one?"
        )
        if await self.prompts.confirm(question):
            await self._forward(endpoint.port)

    async def _connect_with_retries(self, endpoint: Endpoint, budget: int) -> Optional[ControlChannel]:
        for attempt in range(1, budget + 1):
            self.attempts += 1
            try:
                return await self.handshake(endpoint, pid=self.launched_pid)
            except HandshakeError as e:
                logger.info(f"Connection attempt {attempt}/{budget} to {endpoint} failed: {e}")
            if attempt < budget:
                await self._sleep(self.settings.retry_delay_s)
        return None

    async def _remediate(self, intent: ConnectionIntent, endpoint: Endpoint, diagnosis: Diagnosis) -> Endpoint:
        question = f"{diagnosis.summary}. Remove the port proxy and restart the browser?"
        if not await self.prompts.confirm(question):
            self._fail(
                Transition.ABANDON,
                FailureReason.CONFLICT_UNRESOLVED,
                f"Port proxy conflict on port {endpoint.port} left in place",
                diagnosis.guidance,
            )

        port = endpoint.port
        removal = await self.bridge.remove_forward(port)
        if not removal.ok:
            self._fail(
                Transition.ABANDON,
                FailureReason.CONFLICT_UNRESOLVED,
                f"Could not remove the port proxy on {port}: {removal.message}",
                "Run the monitor from an elevated prompt or remove the rule with "
                f"'netsh interface portproxy delete v4tov4 listenport={port} listenaddress=0.0.0.0'.",
            )
        if self.installed_forward == port:
            self.installed_forward = None

        if intent.launch is not None:
            await self.bridge.terminate(port)
            result = await self._launch(intent.launch.with_port(port))
            if not result.ok:
                self._fail(
                    Transition.ABANDON,
                    FailureReason.LAUNCH_FAILED,
                    f"Could not restart the browser: {result.message}",
                )
        elif self.bridge.requires_forwarding:
            await self._forward(port)

        return Endpoint(host=await self.bridge.resolve_host(), port=port)

    async def _launch(self, spec: LaunchSpec) -> BridgeResult:
        # A leftover rule on the port keeps the browser from binding it
        await self.bridge.remove_forward(spec.port)
        result = await self.bridge.launch(spec)
        if not result.ok:
            return result
        self.launched_pid = result.pid
        if self.bridge.requires_forwarding:
            await self._forward(spec.port)
        return result

    async def _forward(self, port: int) -> None:
        bind = None
        for _ in range(self.settings.bind_wait_polls):
            bind = await self.bridge.bind_address(port)
            if bind:
                break
            await self._sleep(self.settings.bind_wait_interval_s)

        result = await self.bridge.install_forward(port, bind or "127.0.0.1")
        if result.ok:
            self.installed_forward = port
        else:
            logger.warning(f"Port forwarding for {port} not installed: {result.message}")

    def _fail(self, transition: Transition, reason: FailureReason, message: str,
              guidance: Optional[str] = None) -> None:
        self.machine.fire(transition)
        self.failure = ConnectionFailure(reason, message, guidance=guidance, diagnosis=self.diagnosis)
        logger.error(f"Connection failed: {self.failure}")
        raise self.failure

    def __repr__(self) -> str:
        return f"ConnectionManager(state={self.state.value}, attempts={self.attempts})"
