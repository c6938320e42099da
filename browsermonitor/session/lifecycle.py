"""Single-shot shutdown coordination.

Every exit path (signals, the quit and kill commands, the hard timeout, a
fatal capture error, a browser disconnect) funnels into
ShutdownCoordinator.trigger. The first trigger runs the registered steps in
order; later triggers share the same task and do nothing else.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..errors import CaptureFatal, is_stale_context_error
from .state import SessionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShutdownRequest:
    """Why the session is ending and how."""
    reason: str
    exit_code: int = 0
    close_browser: bool = False


ShutdownStep = Callable[[ShutdownRequest], Awaitable[None]]


class ShutdownCoordinator:
    """Runs the shutdown sequence exactly once."""

    def __init__(self, state: SessionState, hard_timeout_s: Optional[float] = None):
        """Initialize the coordinator.

        Args:
            state: Session flags; ``closing`` is set on the first trigger
            hard_timeout_s: Seconds after which the session ends on its own
        """
        self.state = state
        self.hard_timeout_s = hard_timeout_s
        self.steps: List[Tuple[str, ShutdownStep]] = []
        self.request: Optional[ShutdownRequest] = None
        self.runs = 0

        self._task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._signals: List[int] = []

    def add_step(self, name: str, step: ShutdownStep) -> None:
        """Append a step. Steps run in registration order."""
        self.steps.append((name, step))

    @property
    def triggered(self) -> bool:
        return self._task is not None

    def trigger(self, reason: str, exit_code: int = 0, close_browser: bool = False) -> asyncio.Task:
        """Request shutdown.

        Args:
            reason: Human readable cause, logged once
            exit_code: Process exit code for this shutdown
            close_browser: Close the browser rather than leave it running

        Returns:
            The shutdown task, the same one for every caller
        """
        if self._task is not None:
            logger.debug(f"Shutdown already in progress, ignoring: {reason}")
            return self._task

        self.state.mark_closing()
        self.request = ShutdownRequest(reason=reason, exit_code=exit_code, close_browser=close_browser)
        logger.info(f"Shutting down: {reason}")
        self._task = asyncio.get_running_loop().create_task(self._run(self.request))
        return self._task

    async def wait(self) -> ShutdownRequest:
        """Block until a shutdown has completed."""
        await self._done.wait()
        return self.request

    @property
    def exit_code(self) -> int:
        return self.request.exit_code if self.request else 0

    def install_signal_handlers(self, signals: Tuple[int, ...] = (signal.SIGINT, signal.SIGTERM)) -> None:
        loop = asyncio.get_running_loop()
        for sig in signals:
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Signal handler for {sig} not installed: {e}")

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals = []

    def arm_hard_timeout(self) -> None:
        if not self.hard_timeout_s or self.hard_timeout_s <= 0:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(
            self.hard_timeout_s,
            self.trigger,
            f"hard timeout of {self.hard_timeout_s:g}s reached",
        )

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        """Event loop exception handler.

        Stale page context errors from torn-down pages are expected while
        tabs close and are only logged; anything else ends the session.
        """
        error = context.get("exception")
        if error is not None and is_stale_context_error(error):
            logger.debug(f"Ignoring stale context error: {error}")
            return
        message = context.get("message", "Unhandled error")
        logger.error(f"{message}: {error!r}" if error else message)
        self.trigger(f"unhandled error: {error or message}", exit_code=1)

    def on_capture_fatal(self, fatal: CaptureFatal) -> None:
        self.trigger(str(fatal), exit_code=1)

    def _on_signal(self, sig: int) -> None:
        name = signal.Signals(sig).name
        if self.triggered:
            logger.warning(f"{name} received again, shutdown already in progress")
            return
        self.trigger(f"{name} received")

    async def _run(self, request: ShutdownRequest) -> None:
        self.runs += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        try:
            for name, step in self.steps:
                try:
                    await step(request)
                except Exception as e:
                    logger.error(f"Shutdown step '{name}' failed: {e}")
        finally:
            self._done.set()
            logger.info(f"Shutdown complete (exit code {request.exit_code})")

    def __repr__(self) -> str:
        reason = self.request.reason if self.request else None
        return f"ShutdownCoordinator(steps={len(self.steps)}, reason={reason!r})"
