"""Capture engine: binds the event handlers to one page at a time.

This module provides the CaptureEngine class that subscribes the console and
network handlers to a Playwright page, isolates handler failures and
guarantees that at most one page is being recorded at any instant.
"""

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from playwright.async_api import Page

from ..errors import CaptureFatal, is_stale_context_error
from .buffer import LogBuffer
from .config import CaptureSettings
from .console_observer import handle_console, handle_page_error
from .context import CaptureContext
from .network_observer import handle_request, handle_request_failed, handle_response

logger = logging.getLogger(__name__)

SYNC_HANDLERS: Dict[str, Callable[[CaptureContext, Any], None]] = {
    "pageerror": handle_page_error,
    "request": handle_request,
    "requestfailed": handle_request_failed,
}

ASYNC_HANDLERS: Dict[str, Callable[[CaptureContext, Any], Awaitable[None]]] = {
    "console": handle_console,
    "response": handle_response,
}

CAPTURED_EVENTS = ("console", "pageerror", "request", "response", "requestfailed")


class CaptureEngine:
    """Attaches capture handlers to a single page."""

    def __init__(
        self,
        buffer: LogBuffer,
        settings: Optional[CaptureSettings] = None,
        is_paused: Optional[Callable[[], bool]] = None,
        on_fatal: Optional[Callable[[CaptureFatal], None]] = None,
        monotonic: Callable[[], float] = time.monotonic,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the engine.

        Args:
            buffer: Buffer receiving everything captured
            settings: Filtering and truncation settings
            is_paused: Returns True while recording must not happen
            on_fatal: Called with CaptureFatal when a handler fails for a
                reason other than a stale page context
            monotonic: Clock used for request durations
            wall_clock: Clock used for log timestamps
        """
        self.buffer = buffer
        self.settings = settings or CaptureSettings()
        self.is_paused = is_paused
        self.on_fatal = on_fatal
        self.monotonic = monotonic
        self.wall_clock = wall_clock

        self.page: Optional[Page] = None
        self.context: Optional[CaptureContext] = None
        self._listeners: Dict[str, Callable] = {}

        self.attach_count = 0
        self.detach_count = 0
        self.stale_errors = 0

    @property
    def attached(self) -> bool:
        return self.page is not None

    def attach(self, page: Page, label: str = "") -> CaptureContext:
        """Start capturing a page, detaching the previous one first.

        Args:
            page: Page to observe
            label: Prefix added to console lines of this page

        Returns:
            The capture context of the new attachment
        """
        if self.page is not None:
            self.detach()

        context = CaptureContext(
            self.buffer,
            settings=self.settings,
            is_paused=self.is_paused,
            label=label,
            monotonic=self.monotonic,
            wall_clock=self.wall_clock,
        )

        listeners: Dict[str, Callable] = {}
        for event, handler in SYNC_HANDLERS.items():
            listeners[event] = self._guard_sync(event, handler, context)
        for event, handler in ASYNC_HANDLERS.items():
            listeners[event] = self._guard_async(event, handler, context)

        for event in CAPTURED_EVENTS:
            page.on(event, listeners[event])

        self.page = page
        self.context = context
        self._listeners = listeners
        self.attach_count += 1
        logger.debug(f"Capture attached to {self._page_url(page)}")
        return context

    def detach(self) -> bool:
        """Stop capturing. Returns False if nothing was attached."""
        if self.page is None:
            return False

        page, context, listeners = self.page, self.context, self._listeners
        self.page = None
        self.context = None
        self._listeners = {}

        context.close()
        for event, listener in listeners.items():
            try:
                page.remove_listener(event, listener)
            except Exception as e:
                # The page may already be closed; its listeners went with it
                logger.debug(f"Could not remove {event} listener: {e}")

        self.detach_count += 1
        logger.debug(f"Capture detached from {self._page_url(page)}")
        return True

    @property
    def pending_requests(self) -> int:
        return len(self.context.in_flight) if self.context is not None else 0

    def _guard_sync(self, event: str, handler, context: CaptureContext):
        def listener(payload) -> None:
            try:
                handler(context, payload)
            except Exception as e:
                self._handle_error(event, e)
        return listener

    def _guard_async(self, event: str, handler, context: CaptureContext):
        async def listener(payload) -> None:
            try:
                await handler(context, payload)
            except Exception as e:
                self._handle_error(event, e)
        return listener

    def _handle_error(self, event: str, error: Exception) -> None:
        if is_stale_context_error(error):
            self.stale_errors += 1
            logger.debug(f"Ignoring stale context error in {event} handler: {error}")
            return

        fatal = CaptureFatal(event, error)
        logger.error(f"Fatal capture error: {fatal}")
        if self.on_fatal is None:
            raise fatal from error
        self.on_fatal(fatal)

    @staticmethod
    def _page_url(page: Page) -> str:
        try:
            return page.url
        except Exception:
            return "<closed page>"

    def __repr__(self) -> str:
        return (
            f"CaptureEngine(attached={self.attached}, attaches={self.attach_count}, "
            f"detaches={self.detach_count})"
        )
