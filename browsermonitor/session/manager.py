"""Session manager: which page is observed, and what happens to it.

This module provides the SessionManager class that owns the control channel
for the session, keeps the capture engine attached to exactly one page,
switches that page on request and reports tabs the browser opens without
attaching to them.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from playwright.async_api import BrowserContext, Page

from ..capture.dump import DumpManager
from ..capture.engine import CaptureEngine
from ..capture.snapshots import PageSnapshotter
from ..connection.channel import ControlChannel
from ..models.capture import BufferStats, DumpReport, TabInfo
from .state import SessionState, SessionStatus
from .tabs import describe, filter_user_pages, page_url

logger = logging.getLogger(__name__)

CONNECTED_CONSOLE = "CONNECTED - Listening for console output"
CONNECTED_NETWORK = "CONNECTED - Listening for network requests"
SWITCHED_TITLE = "TAB SWITCHED"


class TabSelectionError(ValueError):
    """A tab index outside the current listing."""
    pass


class SessionManager:
    """Tracks the monitored page of one session."""

    def __init__(
        self,
        channel: ControlChannel,
        engine: CaptureEngine,
        dump_manager: DumpManager,
        state: SessionState,
        snapshotter: Optional[PageSnapshotter] = None,
    ):
        """Initialize the session manager.

        Args:
            channel: Control channel, owned by this session from now on
            engine: Capture engine to attach to the active page
            dump_manager: Dump lifecycle over the engine's buffer
            state: Session flags
            snapshotter: Computed-style and DOM access for the active page
        """
        self.channel = channel
        self.engine = engine
        self.dump_manager = dump_manager
        self.state = state
        self.snapshotter = snapshotter

        self.active_page: Optional[Page] = None
        self.new_tabs: List[str] = []
        self._watched: List[BrowserContext] = []
        self.switch_count = 0

    @property
    def buffer(self):
        return self.engine.buffer

    async def start(self, page: Page, announce: bool = True) -> None:
        """Attach capture to the first page and start watching for new tabs."""
        self._attach(page)
        if announce:
            self.buffer.console_separator(CONNECTED_CONSOLE)
            self.buffer.network_separator(CONNECTED_NETWORK)
        self.watch_new_tabs()
        logger.info(f"Monitoring {describe(page)}")

    def user_pages(self) -> List[Page]:
        return filter_user_pages(self.channel.pages())

    def list_tabs(self) -> List[TabInfo]:
        """User tabs with 1-based indices, the monitored one flagged."""
        return [
            TabInfo(index=i, url=page_url(page), active=page is self.active_page)
            for i, page in enumerate(self.user_pages(), start=1)
        ]

    async def switch(self, target: Union[int, Page]) -> Page:
        """Move capture to another tab.

        The previous page is fully detached before the new one is attached.

        Args:
            target: 1-based index from ``list_tabs`` or the page itself

        Raises:
            TabSelectionError: If the index is out of range
        """
        page = self._resolve(target)
        if page is self.active_page:
            return page

        self._attach(page)
        self.switch_count += 1
        title = f"{SWITCHED_TITLE} - {describe(page)}"
        self.buffer.console_separator(title)
        self.buffer.network_separator(title)
        logger.info(f"Switched to tab: {describe(page)}")
        return page

    def watch_new_tabs(self) -> None:
        """Record tabs opened in any known context; they are never attached."""
        for context in self.channel.contexts:
            if context in self._watched:
                continue
            context.on("page", self._on_new_page)
            self._watched.append(context)

    def unwatch_new_tabs(self) -> None:
        for context in self._watched:
            try:
                context.remove_listener("page", self._on_new_page)
            except Exception as e:
                logger.debug(f"Could not remove page listener: {e}")
        self._watched = []

    def detach(self) -> None:
        self.engine.detach()
        self.active_page = None

    async def dump(self) -> DumpReport:
        return await self.dump_manager.dump()

    def clear(self) -> BufferStats:
        return self.dump_manager.clear()

    def status(self) -> SessionStatus:
        try:
            tab_count = len(self.user_pages())
        except Exception as e:
            logger.debug(f"Cannot list pages: {e}")
            tab_count = 0
        return SessionStatus(
            capture_mode=self.state.capture_mode,
            paused=self.state.paused,
            closing=self.state.closing,
            current_url=page_url(self.active_page) if self.active_page else None,
            tab_count=tab_count,
            monitored_tabs=1 if self.engine.attached else 0,
            stats=self.dump_manager.stats(),
            in_flight=self.engine.pending_requests,
            new_tabs=list(self.new_tabs),
        )

    async def computed_styles(self, selector: str) -> Dict[str, Any]:
        if self.snapshotter is None:
            return {"error": "Computed styles are not available"}
        return await self.snapshotter.computed_styles(selector)

    def _attach(self, page: Page) -> None:
        self.engine.attach(page)
        self.active_page = page

    def _resolve(self, target: Union[int, Page]) -> Page:
        if not isinstance(target, int):
            return target
        pages = self.user_pages()
        if not 1 <= target <= len(pages):
            raise TabSelectionError(f"Tab {target} does not exist (1-{len(pages)})")
        return pages[target - 1]

    def _on_new_page(self, page: Page) -> None:
        url = page_url(page)
        self.new_tabs.append(url)
        logger.info(f"New tab: {url or 'about:blank'}")

    def __repr__(self) -> str:
        return f"SessionManager(active={describe(self.active_page) if self.active_page else None})"
