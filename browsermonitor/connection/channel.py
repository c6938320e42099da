"""Live control channel to a browser connected over CDP."""

import logging
from typing import List, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright

from ..models.connection import Endpoint

logger = logging.getLogger(__name__)


class ControlChannel:
    """Owns the Playwright driver and the CDP-connected browser.

    Closed exactly once, either disconnecting (browser keeps running) or
    asking the browser itself to close.
    """

    def __init__(self, playwright: Playwright, browser: Browser, endpoint: Endpoint,
                 pid: Optional[int] = None):
        self.playwright = playwright
        self.browser = browser
        self.endpoint = endpoint
        self.pid = pid
        self.closed = False

    @property
    def contexts(self) -> List[BrowserContext]:
        return list(self.browser.contexts)

    @property
    def default_context(self) -> Optional[BrowserContext]:
        contexts = self.contexts
        return contexts[0] if contexts else None

    def pages(self) -> List[Page]:
        """Every open page across all contexts, in browser order."""
        pages: List[Page] = []
        for context in self.contexts:
            pages.extend(context.pages)
        return pages

    async def new_page(self) -> Page:
        context = self.default_context
        if context is None:
            context = await self.browser.new_context()
        return await context.new_page()

    @property
    def is_connected(self) -> bool:
        return not self.closed and self.browser.is_connected()

    async def close(self, close_browser: bool = False) -> None:
        """Release the channel.

        Args:
            close_browser: Close the browser too instead of leaving it running
        """
        if self.closed:
            return
        self.closed = True

        if close_browser:
            try:
                session = await self.browser.new_browser_cdp_session()
                await session.send("Browser.close")
                logger.info("Browser closed")
            except Exception as e:
                logger.warning(f"Could not close browser: {e}")

        try:
            # For a CDP connection this disconnects and leaves the browser alone
            await self.browser.close()
        except Exception as e:
            logger.debug(f"Error disconnecting from browser: {e}")

        try:
            await self.playwright.stop()
        except Exception as e:
            logger.debug(f"Error stopping Playwright: {e}")
        logger.info(f"Control channel to {self.endpoint} released")

    def __repr__(self) -> str:
        return f"ControlChannel(endpoint={self.endpoint}, closed={self.closed})"
