"""Single connection attempt to a CDP endpoint."""

import logging
from typing import Callable, Optional

from playwright.async_api import async_playwright

from ..errors import HandshakeError
from ..models.connection import Endpoint
from .bridge import DEFAULT_PROBE_TIMEOUT, fetch_version
from .channel import ControlChannel

logger = logging.getLogger(__name__)


class CdpHandshake:
    """Probes ``/json/version`` and connects Playwright over CDP."""

    def __init__(self, timeout: float = DEFAULT_PROBE_TIMEOUT,
                 playwright_factory: Callable = async_playwright):
        """Initialize the handshake.

        Args:
            timeout: Seconds allowed for the probe and for the CDP connect
            playwright_factory: Returns a Playwright context manager
        """
        self.timeout = timeout
        self.playwright_factory = playwright_factory

    async def __call__(self, endpoint: Endpoint, pid: Optional[int] = None) -> ControlChannel:
        """Connect once.

        Raises:
            HandshakeError: If the endpoint did not answer or refused CDP
        """
        info = await fetch_version(endpoint, self.timeout)
        if info is None:
            raise HandshakeError(f"No CDP endpoint answered at {endpoint.url}")

        playwright = await self.playwright_factory().start()
        try:
            browser = await playwright.chromium.connect_over_cdp(
                endpoint.url, timeout=self.timeout * 1000
            )
        except Exception as e:
            await playwright.stop()
            raise HandshakeError(f"CDP connect to {endpoint.url} failed: {e}") from e

        label = info.get("Browser")
        logger.info(f"Connected to {label or 'browser'} at {endpoint.url}")
        connected = endpoint.model_copy(update={"reachable": True, "label": label or endpoint.label})
        return ControlChannel(playwright, browser, connected, pid=pid)
