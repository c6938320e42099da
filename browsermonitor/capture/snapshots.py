"""DOM, screenshot and computed-style snapshots of the active page."""

import logging
from typing import Any, Callable, Dict, Optional

from playwright.async_api import Page

from ..models.capture import ArtifactResult
from .config import DOM_MAX_BYTES, DOM_TRUNCATION_MARKER, OutputPaths
from .files import write_atomic

logger = logging.getLogger(__name__)

OUTER_HTML_SCRIPT = "() => document.documentElement.outerHTML"

COMPUTED_STYLES_SCRIPT = """(selector) => {
    const el = document.querySelector(selector);
    if (!el) {
        return { error: `No element matching selector: ${selector}` };
    }
    const cs = window.getComputedStyle(el);
    const computed = {};
    for (let i = 0; i < cs.length; i++) {
        const prop = cs[i];
        computed[prop] = cs.getPropertyValue(prop);
    }
    return { selector, tagName: el.tagName.toLowerCase(), computed };
}"""


def truncate_dom(html: str, max_bytes: int = DOM_MAX_BYTES) -> bytes:
    """Encode the document, keeping exactly ``max_bytes`` plus the marker when too large."""
    data = html.encode("utf-8")
    if len(data) <= max_bytes:
        return data
    return data[:max_bytes] + DOM_TRUNCATION_MARKER.encode("utf-8")


class PageSnapshotter:
    """Captures the current document and viewport of the active page."""

    def __init__(self, paths: OutputPaths, page_provider: Callable[[], Optional[Page]],
                 dom_max_bytes: int = DOM_MAX_BYTES):
        self.paths = paths
        self.page_provider = page_provider
        self.dom_max_bytes = dom_max_bytes

    async def dump_dom(self) -> ArtifactResult:
        page = self.page_provider()
        if page is None:
            return ArtifactResult(name="dom", skipped=True)

        html = await page.evaluate(OUTER_HTML_SCRIPT)
        content = truncate_dom(html, self.dom_max_bytes)
        if len(content) != len(html.encode("utf-8")):
            logger.info(f"DOM truncated to {self.dom_max_bytes // 1024}KB")
        await write_atomic(self.paths.dom_html, content)
        logger.info(f"DOM (current HTML) -> {self.paths.dom_html}")
        return ArtifactResult(name="dom", path=self.paths.dom_html, count=len(content))

    async def dump_screenshot(self) -> ArtifactResult:
        page = self.page_provider()
        if page is None:
            return ArtifactResult(name="screenshot", skipped=True)

        image = await page.screenshot(type="png")
        await write_atomic(self.paths.screenshot, image)
        logger.info(f"Screenshot -> {self.paths.screenshot}")
        return ArtifactResult(name="screenshot", path=self.paths.screenshot, count=len(image))

    async def computed_styles(self, selector: str) -> Dict[str, Any]:
        """Computed CSS of the first element matching ``selector``.

        Returns:
            ``{selector, tagName, computed}`` or ``{error}``
        """
        page = self.page_provider()
        if page is None:
            return {"error": "No page"}
        try:
            return await page.evaluate(COMPUTED_STYLES_SCRIPT, selector)
        except Exception as e:
            return {"error": str(e)}
