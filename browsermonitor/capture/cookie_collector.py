"""Cookie collector for the dump's per-domain cookie documents.

This module provides the CookieCollector class that reads every cookie of
the active page's browser context, groups them by domain (leading dot
removed) and writes one document per domain.
"""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import Page

from ..models.capture import ArtifactResult, CookieDocument, CookieEntry
from .buffer import iso_timestamp
from .config import OutputPaths
from .files import reset_dir, write_atomic

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def safe_domain_filename(domain: str) -> str:
    return UNSAFE_FILENAME_CHARS.sub("_", domain)


def format_expiry(expires: Optional[float]) -> str:
    """ISO expiry for persistent cookies, 'Session' otherwise."""
    if expires is None or expires <= 0:
        return "Session"
    return datetime.fromtimestamp(expires, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def group_by_domain(cookies: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for cookie in cookies:
        domain = (cookie.get("domain") or "").lstrip(".")
        grouped.setdefault(domain, []).append(cookie)
    return grouped


class CookieCollector:
    """Writes cookie documents for the page returned by ``page_provider``."""

    def __init__(self, paths: OutputPaths, page_provider: Callable[[], Optional[Page]]):
        """Initialize cookie collector.

        Args:
            paths: Output layout
            page_provider: Returns the currently active page, or None
        """
        self.paths = paths
        self.page_provider = page_provider

    def build_documents(self, cookies: List[Dict[str, Any]], current_url: str) -> List[CookieDocument]:
        timestamp = iso_timestamp()
        documents = []
        for domain, domain_cookies in group_by_domain(cookies).items():
            documents.append(CookieDocument(
                timestamp=timestamp,
                domain=domain,
                current_url=current_url,
                count=len(domain_cookies),
                cookies=[
                    CookieEntry(
                        name=c.get("name", ""),
                        value=c.get("value", ""),
                        domain=c.get("domain", ""),
                        path=c.get("path", "/"),
                        expires=format_expiry(c.get("expires")),
                        http_only=bool(c.get("httpOnly", False)),
                        secure=bool(c.get("secure", False)),
                        same_site=c.get("sameSite"),
                    )
                    for c in domain_cookies
                ],
            ))
        return documents

    async def dump(self) -> ArtifactResult:
        """Write one JSON document per cookie domain."""
        page = self.page_provider()
        if page is None:
            logger.info("No page to dump cookies from")
            return ArtifactResult(name="cookies", skipped=True)

        cookies = await page.context.cookies()
        if not cookies:
            logger.info("No cookies found")
            return ArtifactResult(name="cookies", skipped=True, path=self.paths.cookies_dir)

        documents = self.build_documents(cookies, page.url)
        await reset_dir(self.paths.cookies_dir)
        for document in documents:
            target = self.paths.cookies_dir / f"{safe_domain_filename(document.domain)}.json"
            await write_atomic(target, json.dumps(document.to_document(), indent=2))

        logger.info(f"{len(cookies)} cookies ({len(documents)} domains) -> {self.paths.cookies_dir}")
        return ArtifactResult(name="cookies", path=self.paths.cookies_dir, count=len(cookies))
