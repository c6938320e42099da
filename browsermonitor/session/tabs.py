"""Filtering of browser pages down to the ones an operator cares about."""

from typing import List, Sequence, TypeVar

from playwright.async_api import Page

INTERNAL_PREFIXES = (
    "chrome://",
    "devtools://",
    "chrome-extension://",
    "moz-extension://",
    "extension://",
)

DEVTOOLS_MARKERS = (
    "react-devtools",
    "redux-devtools",
    "__react_devtools__",
)

BLANK_URL = "about:blank"

P = TypeVar("P")


def page_url(page) -> str:
    try:
        return page.url or ""
    except Exception:
        return ""


def is_internal_url(url: str) -> bool:
    """True for browser-internal, devtools and extension pages."""
    lowered = url.lower()
    if lowered.startswith(INTERNAL_PREFIXES):
        return True
    return any(marker in lowered for marker in DEVTOOLS_MARKERS)


def filter_user_pages(pages: Sequence[P]) -> List[P]:
    """Keep the pages a user opened.

    ``about:blank`` is kept only when nothing else is left. When filtering
    would leave nothing from a non-empty list, the raw list is returned.
    """
    raw = list(pages)
    candidates = [p for p in raw if not is_internal_url(page_url(p))]
    non_blank = [p for p in candidates if page_url(p) != BLANK_URL]
    filtered = non_blank or candidates
    if not filtered and raw:
        return raw
    return filtered


def describe(page: Page) -> str:
    return page_url(page) or "<closed page>"
