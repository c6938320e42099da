"""Settings and output locations for the capture engine.

This module provides the plain settings objects the capture, buffer and dump
components are built from. The CLI configuration layer produces them; tests
construct them directly.
"""

import re
from pathlib import Path
from typing import List, Pattern

from pydantic import BaseModel, Field, field_validator


DEFAULT_IGNORE_PATTERNS = [
    "IndexedDBStorage",
    "BackendSync",
    "heartbeat",
    "Sending ping",
    "Received pong",
]

DEFAULT_HMR_PATTERNS = [
    r"\[vite\] hot updated",
    r"\[vite\] page reloaded",
    r"\[vite\] connected",
]

# Failed requests whose URL contains one of these are kept out of the console log
DEFAULT_FAILURE_CONSOLE_IGNORE = ["oauth2/sign_in"]

BODY_LIMIT_BYTES = 100_000
BODY_TRUNCATION_MARKER = "\n... [TRUNCATED]"
BODY_TIMEOUT_S = 10.0

DOM_MAX_BYTES = 2 * 1024 * 1024
DOM_TRUNCATION_MARKER = "\n\n<!-- ... TRUNCATED for size ... -->\n"

TEXT_CONTENT_MARKERS = ("json", "text", "javascript", "xml")
# Responses that stay open; their body is never awaited
STREAMING_CONTENT_TYPES = ("text/event-stream", "multipart/x-mixed-replace")

OUTPUT_DIR_NAME = ".browsermonitor"


class CaptureSettings(BaseModel):
    """Filtering and truncation settings for captured events."""

    ignore_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS),
        description="Regular expressions; matching console messages are dropped"
    )
    hmr_patterns: List[str] = Field(
        default_factory=lambda: list(DEFAULT_HMR_PATTERNS),
        description="Regular expressions; matching console messages emit a separator"
    )
    failure_console_ignore: List[str] = Field(
        default_factory=lambda: list(DEFAULT_FAILURE_CONSOLE_IGNORE),
        description="URL substrings whose failures are not mirrored to the console log"
    )
    body_limit_bytes: int = Field(default=BODY_LIMIT_BYTES, ge=1)
    body_timeout_s: float = Field(
        default=BODY_TIMEOUT_S, gt=0,
        description="Longest wait for a response body before a marker is stored"
    )
    dom_max_bytes: int = Field(default=DOM_MAX_BYTES, ge=1)

    @field_validator('ignore_patterns', 'hmr_patterns')
    @classmethod
    def validate_patterns(cls, v):
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid pattern {pattern!r}: {e}")
        return v

    def compiled_ignore(self) -> List[Pattern]:
        return [re.compile(p) for p in self.ignore_patterns]

    def compiled_hmr(self) -> List[Pattern]:
        return [re.compile(p) for p in self.hmr_patterns]


class OutputPaths:
    """File layout of the dump artifacts under one output directory."""

    def __init__(self, output_dir: Path):
        self.root = Path(output_dir) / OUTPUT_DIR_NAME
        self.console_log = self.root / "browsermonitor-console.log"
        self.network_log = self.root / "browsermonitor-network.log"
        self.network_dir = self.root / "browsermonitor-network-log"
        self.cookies_dir = self.root / "browsermonitor-cookies"
        self.dom_html = self.root / "browsermonitor-dom.html"
        self.screenshot = self.root / "browsermonitor-screenshot.png"
        self.pid_file = self.root / "browser.pid"
        self.profiles_dir = self.root / "chrome-profiles"

    def detail_path(self, request_id: int) -> Path:
        return self.network_dir / f"{request_id}.json"

    def ensure(self) -> None:
        """Create the output directories."""
        self.root.mkdir(parents=True, exist_ok=True)
        self.network_dir.mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"OutputPaths(root={self.root})"
