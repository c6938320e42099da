"""State shared by the capture handlers of one attachment.

Handlers are plain functions taking ``(context, event)``; everything they
read or mutate lives here rather than in closures.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Pattern

from playwright.async_api import Request

from ..models.capture import InFlightRequest
from .buffer import LogBuffer
from .config import CaptureSettings
from .sequencer import EmissionSequencer


class CaptureContext:
    """Injected state for the console and network handlers."""

    def __init__(
        self,
        buffer: LogBuffer,
        settings: Optional[CaptureSettings] = None,
        is_paused: Optional[Callable[[], bool]] = None,
        label: str = "",
        monotonic: Callable[[], float] = time.monotonic,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the context.

        Args:
            buffer: Buffer receiving log lines and request details
            settings: Filtering and truncation settings
            is_paused: Returns True while recording must not happen
            label: Prefix for console lines, e.g. ``"[tab 2] "``
            monotonic: Clock used for request durations
            wall_clock: Clock used for log timestamps
        """
        self.buffer = buffer
        self.settings = settings or CaptureSettings()
        self.label = label
        self.monotonic = monotonic
        self.wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))
        self._is_paused = is_paused or (lambda: False)

        # Keyed by the Request object itself, held until its terminal event
        self.in_flight: Dict[Request, InFlightRequest] = {}

        self.console_stream = EmissionSequencer("console")
        self.network_stream = EmissionSequencer("network")
        self.active = True

        self.ignore_patterns: List[Pattern] = self.settings.compiled_ignore()
        self.hmr_patterns: List[Pattern] = self.settings.compiled_hmr()

    @property
    def recording(self) -> bool:
        """True when handlers may buffer and mutate correlation state."""
        return self.active and not self._is_paused()

    def should_ignore(self, text: str) -> bool:
        return any(p.search(text) for p in self.ignore_patterns)

    def is_hmr(self, text: str) -> bool:
        return any(p.search(text) for p in self.hmr_patterns)

    def mirrors_failure(self, url: str) -> bool:
        """Whether a failed request should also appear in the console log."""
        return not any(fragment in url for fragment in self.settings.failure_console_ignore)

    def close(self) -> None:
        """Stop recording and drop pending correlation state."""
        self.active = False
        self.in_flight.clear()
        self.console_stream.close()
        self.network_stream.close()

    def __repr__(self) -> str:
        return f"CaptureContext(active={self.active}, in_flight={len(self.in_flight)})"
