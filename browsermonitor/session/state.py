"""Session-wide flags and the status snapshot."""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.capture import BufferStats
from ..models.connection import CaptureMode

logger = logging.getLogger(__name__)


class SessionState:
    """Flags read by every capture handler.

    ``paused`` is written only by the command layer; ``closing`` only by the
    shutdown coordinator.
    """

    def __init__(self, capture_mode: CaptureMode = CaptureMode.LAZY):
        self.capture_mode = capture_mode
        self._paused = False
        self._closing = False

    @property
    def paused(self) -> bool:
        return self._paused

    def set_paused(self, value: bool) -> bool:
        """Set the pause flag. Returns True if it changed."""
        value = bool(value)
        if value == self._paused:
            return False
        self._paused = value
        logger.info("Collecting paused" if value else "Collecting resumed")
        return True

    @property
    def closing(self) -> bool:
        return self._closing

    def mark_closing(self) -> None:
        self._closing = True

    def recording_blocked(self) -> bool:
        """Checked first by every capture handler."""
        return self._paused or self._closing


class SessionStatus(BaseModel):
    """What the ``status`` command reports."""
    capture_mode: CaptureMode
    paused: bool = False
    closing: bool = False
    current_url: Optional[str] = None
    tab_count: int = 0
    monitored_tabs: int = 0
    stats: BufferStats = Field(default_factory=BufferStats)
    in_flight: int = 0
    new_tabs: List[str] = Field(default_factory=list)
