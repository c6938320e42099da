"""Per-stream ordering for handlers that await before they emit.

A handler reserves a slot while it still runs in event-arrival order and
resolves it once its text is ready. Resolved slots are committed strictly in
reservation order, so a slow body fetch never lets a later line overtake an
earlier one in the same stream.
"""

import logging
from collections import deque
from typing import Callable, Deque, Optional

logger = logging.getLogger(__name__)

Commit = Callable[[], None]


class Slot:
    """Placeholder for one pending emission."""

    __slots__ = ("seq", "commit", "resolved")

    def __init__(self, seq: int):
        self.seq = seq
        self.commit: Optional[Commit] = None
        self.resolved = False

    def __repr__(self) -> str:
        return f"Slot(seq={self.seq}, resolved={self.resolved})"


class EmissionSequencer:
    """Reorder buffer for one log stream."""

    def __init__(self, name: str):
        self.name = name
        self._next_seq = 0
        self._pending: Deque[Slot] = deque()
        self._closed = False

    def reserve(self) -> Slot:
        """Reserve the next position in the stream."""
        slot = Slot(self._next_seq)
        self._next_seq += 1
        if not self._closed:
            self._pending.append(slot)
        return slot

    def resolve(self, slot: Slot, commit: Optional[Commit]) -> None:
        """Fill a slot and commit every leading slot that is ready.

        Args:
            slot: Slot returned by ``reserve``
            commit: Callable that writes the entry, or None to drop the slot
        """
        if slot.resolved:
            return
        slot.commit = commit
        slot.resolved = True
        if self._closed:
            return
        self._flush()

    def emit(self, commit: Commit) -> None:
        """Reserve and resolve in one step, for handlers that never await."""
        self.resolve(self.reserve(), commit)

    def close(self) -> None:
        """Commit slots that are already resolved and drop the rest.

        Resolved slots stuck behind an unresolved one are written in
        reservation order. Later resolutions become no-ops.
        """
        dropped = 0
        while self._pending:
            slot = self._pending.popleft()
            if not slot.resolved:
                dropped += 1
            elif slot.commit is not None:
                slot.commit()
        if dropped:
            logger.debug(f"{self.name} stream closed with {dropped} unresolved slot(s)")
        self._closed = True

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _flush(self) -> None:
        while self._pending and self._pending[0].resolved:
            slot = self._pending.popleft()
            if slot.commit is not None:
                slot.commit()
