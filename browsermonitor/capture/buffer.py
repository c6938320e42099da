"""In-memory capture buffers and the realtime file writer.

This module provides LogBuffer, the single store for console lines, network
lines and request details of one capture session, and RealtimeWriter, which
mirrors every buffered change to disk as it happens when the session runs in
realtime mode.

Only the capture engine writes to a LogBuffer; only the dump lifecycle reads
and clears it.
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aiofiles
import aiofiles.os

from ..models.capture import BufferStats, RequestDetail, RequestState, ResponseMetadata, FailureMetadata
from ..models.connection import CaptureMode
from .config import OutputPaths
from .files import reset_dir

logger = logging.getLogger(__name__)

SEPARATOR_RULE = "=" * 20


def console_timestamp(now: Optional[datetime] = None) -> str:
    """HH:MM:SS.mmm in UTC."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%H:%M:%S.") + f"{now.microsecond // 1000:03d}"


def iso_timestamp(now: Optional[datetime] = None) -> str:
    """Full ISO timestamp in UTC with millisecond precision."""
    now = now or datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_separator(title: str, now: Optional[datetime] = None) -> str:
    return f"{SEPARATOR_RULE} [{console_timestamp(now)}] {title} {SEPARATOR_RULE}"


class BufferSnapshot:
    """What a dump captured, so only that content is discarded afterwards."""

    def __init__(self, console: List[str], network: List[str], details: Dict[int, RequestDetail],
                 console_epoch: int, network_epoch: int):
        self.console = console
        self.network = network
        self.details = details
        self.console_epoch = console_epoch
        self.network_epoch = network_epoch

    @property
    def stats(self) -> BufferStats:
        return BufferStats(
            console_entries=len(self.console),
            network_entries=len(self.network),
            request_details=len(self.details),
            pending_requests=sum(1 for d in self.details.values() if d.state == RequestState.PENDING),
        )


class RealtimeWriter:
    """Appends buffered changes to the output files from a single writer task.

    Writes are queued synchronously by the capture handlers and drained in
    order by one background task using aiofiles.
    """

    def __init__(self, paths: OutputPaths):
        self.paths = paths
        self._queue: "asyncio.Queue[Tuple[str, Path, Optional[str]]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._hold = asyncio.Lock()
        self._taken: Optional[Tuple[str, Path, Optional[str]]] = None
        self.errors = 0

    async def start(self) -> None:
        """Truncate the logs, empty the detail directory and start draining."""
        self.paths.ensure()
        self.truncate(self.paths.console_log)
        self.truncate(self.paths.network_log)
        self._queue.put_nowait(("reset_dir", self.paths.network_dir, None))
        if self._task is None:
            self._task = asyncio.create_task(self._drain())
        await self.flush()

    def append(self, path: Path, text: str) -> None:
        self._queue.put_nowait(("append", path, text))

    def write(self, path: Path, text: str) -> None:
        self._queue.put_nowait(("write", path, text))

    def truncate(self, path: Path) -> None:
        self._queue.put_nowait(("write", path, ""))

    def write_detail(self, detail: RequestDetail) -> None:
        self.write(self.paths.detail_path(detail.id), json.dumps(detail.to_document(), indent=2))

    async def flush(self) -> None:
        """Wait until every queued write has been attempted."""
        if self._task is not None:
            await self._queue.join()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        """Write what is queued, then keep later writes queued until the block exits.

        The dump replaces the log files while this is held. Every write queued
        before the block is entered is already on disk, and a line appended
        inside the block lands in the new file after it is replaced.
        """
        async with self._hold:
            await self._write_taken()
            while not self._queue.empty():
                await self._write(self._queue.get_nowait())
            yield

    async def close(self) -> None:
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _drain(self) -> None:
        while True:
            self._taken = await self._queue.get()
            async with self._hold:
                await self._write_taken()

    async def _write_taken(self) -> None:
        # The drain task may have dequeued an item and be waiting for the lock
        item, self._taken = self._taken, None
        if item is not None:
            await self._write(item)

    async def _write(self, item: Tuple[str, Path, Optional[str]]) -> None:
        op, path, text = item
        try:
            await self._apply(op, path, text)
        except OSError as e:
            self.errors += 1
            logger.error(f"Realtime write to {path} failed: {e}")
        finally:
            self._queue.task_done()

    async def _apply(self, op: str, path: Path, text: Optional[str]) -> None:
        if op == "reset_dir":
            await reset_dir(path)
            return

        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        mode = "a" if op == "append" else "w"
        async with aiofiles.open(path, mode, encoding="utf-8") as f:
            await f.write(text or "")


class LogBuffer:
    """Console stream, network stream and request details of one session."""

    def __init__(self, mode: CaptureMode = CaptureMode.LAZY, paths: Optional[OutputPaths] = None,
                 writer: Optional[RealtimeWriter] = None):
        """Initialize the buffer.

        Args:
            mode: Capture mode, fixed for the session
            paths: Output layout, required in realtime mode
            writer: Realtime writer, required in realtime mode
        """
        if mode == CaptureMode.REALTIME and (writer is None or paths is None):
            raise ValueError("realtime mode requires output paths and a writer")

        self.mode = mode
        self.paths = paths
        self.writer = writer

        self.console_entries: List[str] = []
        self.network_entries: List[str] = []
        self.request_details: Dict[int, RequestDetail] = {}

        self._last_request_id = 0
        self._console_epoch = 0
        self._network_epoch = 0

    @property
    def realtime(self) -> bool:
        return self.mode == CaptureMode.REALTIME

    def next_request_id(self) -> int:
        """Allocate the next request id. Ids are never reused within a session."""
        self._last_request_id += 1
        return self._last_request_id

    def log_console(self, line: str) -> None:
        self.console_entries.append(line)
        if self.realtime:
            self.writer.append(self.paths.console_log, line + "\n")

    def log_network(self, line: str) -> None:
        self.network_entries.append(line)
        if self.realtime:
            self.writer.append(self.paths.network_log, line + "\n")

    def console_separator(self, title: str) -> None:
        self.log_console(format_separator(title))

    def network_separator(self, title: str) -> None:
        self.log_network(format_separator(title))

    def clear_console(self) -> None:
        """Drop console entries, as the page's console.clear() does."""
        self.console_entries = []
        self._console_epoch += 1
        if self.realtime:
            self.writer.truncate(self.paths.console_log)

    def save_detail(self, detail: RequestDetail) -> None:
        self.request_details[detail.id] = detail
        if self.realtime:
            self.writer.write_detail(detail)

    def get_detail(self, request_id: int) -> Optional[RequestDetail]:
        return self.request_details.get(request_id)

    def complete_detail(self, request_id: int, response: ResponseMetadata) -> bool:
        """Record a response on a stored detail. False if missing or already terminal."""
        detail = self.request_details.get(request_id)
        if detail is None or not detail.complete(response):
            return False
        if self.realtime:
            self.writer.write_detail(detail)
        return True

    def fail_detail(self, request_id: int, failure: FailureMetadata) -> bool:
        """Record a failure on a stored detail. False if missing or already terminal."""
        detail = self.request_details.get(request_id)
        if detail is None or not detail.fail(failure):
            return False
        if self.realtime:
            self.writer.write_detail(detail)
        return True

    def clear_all(self) -> None:
        """Drop every buffer and detail without writing anything."""
        self.console_entries = []
        self.network_entries = []
        self.request_details = {}
        self._console_epoch += 1
        self._network_epoch += 1
        logger.debug("All capture buffers cleared")

    def stats(self) -> BufferStats:
        return BufferStats(
            console_entries=len(self.console_entries),
            network_entries=len(self.network_entries),
            request_details=len(self.request_details),
            pending_requests=sum(
                1 for d in self.request_details.values() if d.state == RequestState.PENDING
            ),
        )

    def snapshot(self) -> BufferSnapshot:
        """Copy the current content for a dump."""
        return BufferSnapshot(
            console=list(self.console_entries),
            network=list(self.network_entries),
            details=dict(self.request_details),
            console_epoch=self._console_epoch,
            network_epoch=self._network_epoch,
        )

    def discard(self, snapshot: BufferSnapshot) -> None:
        """Remove what a snapshot captured, keeping anything recorded since.

        A stream cleared after the snapshot was taken has nothing left to
        discard from it.
        """
        if snapshot.console_epoch == self._console_epoch:
            self.console_entries = self.console_entries[len(snapshot.console):]
        if snapshot.network_epoch == self._network_epoch:
            self.network_entries = self.network_entries[len(snapshot.network):]
        for request_id in snapshot.details:
            self.request_details.pop(request_id, None)

    def __repr__(self) -> str:
        stats = self.stats()
        return (
            f"LogBuffer(mode={self.mode.value}, console={stats.console_entries}, "
            f"network={stats.network_entries}, details={stats.request_details})"
        )
