"""Dump lifecycle: persist the buffers, then clear what was persisted.

This module provides the DumpManager class. A dump writes the console log
and the network log as single atomic units, rewrites the request detail
directory, then runs the optional snapshot collaborators (cookies, DOM,
screenshot). Every artifact reports its own outcome; a failure never stops
the remaining artifacts, and the dumped content is cleared from memory once
everything has been attempted.
"""

import asyncio
import json
import logging
from contextlib import nullcontext
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from ..errors import DumpIOError
from ..models.capture import ArtifactResult, BufferStats, DumpReport, RequestDetail
from .buffer import LogBuffer
from .config import OutputPaths
from .files import reset_dir, write_atomic

logger = logging.getLogger(__name__)

Collaborator = Callable[[], Awaitable[ArtifactResult]]


class DumpManager:
    """Atomic dump, clear and stats over one LogBuffer."""

    def __init__(
        self,
        buffer: LogBuffer,
        paths: OutputPaths,
        collaborators: Optional[Sequence[Tuple[str, Collaborator]]] = None,
    ):
        """Initialize the dump manager.

        Args:
            buffer: Buffer to dump
            paths: Output layout
            collaborators: ``(name, callable)`` pairs run after the logs,
                e.g. cookies, DOM and screenshot
        """
        self.buffer = buffer
        self.paths = paths
        self.collaborators: List[Tuple[str, Collaborator]] = list(collaborators or [])
        self._lock = asyncio.Lock()
        self.dump_count = 0

    def add_collaborator(self, name: str, collaborator: Collaborator) -> None:
        self.collaborators.append((name, collaborator))

    async def dump(self) -> DumpReport:
        """Write every artifact and clear the dumped content.

        Returns:
            Report with the stats before the dump and one result per artifact
        """
        async with self._lock, self._hold_writer():
            snapshot = self.buffer.snapshot()
            report = DumpReport(stats_before=snapshot.stats)
            try:
                report.artifacts.append(
                    await self._write_lines("console", self.paths.console_log, snapshot.console)
                )
                report.artifacts.append(
                    await self._write_lines("network", self.paths.network_log, snapshot.network)
                )
                report.artifacts.append(await self._write_details(snapshot.details))
                for name, collaborator in self.collaborators:
                    report.artifacts.append(await self._run_collaborator(name, collaborator))
            finally:
                self.buffer.discard(snapshot)
                self.dump_count += 1

            failed = report.failed_artifacts
            if failed:
                logger.warning(
                    f"Dump completed with {len(failed)} failed artifact(s): "
                    f"{', '.join(a.name for a in failed)}"
                )
            else:
                logger.info(
                    f"Dump completed: {snapshot.stats.console_entries} console, "
                    f"{snapshot.stats.network_entries} network, "
                    f"{snapshot.stats.request_details} request details"
                )
            return report

    def clear(self) -> BufferStats:
        """Drop all buffered content without writing. Returns the stats before clearing."""
        stats = self.buffer.stats()
        self.buffer.clear_all()
        return stats

    def stats(self) -> BufferStats:
        return self.buffer.stats()

    def _hold_writer(self):
        # Realtime appends wait until the logs have been replaced
        if self.buffer.writer is None:
            return nullcontext()
        return self.buffer.writer.hold()

    async def _write_lines(self, name: str, path: Path, lines: List[str]) -> ArtifactResult:
        # Empty buffers still produce an empty file so an earlier dump is never left behind
        text = "\n".join(lines) + "\n" if lines else ""
        try:
            await self._write(name, path, text)
        except DumpIOError as e:
            logger.error(str(e))
            return ArtifactResult(name=name, ok=False, path=path, error=str(e))
        return ArtifactResult(name=name, path=path, count=len(lines))

    async def _write_details(self, details: Dict[int, RequestDetail]) -> ArtifactResult:
        directory = self.paths.network_dir
        errors = []
        try:
            await reset_dir(directory)
        except OSError as e:
            errors.append(str(DumpIOError("request details", e)))

        written = 0
        for request_id, detail in details.items():
            try:
                await self._write(
                    f"request detail {request_id}",
                    self.paths.detail_path(request_id),
                    json.dumps(detail.to_document(), indent=2),
                )
                written += 1
            except DumpIOError as e:
                errors.append(str(e))

        if errors:
            logger.error(f"{len(errors)} request detail write(s) failed; first: {errors[0]}")
            return ArtifactResult(name="details", ok=False, path=directory, count=written, error=errors[0])
        return ArtifactResult(name="details", path=directory, count=written)

    async def _run_collaborator(self, name: str, collaborator: Collaborator) -> ArtifactResult:
        try:
            return await collaborator()
        except Exception as e:
            logger.error(f"Error dumping {name}: {e}")
            return ArtifactResult(name=name, ok=False, error=str(e))

    @staticmethod
    async def _write(name: str, path: Path, data: str) -> None:
        try:
            await write_atomic(path, data)
        except OSError as e:
            raise DumpIOError(name, e) from e

    def __repr__(self) -> str:
        return f"DumpManager(dumps={self.dump_count}, {self.buffer!r})"
