"""Capture engine for browsermonitor.

This package records what a page does: console output and uncaught errors,
every network request with its response or failure, and on demand the
page's cookies, DOM and viewport.

Main Components:
- Capture Context: injected state for the event handlers
- Console / Network Observers: one handler per Playwright event
- Capture Engine: attaches the handlers to one page at a time
- Log Buffer: in-memory streams and request details, realtime mirroring
- Dump Manager: atomic dump, clear and stats
- Cookie Collector / Page Snapshotter: optional dump collaborators

Usage:
    from browsermonitor.capture import CaptureEngine, LogBuffer

    buffer = LogBuffer()
    engine = CaptureEngine(buffer)
    engine.attach(page)
"""

from .buffer import LogBuffer, RealtimeWriter, BufferSnapshot
from .config import CaptureSettings, OutputPaths
from .context import CaptureContext
from .cookie_collector import CookieCollector
from .dump import DumpManager
from .engine import CaptureEngine, CAPTURED_EVENTS
from .sequencer import EmissionSequencer
from .snapshots import PageSnapshotter

__all__ = [
    "LogBuffer",
    "RealtimeWriter",
    "BufferSnapshot",
    "CaptureSettings",
    "OutputPaths",
    "CaptureContext",
    "CookieCollector",
    "DumpManager",
    "CaptureEngine",
    "CAPTURED_EVENTS",
    "EmissionSequencer",
    "PageSnapshotter",
]
