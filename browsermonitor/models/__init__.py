"""Data models shared across the monitor."""

from .capture import (
    RequestState,
    RequestMetadata,
    ResponseMetadata,
    FailureMetadata,
    RequestDetail,
    InFlightRequest,
    BufferStats,
    ArtifactResult,
    DumpReport,
    TabInfo,
    CookieEntry,
    CookieDocument,
)

from .connection import (
    ConnectionMode,
    CaptureMode,
    Endpoint,
    LaunchSpec,
    ConnectionIntent,
)

__all__ = [
    # Capture models
    'RequestState',
    'RequestMetadata',
    'ResponseMetadata',
    'FailureMetadata',
    'RequestDetail',
    'InFlightRequest',
    'BufferStats',
    'ArtifactResult',
    'DumpReport',
    'TabInfo',
    'CookieEntry',
    'CookieDocument',

    # Connection models
    'ConnectionMode',
    'CaptureMode',
    'Endpoint',
    'LaunchSpec',
    'ConnectionIntent',
]
