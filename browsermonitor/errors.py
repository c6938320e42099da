"""Exception hierarchy for the monitor.

Library code raises these; only the CLI turns them into exit codes.
"""

import re
from enum import Enum
from typing import Optional


# Errors raised when the page navigated away or the target went away mid-handler
STALE_CONTEXT_PATTERN = re.compile(
    r"Execution context was destroyed"
    r"|Target closed"
    r"|Target page, context or browser has been closed"
    r"|Protocol error"
    r"|Frame was detached"
)


def is_stale_context_error(error: BaseException) -> bool:
    """Return True for errors caused by navigation or a closed target."""
    message = str(error) or getattr(error, "message", "") or ""
    return bool(STALE_CONTEXT_PATTERN.search(message))


class MonitorError(Exception):
    """Base class for monitor errors."""
    pass


class FailureReason(str, Enum):
    """Terminal reasons of the connection state machine."""
    NO_CANDIDATES = "no_candidates"
    HANDSHAKE_TIMEOUT = "handshake_timeout"
    CONFLICT_UNRESOLVED = "conflict_unresolved"
    UNREACHABLE = "unreachable"
    USER_ABORTED = "user_aborted"
    LAUNCH_FAILED = "launch_failed"


class ConnectionFailure(MonitorError):
    """The control connection could not be established."""

    def __init__(self, reason: FailureReason, message: str, guidance: Optional[str] = None,
                 diagnosis: Optional[object] = None):
        super().__init__(message)
        self.reason = reason
        self.guidance = guidance
        self.diagnosis = diagnosis

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} ({self.reason.value})"


class HandshakeError(MonitorError):
    """A single handshake attempt failed."""
    pass


class InvalidTransition(MonitorError):
    """Connection state machine was asked for a transition it does not define."""
    pass


class CaptureFatal(MonitorError):
    """A capture handler raised something other than a stale-context error."""

    def __init__(self, event: str, original: BaseException):
        super().__init__(f"{event} handler failed: {original}")
        self.event = event
        self.original = original


class DumpIOError(MonitorError):
    """Writing one dump artifact failed."""

    def __init__(self, artifact: str, original: BaseException):
        super().__init__(f"Failed to write {artifact}: {original}")
        self.artifact = artifact
        self.original = original


class BridgeError(MonitorError):
    """A platform bridge command failed."""
    pass
