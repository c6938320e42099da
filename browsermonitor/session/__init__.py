"""Session lifecycle: the monitored tab, operator commands and shutdown."""

from .commands import CommandDispatcher, CommandResult, CommandVerb
from .lifecycle import ShutdownCoordinator, ShutdownRequest
from .manager import SessionManager, TabSelectionError
from .state import SessionState, SessionStatus
from .tabs import filter_user_pages, is_internal_url, page_url

__all__ = [
    "CommandDispatcher",
    "CommandResult",
    "CommandVerb",
    "ShutdownCoordinator",
    "ShutdownRequest",
    "SessionManager",
    "TabSelectionError",
    "SessionState",
    "SessionStatus",
    "filter_user_pages",
    "is_internal_url",
    "page_url",
]
