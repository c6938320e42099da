"""Operator command surface shared by the HTTP server and the keyboard."""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field

from .lifecycle import ShutdownCoordinator
from .manager import SessionManager, TabSelectionError

logger = logging.getLogger(__name__)


class CommandVerb(str, Enum):
    """Commands an operator can issue during a session."""
    DUMP = "dump"
    CLEAR = "clear"
    STATUS = "status"
    LIST_TABS = "list-tabs"
    SWITCH_TAB = "switch-tab"
    PAUSE = "pause"
    RESUME = "resume"
    QUIT = "quit"
    KILL = "kill"


class CommandResult(BaseModel):
    """Outcome of one command."""
    verb: CommandVerb
    ok: bool = True
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    rejected: bool = Field(default=False, description="Refused because the session is shutting down")


class CommandDispatcher:
    """Executes operator commands against the session."""

    def __init__(self, session: SessionManager, shutdown: ShutdownCoordinator):
        self.session = session
        self.shutdown = shutdown

    async def execute(self, verb: Union[CommandVerb, str], argument: Optional[Any] = None) -> CommandResult:
        """Run a command.

        Args:
            verb: Command to run
            argument: Tab index for ``switch-tab``; ignored otherwise

        Returns:
            CommandResult; ``ok`` is False for rejected or failed commands
        """
        try:
            verb = CommandVerb(verb)
        except ValueError:
            logger.warning(f"Unknown command: {verb}")
            return CommandResult(verb=CommandVerb.STATUS, ok=False, message=f"Unknown command: {verb}")

        if self.shutdown.triggered and verb not in (CommandVerb.STATUS, CommandVerb.QUIT, CommandVerb.KILL):
            return CommandResult(verb=verb, ok=False, rejected=True, message="Session is shutting down")

        handler = getattr(self, f"_{verb.name.lower()}")
        try:
            return await handler(argument)
        except Exception as e:
            logger.error(f"Command {verb.value} failed: {e}")
            return CommandResult(verb=verb, ok=False, message=str(e))

    async def toggle_pause(self) -> CommandResult:
        verb = CommandVerb.RESUME if self.session.state.paused else CommandVerb.PAUSE
        return await self.execute(verb)

    async def _dump(self, argument) -> CommandResult:
        report = await self.session.dump()
        stats = report.stats_before
        message = (
            f"Dumped {stats.console_entries} console, {stats.network_entries} network, "
            f"{stats.request_details} request details"
        )
        if not report.ok:
            message += f" ({len(report.failed_artifacts)} artifact(s) failed)"
        return CommandResult(
            verb=CommandVerb.DUMP,
            ok=report.ok,
            message=message,
            data=report.model_dump(mode="json"),
        )

    async def _clear(self, argument) -> CommandResult:
        stats = self.session.clear()
        return CommandResult(
            verb=CommandVerb.CLEAR,
            message=f"Cleared {stats.console_entries} console, {stats.network_entries} network entries",
            data={"cleared": stats.model_dump(mode="json")},
        )

    async def _status(self, argument) -> CommandResult:
        status = self.session.status()
        return CommandResult(
            verb=CommandVerb.STATUS,
            message="paused" if status.paused else "collecting",
            data=status.model_dump(mode="json"),
        )

    async def _list_tabs(self, argument) -> CommandResult:
        tabs = self.session.list_tabs()
        return CommandResult(
            verb=CommandVerb.LIST_TABS,
            message=f"{len(tabs)} tab(s)",
            data={"tabs": [tab.model_dump(mode="json") for tab in tabs]},
        )

    async def _switch_tab(self, argument) -> CommandResult:
        try:
            index = int(argument)
        except (TypeError, ValueError):
            return CommandResult(verb=CommandVerb.SWITCH_TAB, ok=False, message=f"Invalid tab index: {argument}")

        try:
            page = await self.session.switch(index)
        except TabSelectionError as e:
            return CommandResult(verb=CommandVerb.SWITCH_TAB, ok=False, message=str(e))
        return CommandResult(
            verb=CommandVerb.SWITCH_TAB,
            message=f"Monitoring tab {index}",
            data={"index": index, "url": page.url},
        )

    async def _pause(self, argument) -> CommandResult:
        changed = self.session.state.set_paused(True)
        return CommandResult(
            verb=CommandVerb.PAUSE,
            message="Collecting paused" if changed else "Already paused",
            data={"paused": True},
        )

    async def _resume(self, argument) -> CommandResult:
        changed = self.session.state.set_paused(False)
        return CommandResult(
            verb=CommandVerb.RESUME,
            message="Collecting resumed" if changed else "Already collecting",
            data={"paused": False},
        )

    async def _quit(self, argument) -> CommandResult:
        # Not awaited: the caller may itself be torn down by the shutdown
        self.shutdown.trigger("quit requested", close_browser=False)
        return CommandResult(verb=CommandVerb.QUIT, message="Shutting down, browser left running")

    async def _kill(self, argument) -> CommandResult:
        self.shutdown.trigger("kill requested", close_browser=True)
        return CommandResult(verb=CommandVerb.KILL, message="Shutting down and closing browser")
