"""Single-key operator controls while a session is running.

Keys are read from the controlling terminal in cbreak mode through the event
loop's reader callbacks, so no thread is involved. ``handle_key`` is the
whole behavior and can be driven directly.
"""

import asyncio
import codecs
import logging
import os
import sys
from typing import Any, Dict, List, Optional, TextIO, Tuple

import typer

from ..session.commands import CommandDispatcher, CommandResult, CommandVerb

logger = logging.getLogger(__name__)

KEYBOARD_KEYS: List[Tuple[str, str]] = [
    ("d", "dump to files"),
    ("c", "clear buffer"),
    ("s", "status"),
    ("p", "pause/resume"),
    ("t", "switch tab"),
    ("h", "this help"),
    ("k", "kill / quit"),
    ("q", "quit"),
]

CTRL_C = "\x03"
ESCAPE = "\x1b"
ENTER = ("\r", "\n")
BACKSPACE = ("\x7f", "\b")
READ_SIZE = 64


def format_help() -> str:
    lines = ["Keys:"]
    lines.extend(f"  {key}  {action}" for key, action in KEYBOARD_KEYS)
    return "\n".join(lines)


def format_status(data: Dict[str, Any]) -> str:
    stats = data.get("stats", {})
    state = "PAUSED" if data.get("paused") else "collecting"
    lines = [
        f"Status: {state} ({data.get('capture_mode')} mode)",
        f"  URL:      {data.get('current_url') or '-'}",
        f"  Tabs:     {data.get('tab_count', 0)} open, {data.get('monitored_tabs', 0)} monitored",
        f"  Console:  {stats.get('console_entries', 0)} entries",
        f"  Network:  {stats.get('network_entries', 0)} entries, "
        f"{stats.get('request_details', 0)} details, {data.get('in_flight', 0)} in flight",
    ]
    if data.get("new_tabs"):
        lines.append(f"  New tabs: {', '.join(data['new_tabs'])}")
    return "\n".join(lines)


class KeyboardController:
    """Maps keys onto dispatcher commands."""

    def __init__(self, dispatcher: CommandDispatcher, stream: Optional[TextIO] = None):
        self.dispatcher = dispatcher
        self.stream = stream if stream is not None else sys.stdin
        self.selecting_tab = False
        self._digits = ""
        self._saved_mode = None
        self._fd: Optional[int] = None
        self._tasks: List[asyncio.Task] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")

    @property
    def interactive(self) -> bool:
        try:
            return self.stream.isatty()
        except (AttributeError, ValueError):
            return False

    def start(self) -> bool:
        """Start reading keys. Returns False when stdin is not a terminal."""
        if not self.interactive:
            logger.debug("stdin is not a terminal, keyboard controls disabled")
            return False

        import termios
        import tty

        self._fd = self.stream.fileno()
        self._saved_mode = termios.tcgetattr(self._fd)
        tty.setcbreak(self._fd)
        asyncio.get_running_loop().add_reader(self._fd, self._on_readable)
        return True

    def stop(self) -> None:
        if self._fd is None:
            return
        import termios

        loop = asyncio.get_running_loop()
        loop.remove_reader(self._fd)
        termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_mode)
        self._fd = None
        self._saved_mode = None

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, READ_SIZE)
        except OSError as e:
            logger.debug(f"Cannot read from the terminal: {e}")
            return
        keys = self._decoder.decode(data)
        if not keys:
            return
        previous = self._tasks[-1] if self._tasks else None
        task = asyncio.get_running_loop().create_task(self._handle_keys(keys, previous))
        self._tasks.append(task)
        task.add_done_callback(self._tasks.remove)

    async def _handle_keys(self, keys: str, previous: Optional[asyncio.Task] = None) -> None:
        # Keys from an earlier read finish first
        if previous is not None:
            await asyncio.wait([previous])
        for key in keys:
            await self.handle_key(key)

    async def handle_key(self, key: str) -> Optional[CommandResult]:
        """React to one key press.

        Returns:
            Result of the command the key ran, if any
        """
        if key == CTRL_C:
            return await self.dispatcher.execute(CommandVerb.QUIT)

        if self.selecting_tab:
            return await self._handle_selection_key(key)

        key = key.lower()
        if key == "d":
            result = await self.dispatcher.execute(CommandVerb.DUMP)
        elif key == "c":
            result = await self.dispatcher.execute(CommandVerb.CLEAR)
        elif key == "s":
            result = await self.dispatcher.execute(CommandVerb.STATUS)
            if result.ok:
                typer.echo(format_status(result.data))
                return result
        elif key == "p":
            result = await self.dispatcher.toggle_pause()
        elif key == "t":
            return await self._begin_selection()
        elif key == "h":
            typer.echo(format_help())
            return None
        elif key == "q":
            result = await self.dispatcher.execute(CommandVerb.QUIT)
        elif key == "k":
            typer.secho("Closing the browser and exiting...", fg=typer.colors.YELLOW)
            result = await self.dispatcher.execute(CommandVerb.KILL)
        else:
            return None

        self._report(result)
        return result

    async def _begin_selection(self) -> CommandResult:
        result = await self.dispatcher.execute(CommandVerb.LIST_TABS)
        tabs = result.data.get("tabs", [])
        if not tabs:
            typer.echo("No tabs to switch to")
            return result

        typer.echo("Tabs:")
        for tab in tabs:
            marker = "*" if tab.get("active") else " "
            typer.echo(f"  {marker} {tab['index']}. {tab['url'] or 'about:blank'}")
        typer.echo("Type a tab number and press Enter (Esc cancels): ", nl=False)
        self.selecting_tab = True
        self._digits = ""
        return result

    async def _handle_selection_key(self, key: str) -> Optional[CommandResult]:
        if key == ESCAPE:
            self._end_selection()
            typer.echo("cancelled")
            return None
        if key in BACKSPACE:
            self._digits = self._digits[:-1]
            return None
        if key.isdigit():
            self._digits += key
            typer.echo(key, nl=False)
            return None
        if key in ENTER:
            digits = self._digits
            self._end_selection()
            typer.echo("")
            if not digits:
                return None
            result = await self.dispatcher.execute(CommandVerb.SWITCH_TAB, int(digits))
            self._report(result)
            return result
        return None

    def _end_selection(self) -> None:
        self.selecting_tab = False
        self._digits = ""

    @staticmethod
    def _report(result: CommandResult) -> None:
        if result.ok:
            typer.echo(result.message)
        else:
            typer.secho(result.message, fg=typer.colors.RED)
