"""Console message and page error handlers.

This module provides the handlers for Playwright ``console`` and
``pageerror`` events. Console messages are rendered from their resolved
argument values, filtered against the ignore patterns and written to the
console stream as ``[HH:MM:SS.mmm] <label><TYPE> <text>``.
"""

import json
import logging
from typing import Any, Optional

from playwright.async_api import ConsoleMessage, JSHandle

from .buffer import console_timestamp
from .context import CaptureContext
from .sequencer import Commit

logger = logging.getLogger(__name__)

CLEARED_TITLE = "CONSOLE CLEARED"
HMR_TITLE = "HMR UPDATE - Code change detected"


def render_value(value: Any) -> str:
    """Render a resolved JavaScript value the way the console would print it.

    Objects and arrays are pretty-printed as JSON; primitives use their
    JavaScript string form.
    """
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


async def render_argument(arg: JSHandle) -> str:
    try:
        return render_value(await arg.json_value())
    except Exception as e:
        # Unserializable values (functions, DOM nodes, cycles) fall back to the handle preview
        logger.debug(f"Console argument not serializable: {e}")
        return str(arg)


async def render_message(message: ConsoleMessage) -> str:
    """Join rendered arguments, falling back to the preformatted text."""
    try:
        args = message.args
        if not args:
            return message.text
        parts = [await render_argument(arg) for arg in args]
        return " ".join(parts)
    except Exception as e:
        logger.debug(f"Falling back to console message text: {e}")
        return message.text


async def _console_commit(context: CaptureContext, message: ConsoleMessage) -> Optional[Commit]:
    buffer = context.buffer
    msg_type = message.type
    timestamp = console_timestamp(context.wall_clock())

    if msg_type == "clear":
        def clear() -> None:
            buffer.clear_console()
            buffer.console_separator(CLEARED_TITLE)
        return clear

    text = await render_message(message)

    # Pause may have been set while arguments were resolving
    if not context.recording or context.should_ignore(text):
        return None

    hmr = context.is_hmr(text)
    line = f"[{timestamp}] {context.label}{msg_type.upper():<7} {text}"

    def log() -> None:
        if hmr:
            buffer.console_separator(HMR_TITLE)
        buffer.log_console(line)
    return log


async def handle_console(context: CaptureContext, message: ConsoleMessage) -> None:
    """Handle a Playwright ``console`` event.

    Args:
        context: Capture context of the attached page
        message: Console message emitted by the page
    """
    if not context.recording:
        return

    slot = context.console_stream.reserve()
    commit = None
    try:
        commit = await _console_commit(context, message)
    finally:
        context.console_stream.resolve(slot, commit)


def handle_page_error(context: CaptureContext, error: Exception) -> None:
    """Handle a Playwright ``pageerror`` event (uncaught exception in the page)."""
    if not context.recording:
        return

    message = getattr(error, "message", None) or str(error)
    line = f"[{console_timestamp(context.wall_clock())}] {context.label}[PAGE ERROR] {message}"
    context.console_stream.emit(lambda: context.buffer.log_console(line))
