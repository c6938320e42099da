"""Terminal prompts used by the connection manager."""

import asyncio
import logging
from typing import List, Optional

import typer

from ..models.connection import Endpoint

logger = logging.getLogger(__name__)

# Ask whether to keep waiting every this many empty discovery polls
ASK_EVERY_POLLS = 10


class TyperPrompts:
    """Operator prompts on the controlling terminal.

    Blocking reads run in a worker thread so the event loop keeps serving
    while the operator thinks.
    """

    def __init__(self, assume_yes: bool = False):
        self.assume_yes = assume_yes

    async def confirm(self, question: str) -> bool:
        if self.assume_yes:
            typer.echo(f"{question} [assumed yes]")
            return True
        return await asyncio.to_thread(typer.confirm, question, default=False)

    async def wait_for_browser(self, poll: int) -> bool:
        if poll == 1:
            typer.secho("No browser with remote debugging found. Waiting for one to start...",
                        fg=typer.colors.YELLOW)
            typer.echo("  Start Chrome with --remote-debugging-port=9222, or press Ctrl+C to abort.")
            return True
        if poll % ASK_EVERY_POLLS == 0:
            return await asyncio.to_thread(typer.confirm, "Still waiting. Keep waiting?", default=True)
        return True

    async def select_candidate(self, candidates: List[Endpoint]) -> Optional[Endpoint]:
        typer.echo("Several browsers are available:")
        for index, endpoint in enumerate(candidates, start=1):
            typer.echo(f"  {index}. {endpoint}  {endpoint.label or ''}".rstrip())

        choice = await asyncio.to_thread(typer.prompt, "Select browser (0 to abort)", default=1, type=int)
        if choice < 1 or choice > len(candidates):
            logger.info("Browser selection aborted")
            return None
        return candidates[choice - 1]
