"""Session runner for the launch and join flows.

This module wires the components of one monitoring session together:
configuration, the connection manager, the capture engine with its buffer
and dump lifecycle, the session manager, the HTTP and keyboard control
surfaces and the single-shot shutdown. ``MonitorRunner.run`` returns the
process exit code.
"""

import asyncio
import hashlib
import json
import logging
import os
import re
from enum import IntEnum
from pathlib import Path
from typing import List, Optional

import aiofiles
import aiofiles.os
import typer
from playwright.async_api import Page

from ..api.server import ControlServer, create_app
from ..capture.buffer import LogBuffer, RealtimeWriter, console_timestamp
from ..capture.cookie_collector import CookieCollector
from ..capture.dump import DumpManager
from ..capture.engine import CaptureEngine
from ..capture.snapshots import PageSnapshotter
from ..connection import create_bridge
from ..connection.bridge import PlatformBridge
from ..connection.channel import ControlChannel
from ..connection.handshake import CdpHandshake
from ..connection.manager import ConnectionManager, NonInteractivePrompts, OperatorPrompts
from ..errors import ConnectionFailure
from ..models.connection import CaptureMode, ConnectionIntent, ConnectionMode, Endpoint, LaunchSpec
from ..session.commands import CommandDispatcher
from ..session.lifecycle import ShutdownCoordinator, ShutdownRequest
from ..session.manager import SessionManager
from ..session.state import SessionState
from ..session.tabs import BLANK_URL, filter_user_pages, is_internal_url, page_url
from .config import MonitorConfiguration
from .keyboard import KeyboardController, format_help

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
STARTED_TITLE = "BROWSERMONITOR STARTED"


class ExitCode(IntEnum):
    """Process exit codes."""
    SUCCESS = 0           # Session ended by the operator, a signal or the hard timeout
    RUNTIME_ERROR = 1     # Fatal capture error or unexpected failure
    CONFIG_ERROR = 2      # Invalid configuration
    CONNECTION_ERROR = 3  # No control connection could be established


def profile_id(project_dir: Path) -> str:
    """Stable profile name for a project: ``<basename>_<md5 of abs path, 12 chars>``."""
    absolute = str(Path(project_dir).resolve())
    name = re.sub(r"[^a-zA-Z0-9_-]", "_", os.path.basename(absolute))
    digest = hashlib.md5(absolute.encode("utf-8")).hexdigest()[:12]
    return f"{name}_{digest}"


async def prepare_profile(profile_dir: Path) -> bool:
    """Mark the profile as cleanly exited so Chrome shows no restore prompt.

    Returns:
        False if the preferences could not be written
    """
    prefs_dir = Path(profile_dir) / "Default"
    prefs_file = prefs_dir / "Preferences"
    try:
        await aiofiles.os.makedirs(prefs_dir, exist_ok=True)
        prefs = {}
        if await aiofiles.os.path.exists(prefs_file):
            async with aiofiles.open(prefs_file, "r", encoding="utf-8") as f:
                content = await f.read()
            try:
                prefs = json.loads(content)
            except json.JSONDecodeError:
                logger.debug(f"Ignoring unreadable preferences in {prefs_file}")
        prefs.setdefault("session", {})["restore_on_startup"] = 5
        prefs.setdefault("profile", {})["exit_type"] = "Normal"
        async with aiofiles.open(prefs_file, "w", encoding="utf-8") as f:
            await f.write(json.dumps(prefs, indent=2))
        return True
    except OSError as e:
        logger.info(f"Could not configure profile preferences: {e}")
        return False


class MonitorRunner:
    """Runs one monitoring session in launch or join mode."""

    def __init__(
        self,
        config: MonitorConfiguration,
        mode: ConnectionMode,
        join_port: Optional[int] = None,
        bridge: Optional[PlatformBridge] = None,
        prompts: Optional[OperatorPrompts] = None,
        interactive: bool = True,
    ):
        """Initialize the runner.

        Args:
            config: Loaded configuration
            mode: Launch a fresh browser or join a running one
            join_port: Debugging port to join, skipping discovery
            bridge: Platform bridge; detected from the platform by default
            prompts: Operator prompts for the connection manager
            interactive: Enable keyboard controls and tab prompts
        """
        self.config = config
        self.mode = mode
        self.join_port = join_port
        self.bridge = bridge or create_bridge(config.chrome_path)
        self.prompts = prompts or NonInteractivePrompts()
        self.interactive = interactive

        self.paths = config.output_paths()
        self.capture_mode = CaptureMode.REALTIME if config.realtime else CaptureMode.LAZY
        self.state = SessionState(self.capture_mode)
        hard_timeout_s = config.hard_timeout_ms / 1000 if config.hard_timeout_ms else None
        self.shutdown = ShutdownCoordinator(self.state, hard_timeout_s=hard_timeout_s)

        self.writer: Optional[RealtimeWriter] = None
        self.connection: Optional[ConnectionManager] = None
        self.channel: Optional[ControlChannel] = None
        self.session: Optional[SessionManager] = None
        self.server: Optional[ControlServer] = None
        self.keyboard: Optional[KeyboardController] = None

    def build_intent(self, endpoint: Optional[Endpoint] = None) -> ConnectionIntent:
        launch = LaunchSpec(
            profile_ref=self.paths.profiles_dir / profile_id(self.config.output_dir),
            headless=self.config.headless,
        )
        return ConnectionIntent(
            mode=self.mode,
            endpoint_hint=endpoint,
            retry_budget=self.config.connection.max_attempts,
            launch=launch,
        )

    async def run(self) -> int:
        """Run the session to completion.

        Returns:
            Process exit code
        """
        self.paths.ensure()
        intent = self.build_intent(await self._join_endpoint())
        if self.mode == ConnectionMode.LAUNCH:
            await prepare_profile(intent.launch.profile_ref)

        self.connection = ConnectionManager(
            self.bridge,
            handshake=CdpHandshake(timeout=self.config.connection.handshake_timeout_s),
            prompts=self.prompts,
            settings=self.config.connection_settings(),
        )
        try:
            self.channel = await self.connection.connect(intent)
        except ConnectionFailure as e:
            await self.connection.release()
            typer.secho(f"Connection failed: {e}", fg=typer.colors.RED, err=True)
            if e.guidance:
                typer.echo(e.guidance, err=True)
            return ExitCode.CONNECTION_ERROR

        try:
            await self._start_session()
        except Exception as e:
            logger.error(f"Session setup failed: {e}", exc_info=True)
            self.shutdown.trigger(f"setup failed: {e}", exit_code=ExitCode.RUNTIME_ERROR)

        request = await self.shutdown.wait()
        return request.exit_code

    async def _join_endpoint(self) -> Optional[Endpoint]:
        if self.mode != ConnectionMode.JOIN or self.join_port is None:
            return None
        # Forwarded ports are reached through the bridge's host
        host = self.config.connection.join_host or await self.bridge.resolve_host()
        return Endpoint(host=host, port=self.join_port)

    async def _start_session(self) -> None:
        loop = asyncio.get_running_loop()
        self._register_shutdown_steps()
        self.shutdown.install_signal_handlers()
        loop.set_exception_handler(self.shutdown.handle_loop_exception)

        if self.capture_mode == CaptureMode.REALTIME:
            self.writer = RealtimeWriter(self.paths)
            await self.writer.start()
        buffer = LogBuffer(self.capture_mode, self.paths, self.writer)

        engine = CaptureEngine(
            buffer,
            settings=self.config.capture_settings(),
            is_paused=self.state.recording_blocked,
            on_fatal=self.shutdown.on_capture_fatal,
        )

        def active_page() -> Optional[Page]:
            return self.session.active_page if self.session else None

        cookies = CookieCollector(self.paths, active_page)
        snapshotter = PageSnapshotter(self.paths, active_page, self.config.capture.dom_max_bytes)
        dump_manager = DumpManager(
            buffer,
            self.paths,
            collaborators=[
                ("cookies", cookies.dump),
                ("dom", snapshotter.dump_dom),
                ("screenshot", snapshotter.dump_screenshot),
            ],
        )
        self.session = SessionManager(self.channel, engine, dump_manager, self.state, snapshotter)
        self.channel.browser.on("disconnected", self._on_disconnected)

        if self.mode == ConnectionMode.LAUNCH:
            await self._start_launch(buffer)
        else:
            await self._start_join()

        dispatcher = CommandDispatcher(self.session, self.shutdown)
        self.server = ControlServer(create_app(dispatcher), self.config.http_host, self.config.http_port)
        await self.server.start()

        if self.interactive:
            self.keyboard = KeyboardController(dispatcher)
            if self.keyboard.start():
                typer.echo(format_help())

        self.shutdown.arm_hard_timeout()
        typer.secho(f"Monitoring. Control API at {self.server.url}", fg=typer.colors.GREEN)

    async def _start_launch(self, buffer: LogBuffer) -> None:
        url = self.config.default_url
        if self.channel.pid:
            await self._write_pid(self.channel.pid)
        elif self.connection and self.connection.launched_pid:
            await self._write_pid(self.connection.launched_pid)

        pages = filter_user_pages(self.channel.pages())
        page = pages[0] if pages else await self.channel.new_page()
        page.set_default_timeout(DEFAULT_TIMEOUT_MS)
        page.set_default_navigation_timeout(self.config.navigation_timeout_ms)

        await self.session.start(page, announce=False)
        buffer.console_separator(STARTED_TITLE)
        buffer.network_separator(STARTED_TITLE)
        if url:
            buffer.log_network(f"URL: {url}")
            await self._navigate(page, url, buffer)
        await self._close_extra_tabs(page)

    async def _start_join(self) -> None:
        pages = filter_user_pages(self.channel.pages())
        if not pages:
            page = await self.channel.new_page()
        elif len(pages) == 1 or not self.interactive:
            page = pages[0]
        else:
            page = await self._ask_for_tab(pages)
        await self.session.start(page)

    async def _ask_for_tab(self, pages: List[Page]) -> Page:
        typer.echo("Open tabs:")
        for index, page in enumerate(pages, start=1):
            typer.echo(f"  {index}. {page_url(page) or BLANK_URL}")
        choice = await asyncio.to_thread(typer.prompt, "Tab to monitor", default=1, type=int)
        if 1 <= choice <= len(pages):
            return pages[choice - 1]
        typer.echo("Invalid choice, monitoring tab 1")
        return pages[0]

    async def _navigate(self, page: Page, url: str, buffer: LogBuffer) -> None:
        try:
            await page.goto(url, wait_until="domcontentloaded")
            logger.info(f"Navigated to {url}")
        except Exception as e:
            # The session keeps running; the page may still finish loading
            logger.warning(f"Navigation to {url} failed: {e}")
            buffer.log_console(f"[{console_timestamp()}] [NAVIGATION ERROR] {url}: {e}")

    async def _close_extra_tabs(self, keep: Page) -> None:
        for page in self.channel.pages():
            if page is keep:
                continue
            url = page_url(page)
            if url == BLANK_URL or is_internal_url(url):
                try:
                    await page.close()
                except Exception as e:
                    logger.debug(f"Could not close tab {url}: {e}")

    async def _write_pid(self, pid: int) -> None:
        try:
            async with aiofiles.open(self.paths.pid_file, "w") as f:
                await f.write(str(pid))
        except OSError as e:
            logger.warning(f"Could not write pid file: {e}")

    def _on_disconnected(self, browser) -> None:
        self.shutdown.trigger("browser disconnected")

    def _register_shutdown_steps(self) -> None:
        self.shutdown.add_step("keyboard", self._stop_keyboard)
        self.shutdown.add_step("capture", self._detach)
        self.shutdown.add_step("control server", self._stop_server)
        self.shutdown.add_step("realtime writer", self._close_writer)
        self.shutdown.add_step("channel", self._close_channel)
        self.shutdown.add_step("port forwarding", self._release_forward)
        self.shutdown.add_step("pid file", self._remove_pid_file)

    async def _stop_keyboard(self, request: ShutdownRequest) -> None:
        if self.keyboard is not None:
            self.keyboard.stop()

    async def _detach(self, request: ShutdownRequest) -> None:
        if self.session is not None:
            self.session.unwatch_new_tabs()
            self.session.detach()

    async def _stop_server(self, request: ShutdownRequest) -> None:
        if self.server is not None:
            await self.server.stop()

    async def _close_writer(self, request: ShutdownRequest) -> None:
        if self.writer is not None:
            await self.writer.close()

    async def _close_channel(self, request: ShutdownRequest) -> None:
        if self.channel is not None:
            await self.channel.close(close_browser=request.close_browser)

    async def _release_forward(self, request: ShutdownRequest) -> None:
        if self.connection is not None:
            await self.connection.release()

    async def _remove_pid_file(self, request: ShutdownRequest) -> None:
        if self.mode != ConnectionMode.LAUNCH or not request.close_browser:
            return
        try:
            await aiofiles.os.remove(self.paths.pid_file)
        except FileNotFoundError:
            pass
