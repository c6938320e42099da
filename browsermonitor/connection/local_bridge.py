"""Bridge for a browser running on the same host as the monitor."""

import asyncio
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import psutil

from ..models.connection import Endpoint, LaunchSpec
from .bridge import BridgeResult, PlatformBridge, mark_project, scan_ports

logger = logging.getLogger(__name__)

CHROME_EXECUTABLES = [
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
]

MAC_CHROME_PATH = "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome"


def find_chrome(explicit: Optional[str] = None) -> Optional[str]:
    """Locate a Chrome or Chromium executable."""
    if explicit:
        return explicit
    for name in CHROME_EXECUTABLES:
        path = shutil.which(name)
        if path:
            return path
    if sys.platform == "darwin" and os.path.exists(MAC_CHROME_PATH):
        return MAC_CHROME_PATH
    return None


def chrome_arguments(spec: LaunchSpec) -> List[str]:
    args = [
        f"--remote-debugging-port={spec.port}",
        f"--user-data-dir={spec.profile_ref}",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-session-crashed-bubble",
        "--start-maximized",
    ]
    if spec.headless:
        args.append("--headless=new")
    if spec.url:
        args.append(spec.url)
    return args


def debugging_port_flag(port: int) -> str:
    return f"--remote-debugging-port={port}"


def debugging_args(cmdline: List[str]) -> Tuple[Optional[int], Optional[str]]:
    """Debugging port and user data directory from an argument vector."""
    port = profile = None
    for arg in cmdline:
        if arg.startswith("--remote-debugging-port="):
            value = arg.split("=", 1)[1]
            port = int(value) if value.isdigit() else None
        elif arg.startswith("--user-data-dir="):
            profile = arg.split("=", 1)[1]
    return port, profile


class LocalBridge(PlatformBridge):
    """Loopback browser: no forwarding, process control through psutil."""

    name = "local"

    def __init__(self, chrome_path: Optional[str] = None, host: str = "127.0.0.1"):
        self.chrome_path = chrome_path
        self.host = host
        self.launched_pids: List[int] = []

    def connect_host(self) -> str:
        return self.host

    async def list_candidates(self, project_profile: Optional[str] = None) -> List[Endpoint]:
        endpoints = await scan_ports(self.host)
        if not endpoints:
            return endpoints
        profiles = await asyncio.to_thread(self._profiles_by_port_sync)
        endpoints = [e.model_copy(update={"profile": profiles.get(e.port)}) for e in endpoints]
        return mark_project(endpoints, project_profile)

    def _profiles_by_port_sync(self) -> Dict[int, str]:
        profiles: Dict[int, str] = {}
        for proc in psutil.process_iter(["cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            port, profile = debugging_args(cmdline)
            if port is not None and profile:
                profiles.setdefault(port, profile)
        return profiles

    async def launch(self, spec: LaunchSpec) -> BridgeResult:
        executable = find_chrome(self.chrome_path)
        if executable is None:
            return BridgeResult(ok=False, message="No Chrome or Chromium executable found; set chrome_path")

        Path(spec.profile_ref).mkdir(parents=True, exist_ok=True)
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *chrome_arguments(spec),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"Could not start {executable}: {e}")
            return BridgeResult(ok=False, message=str(e))

        self.launched_pids.append(process.pid)
        logger.info(f"Launched {executable} (pid {process.pid}) on port {spec.port}")
        return BridgeResult(ok=True, changed=True, pid=process.pid, message=executable)

    async def bind_address(self, port: int) -> Optional[str]:
        return await asyncio.to_thread(self._bind_address_sync, port)

    def _bind_address_sync(self, port: int) -> Optional[str]:
        try:
            connections = psutil.net_connections(kind="inet")
        except (psutil.AccessDenied, OSError) as e:
            logger.debug(f"Cannot list sockets: {e}")
            return None
        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
                continue
            address = conn.laddr.ip
            if address in ("127.0.0.1", "::1"):
                return address
            if address in ("0.0.0.0", "::"):
                return "127.0.0.1" if address == "0.0.0.0" else "::1"
        return None

    async def terminate(self, port: int) -> BridgeResult:
        return await asyncio.to_thread(self._terminate_sync, port)

    def _terminate_sync(self, port: int) -> BridgeResult:
        flag = debugging_port_flag(port)
        victims = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            try:
                cmdline = proc.info.get("cmdline") or []
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            if flag in cmdline:
                victims.append(proc)

        if not victims:
            return BridgeResult(ok=True, changed=False, message=f"No browser owns port {port}")

        for proc in victims:
            try:
                proc.terminate()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.debug(f"Could not terminate pid {proc.pid}: {e}")
        gone, alive = psutil.wait_procs(victims, timeout=5)
        for proc in alive:
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
                logger.warning(f"Could not kill pid {proc.pid}: {e}")
        return BridgeResult(ok=True, changed=True, message=f"Stopped {len(gone) + len(alive)} process(es)")
