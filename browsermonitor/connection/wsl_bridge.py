"""Bridge from WSL2 to a Chrome running on the Windows host.

WSL2 has its own network namespace, and Chrome only binds its debugging
port to a Windows loopback address (``127.0.0.1`` or ``::1``). The monitor
therefore reaches Chrome through the WSL default gateway and a
``netsh interface portproxy`` rule that forwards ``0.0.0.0:PORT`` to the
loopback address Chrome actually bound.
"""

import asyncio
import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..errors import BridgeError
from ..models.connection import Endpoint, LaunchSpec
from .bridge import (
    CANDIDATE_PROBE_TIMEOUT,
    BridgeResult,
    ForwardRule,
    PlatformBridge,
    fetch_version,
    mark_project,
    parse_command_line,
    profile_name,
    scan_ports,
)

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT = 5.0
FORWARD_KINDS = ("v4tov4", "v4tov6")
LISTEN_ADDRESS = "0.0.0.0"

DEFAULT_ROUTE = re.compile(r"default via (\d+\.\d+\.\d+\.\d+)")
RULE_LINE = re.compile(r"^\s*(\d+\.\d+\.\d+\.\d+)\s+(\d+)\s+(\S+)\s+(\d+)\s*$")

WINDOWS_CHROME = r"$env:LOCALAPPDATA\Google\Chrome SxS\Application\chrome.exe"

# Main browser processes only; renderers and helpers carry --type=
CHROME_COMMAND_LINES = (
    "Get-CimInstance Win32_Process -Filter \"Name='chrome.exe'\" | "
    "Where-Object { $_.CommandLine -match '--remote-debugging-port=' -and $_.CommandLine -notmatch '--type=' } | "
    "ForEach-Object { $_.CommandLine }"
)


def is_wsl() -> bool:
    """True when running inside WSL."""
    if os.environ.get("WSL_DISTRO_NAME"):
        return True
    try:
        release = Path("/proc/version").read_text().lower()
    except OSError:
        return False
    return "microsoft" in release or "wsl" in release


def parse_forward_rules(output: str, kind: str) -> List[ForwardRule]:
    """Parse ``netsh interface portproxy show <kind>`` output."""
    rules = []
    for line in output.splitlines():
        match = RULE_LINE.match(line)
        if match:
            rules.append(ForwardRule(
                listen_address=match.group(1),
                listen_port=int(match.group(2)),
                connect_address=match.group(3),
                connect_port=int(match.group(4)),
                kind=kind,
            ))
    return rules


def parse_bind_address(output: str, port: int) -> Optional[str]:
    """Find the loopback address bound to ``port`` in ``netstat.exe -ano`` output."""
    for line in output.splitlines():
        tokens = line.split()
        if len(tokens) < 2 or "LISTEN" not in line:
            continue
        if tokens[1] == f"127.0.0.1:{port}":
            return "127.0.0.1"
        if tokens[1] == f"[::1]:{port}":
            return "::1"
    return None


def forward_kind(target: str) -> str:
    return "v4tov6" if ":" in target else "v4tov4"


def parse_chrome_processes(output: str) -> List[Tuple[int, Optional[str]]]:
    """``(port, profile)`` of each Windows Chrome listening for debugging, by port."""
    found: Dict[int, Optional[str]] = {}
    for line in output.splitlines():
        if "--type=" in line:
            continue
        port, profile = parse_command_line(line)
        if port is not None and port not in found:
            found[port] = profile
    return sorted(found.items())


def ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class WslBridge(PlatformBridge):
    """Windows host browser reached from WSL through netsh port proxies."""

    requires_forwarding = True
    name = "wsl"

    def __init__(self, chrome_path: Optional[str] = None, gateway: Optional[str] = None,
                 profile_root: str = r"$env:LOCALAPPDATA\browsermonitor\profiles"):
        self.chrome_path = chrome_path or WINDOWS_CHROME
        self.profile_root = profile_root
        self._gateway = gateway

    async def _run(self, *args: str, timeout: float = COMMAND_TIMEOUT) -> Tuple[int, str]:
        """Run a command and return ``(returncode, stdout)``."""
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BridgeError(f"Cannot run {args[0]}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise BridgeError(f"{args[0]} timed out after {timeout}s")

        if process.returncode != 0 and stderr:
            logger.debug(f"{args[0]} exited {process.returncode}: {stderr.decode(errors='replace').strip()}")
        return process.returncode, stdout.decode(errors="replace")

    async def _powershell(self, command: str) -> Tuple[int, str]:
        return await self._run("powershell.exe", "-NoProfile", "-Command", command)

    async def resolve_host(self) -> str:
        return await self.gateway()

    async def gateway(self) -> str:
        """Windows host address as seen from WSL (the default gateway)."""
        if self._gateway is None:
            try:
                _, output = await self._run("ip", "route")
            except BridgeError as e:
                logger.warning(f"Cannot read routes: {e}")
                output = ""
            match = DEFAULT_ROUTE.search(output)
            self._gateway = match.group(1) if match else "localhost"
            logger.info(f"WSL detected, using Windows host IP: {self._gateway}")
        return self._gateway

    def connect_host(self) -> str:
        return self._gateway or "localhost"

    async def list_candidates(self, project_profile: Optional[str] = None) -> List[Endpoint]:
        """Windows Chrome processes started with a debugging port.

        Chrome binds the port to a Windows loopback address, so a candidate is
        only reachable from WSL once a port proxy forwards it.
        """
        host = await self.gateway()
        try:
            _, output = await self._powershell(CHROME_COMMAND_LINES)
        except BridgeError as e:
            logger.warning(f"Cannot list Windows Chrome processes: {e}")
            return await scan_ports(host)

        endpoints = []
        for port, profile in parse_chrome_processes(output):
            name = profile_name(profile) if profile else "default profile"
            endpoints.append(Endpoint(host=host, port=port, profile=profile, label=f"{port} - {name}"))

        versions = await asyncio.gather(*(fetch_version(e, CANDIDATE_PROBE_TIMEOUT) for e in endpoints))
        endpoints = [
            endpoint.model_copy(update={"reachable": version is not None})
            for endpoint, version in zip(endpoints, versions)
        ]
        return mark_project(endpoints, project_profile)

    async def forward_rules(self) -> List[ForwardRule]:
        rules: List[ForwardRule] = []
        for kind in FORWARD_KINDS:
            try:
                _, output = await self._powershell(f"netsh interface portproxy show {kind}")
            except BridgeError as e:
                logger.warning(f"Cannot list {kind} port proxies: {e}")
                continue
            rules.extend(parse_forward_rules(output, kind))
        return rules

    async def remove_forward(self, port: int) -> BridgeResult:
        existing = [r for r in await self.forward_rules() if r.listen_port == port]
        if not existing:
            return BridgeResult(ok=True, changed=False, message=f"No port proxy on {port}")

        failures = []
        for rule in existing:
            try:
                code, _ = await self._powershell(
                    f"netsh interface portproxy delete {rule.kind} "
                    f"listenport={port} listenaddress={rule.listen_address}"
                )
            except BridgeError as e:
                failures.append(str(e))
                continue
            if code != 0:
                failures.append(f"netsh delete {rule.kind} exited {code} (administrator rights needed?)")

        if failures:
            logger.warning(f"Could not remove port proxy on {port}: {failures[0]}")
            return BridgeResult(ok=False, changed=False, message=failures[0])
        logger.info(f"Port proxy removed from port {port}")
        return BridgeResult(ok=True, changed=True, message=f"Removed {len(existing)} rule(s)")

    async def install_forward(self, port: int, target: str) -> BridgeResult:
        removal = await self.remove_forward(port)
        if not removal.ok:
            return removal

        kind = forward_kind(target)
        try:
            code, _ = await self._powershell(
                f"netsh interface portproxy add {kind} listenport={port} listenaddress={LISTEN_ADDRESS} "
                f"connectport={port} connectaddress={target}"
            )
        except BridgeError as e:
            return BridgeResult(ok=False, message=str(e))
        if code != 0:
            message = f"netsh add {kind} exited {code} (administrator rights needed?)"
            logger.warning(f"Could not set up port proxy: {message}")
            return BridgeResult(ok=False, message=message)

        logger.info(f"Port proxy configured: {LISTEN_ADDRESS}:{port} -> {target}:{port} ({kind})")
        return BridgeResult(ok=True, changed=True)

    async def bind_address(self, port: int) -> Optional[str]:
        try:
            _, output = await self._run("netstat.exe", "-ano")
        except BridgeError as e:
            logger.debug(f"netstat failed: {e}")
            return None
        return parse_bind_address(output, port)

    async def launch(self, spec: LaunchSpec) -> BridgeResult:
        profile = f"{self.profile_root}\\{Path(spec.profile_ref).name}"
        arguments = [
            f"--remote-debugging-port={spec.port}",
            "--no-first-run",
            "--no-default-browser-check",
            "--disable-session-crashed-bubble",
            "--start-maximized",
        ]
        if spec.headless:
            arguments.append("--headless=new")
        if spec.url:
            arguments.append(spec.url)

        # Double-quoted so PowerShell expands $env: in the profile root
        quoted = [ps_quote(a) for a in arguments]
        quoted.insert(1, f'"--user-data-dir=`"{profile}`""')
        command = (
            f"$p = Start-Process -FilePath \"{self.chrome_path}\" "
            f"-ArgumentList {','.join(quoted)} -PassThru; $p.Id"
        )
        try:
            code, output = await self._powershell(command)
        except BridgeError as e:
            return BridgeResult(ok=False, message=str(e))
        if code != 0:
            return BridgeResult(ok=False, message=f"Start-Process exited {code}")

        pid = int(output.strip()) if output.strip().isdigit() else None
        logger.info(f"Launched Windows Chrome (pid {pid}) on port {spec.port}")
        return BridgeResult(ok=True, changed=True, pid=pid)

    async def terminate(self, port: int) -> BridgeResult:
        command = (
            "Get-CimInstance Win32_Process -Filter \"Name='chrome.exe'\" | "
            f"Where-Object {{ $_.CommandLine -match '--remote-debugging-port={port}' }} | "
            "ForEach-Object { Stop-Process -Id $_.ProcessId -Force -ErrorAction SilentlyContinue; $_.ProcessId }"
        )
        try:
            _, output = await self._powershell(command)
        except BridgeError as e:
            return BridgeResult(ok=False, message=str(e))
        stopped = [line for line in output.splitlines() if line.strip().isdigit()]
        return BridgeResult(ok=True, changed=bool(stopped), message=f"Stopped {len(stopped)} process(es)")
