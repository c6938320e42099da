"""Platform bridge interface.

A bridge hides the OS-specific work of finding, starting and reaching a
browser: probing debugging endpoints, launching a browser process, managing
port forwarding rules and stopping a browser that owns a port. Every method
is best-effort; failures are returned as results, never raised.
"""

import asyncio
import logging
import re
import socket
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import httpx
from pydantic import BaseModel, Field

from ..models.connection import Endpoint, LaunchSpec

logger = logging.getLogger(__name__)

CANDIDATE_PORTS = range(9222, 9230)
CANDIDATE_PROBE_TIMEOUT = 0.8
DEFAULT_PROBE_TIMEOUT = 3.0

DEBUGGING_PORT_ARG = re.compile(r"--remote-debugging-port=(\d+)")
USER_DATA_DIR_ARG = re.compile(r'"--user-data-dir=([^"]+)"|--user-data-dir="([^"]+)"|--user-data-dir=(\S+)')


class ForwardRule(BaseModel):
    """A port forwarding rule: ``listen_address:listen_port`` -> ``connect_address:connect_port``."""
    listen_address: str = "0.0.0.0"
    listen_port: int
    connect_address: str
    connect_port: int
    kind: str = Field(default="v4tov4", description="v4tov4 or v4tov6")


class BridgeResult(BaseModel):
    """Outcome of a bridge side effect."""
    ok: bool = True
    changed: bool = Field(default=False, description="False when the call was a no-op")
    message: str = ""
    pid: Optional[int] = None


async def fetch_version(endpoint: Endpoint, timeout: float = DEFAULT_PROBE_TIMEOUT) -> Optional[dict]:
    """GET ``/json/version`` of a CDP endpoint; None when unreachable."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(f"{endpoint.url}/json/version")
            if response.status_code != 200:
                return None
            return response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.debug(f"Probe of {endpoint} failed: {e}")
        return None


async def scan_ports(host: str, ports=CANDIDATE_PORTS, timeout: float = CANDIDATE_PROBE_TIMEOUT) -> List[Endpoint]:
    """Probe a port range concurrently and return the endpoints that answered."""
    endpoints = [Endpoint(host=host, port=port) for port in ports]
    results = await asyncio.gather(*(fetch_version(e, timeout) for e in endpoints))
    found = []
    for endpoint, info in zip(endpoints, results):
        if info is None:
            continue
        browser = info.get("Browser")
        found.append(endpoint.model_copy(update={
            "reachable": True,
            "label": f"{endpoint.port} - {browser}" if browser else str(endpoint.port),
        }))
    return found


def parse_command_line(command_line: str) -> Tuple[Optional[int], Optional[str]]:
    """Debugging port and user data directory from a browser command line."""
    port = DEBUGGING_PORT_ARG.search(command_line)
    profile = USER_DATA_DIR_ARG.search(command_line)
    return (
        int(port.group(1)) if port else None,
        next(g for g in profile.groups() if g) if profile else None,
    )


def profile_name(profile: str) -> str:
    """Last component of a POSIX or Windows profile path."""
    return re.split(r"[\\/]", profile.rstrip("\\/"))[-1]


def mark_project(endpoints: List[Endpoint], project_profile: Optional[str]) -> List[Endpoint]:
    """Flag endpoints whose browser uses the profile named ``project_profile``."""
    if not project_profile:
        return endpoints
    return [
        endpoint.model_copy(update={"project": True})
        if endpoint.profile and profile_name(endpoint.profile) == project_profile
        else endpoint
        for endpoint in endpoints
    ]


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


class PlatformBridge(ABC):
    """OS-specific discovery, launch and forwarding operations."""

    # Whether the browser is only reachable through a forwarding rule
    requires_forwarding = False

    name = "platform"

    @abstractmethod
    async def list_candidates(self, project_profile: Optional[str] = None) -> List[Endpoint]:
        """Endpoints of running browsers with remote debugging enabled.

        Args:
            project_profile: Profile directory name of this project; matching
                endpoints come back with ``project`` set
        """

    @abstractmethod
    async def launch(self, spec: LaunchSpec) -> BridgeResult:
        """Start a browser bound to ``spec.port`` with the given profile."""

    async def probe(self, endpoint: Endpoint) -> bool:
        return await fetch_version(endpoint) is not None

    @abstractmethod
    def connect_host(self) -> str:
        """Host this process uses to reach the browser."""

    async def resolve_host(self) -> str:
        """Like connect_host, but may run commands to find it."""
        return self.connect_host()

    async def forward_rules(self) -> List[ForwardRule]:
        return []

    async def install_forward(self, port: int, target: str) -> BridgeResult:
        """Forward ``port`` to ``target:port``. Any existing rule is removed first."""
        return BridgeResult(ok=True, changed=False, message="forwarding not used")

    async def remove_forward(self, port: int) -> BridgeResult:
        """Remove the forwarding rule on ``port``; removing an absent rule is a no-op."""
        return BridgeResult(ok=True, changed=False, message="forwarding not used")

    @abstractmethod
    async def bind_address(self, port: int) -> Optional[str]:
        """Loopback address the browser listens on for ``port`` (``127.0.0.1`` or ``::1``)."""

    @abstractmethod
    async def terminate(self, port: int) -> BridgeResult:
        """Stop the browser that owns the debugging ``port``."""

    async def choose_port(self, preferred: Optional[int] = None) -> int:
        """First free port of the candidate range, starting at ``preferred``."""
        if preferred is not None:
            return preferred
        for port in CANDIDATE_PORTS:
            if is_port_free(port):
                return port
        return CANDIDATE_PORTS[0]

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(host={self.connect_host()})"
