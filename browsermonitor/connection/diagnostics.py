"""Read-only classification of a failed connection.

Diagnosis never changes OS state; it only inspects forwarding rules and the
address the browser bound, then decides which of three faults applies.
Only a forwarding conflict can be fixed automatically.
"""

import logging
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.connection import Endpoint
from .bridge import ForwardRule, PlatformBridge

logger = logging.getLogger(__name__)


class DiagnosisKind(str, Enum):
    """What is wrong with an unreachable endpoint."""
    NOTHING_LISTENING = "nothing_listening"
    CONFLICT = "conflict"
    ACCESS_REFUSED = "access_refused"


class Diagnosis(BaseModel):
    """Result of diagnosing one endpoint."""
    kind: DiagnosisKind
    endpoint: Endpoint
    bind_address: Optional[str] = None
    rules: List[ForwardRule] = Field(default_factory=list)
    summary: str = ""
    guidance: str = ""

    @property
    def auto_fixable(self) -> bool:
        return self.kind == DiagnosisKind.CONFLICT


def launch_hint(port: int) -> str:
    return (
        f"Start Chrome with remote debugging enabled, e.g. "
        f"'google-chrome --remote-debugging-port={port}', "
        f"or let browsermonitor launch it with 'browsermonitor open'. "
        f"From a remote server, create an SSH reverse tunnel first: "
        f"'ssh -R {port}:localhost:{port} user@this-server'."
    )


async def diagnose(bridge: PlatformBridge, endpoint: Endpoint) -> Diagnosis:
    """Classify why ``endpoint`` did not accept a connection.

    Args:
        bridge: Platform bridge used to inspect rules and listening sockets
        endpoint: Endpoint whose handshake failed

    Returns:
        Diagnosis with operator guidance
    """
    port = endpoint.port
    rules = [rule for rule in await bridge.forward_rules() if rule.listen_port == port]
    bind = await bridge.bind_address(port)
    logger.debug(f"Diagnosing {endpoint}: bind={bind}, rules={len(rules)}")

    if rules:
        stale = [rule for rule in rules if bind is None or rule.connect_address != bind]
        if stale:
            rule = stale[0]
            target = bind or "nothing"
            return Diagnosis(
                kind=DiagnosisKind.CONFLICT,
                endpoint=endpoint,
                bind_address=bind,
                rules=rules,
                summary=(
                    f"Port proxy {rule.listen_address}:{port} -> {rule.connect_address}:{rule.connect_port} "
                    f"does not match the browser (bound to {target})"
                ),
                guidance=(
                    "Remove the stale port proxy and restart the browser; "
                    "browsermonitor can do this for you."
                ),
            )

    if bind is None:
        return Diagnosis(
            kind=DiagnosisKind.NOTHING_LISTENING,
            endpoint=endpoint,
            rules=rules,
            summary=f"Nothing is listening on port {port}",
            guidance=launch_hint(port),
        )

    if bridge.requires_forwarding and not rules:
        guidance = (
            f"The browser only listens on {bind}. Forward the port from an elevated prompt: "
            f"'netsh interface portproxy add {'v4tov6' if ':' in bind else 'v4tov4'} "
            f"listenport={port} listenaddress=0.0.0.0 connectport={port} connectaddress={bind}'."
        )
    else:
        guidance = (
            f"The browser listens on {bind}:{port} but refused the connection. "
            f"Check firewall rules and that the debugging port is not restricted."
        )
    return Diagnosis(
        kind=DiagnosisKind.ACCESS_REFUSED,
        endpoint=endpoint,
        bind_address=bind,
        rules=rules,
        summary=f"Port {port} is listening on {bind} but not reachable from here",
        guidance=guidance,
    )
