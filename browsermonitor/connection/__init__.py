"""Connection layer: reaching a browser over the Chrome DevTools Protocol.

Main Components:
- Platform Bridge: OS-specific discovery, launch and port forwarding
- Diagnostics: read-only classification of connection failures
- CDP Handshake / Control Channel: one connection attempt and its result
- Connection Manager: the discover/connect/diagnose/remediate state machine
"""

from typing import Optional

from .bridge import BridgeResult, ForwardRule, PlatformBridge
from .channel import ControlChannel
from .diagnostics import Diagnosis, DiagnosisKind, diagnose
from .handshake import CdpHandshake
from .local_bridge import LocalBridge
from .manager import (
    ConnectionManager,
    ConnectionSettings,
    ConnectionState,
    ConnectionStateMachine,
    NonInteractivePrompts,
    OperatorPrompts,
    Transition,
)
from .wsl_bridge import WslBridge, is_wsl


def create_bridge(chrome_path: Optional[str] = None) -> PlatformBridge:
    """Bridge for the platform this process runs on."""
    if is_wsl():
        return WslBridge(chrome_path=chrome_path)
    return LocalBridge(chrome_path=chrome_path)


__all__ = [
    "BridgeResult",
    "ForwardRule",
    "PlatformBridge",
    "ControlChannel",
    "Diagnosis",
    "DiagnosisKind",
    "diagnose",
    "CdpHandshake",
    "LocalBridge",
    "WslBridge",
    "is_wsl",
    "create_bridge",
    "ConnectionManager",
    "ConnectionSettings",
    "ConnectionState",
    "ConnectionStateMachine",
    "NonInteractivePrompts",
    "OperatorPrompts",
    "Transition",
]
