"""Models describing how the monitor reaches its browser."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class ConnectionMode(str, Enum):
    """How the control connection is obtained."""
    LAUNCH = "launch"
    JOIN = "join"


class CaptureMode(str, Enum):
    """Buffering mode, fixed for the lifetime of a session."""
    LAZY = "lazy"
    REALTIME = "realtime"


class Endpoint(BaseModel):
    """A CDP endpoint, discovered or constructed."""
    host: str = Field(default="127.0.0.1")
    port: int = Field(ge=1, le=65535)
    reachable: bool = Field(default=False)
    label: Optional[str] = Field(default=None, description="Browser product string, when known")
    profile: Optional[str] = Field(default=None, description="User data directory of the browser, when known")
    project: bool = Field(default=False, description="Browser runs with this project's profile")

    @property
    def url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class LaunchSpec(BaseModel):
    """What to start when the monitor launches (or relaunches) a browser."""
    profile_ref: Path = Field(description="User data directory for the browser profile")
    port: Optional[int] = Field(default=None, ge=1, le=65535, description="Debugging port; chosen if unset")
    url: Optional[str] = Field(default=None, description="Initial URL")
    headless: bool = Field(default=False)

    def with_port(self, port: int) -> "LaunchSpec":
        return self.model_copy(update={"port": port})


class ConnectionIntent(BaseModel):
    """Immutable description of what one invocation wants to connect to."""

    model_config = {"frozen": True}

    mode: ConnectionMode
    endpoint_hint: Optional[Endpoint] = Field(default=None)
    retry_budget: int = Field(default=5, ge=1, description="Handshake attempts before diagnosing")
    diagnostics_enabled: bool = Field(default=True)
    launch: Optional[LaunchSpec] = Field(default=None, description="Used by LAUNCH and by remediation")

    @model_validator(mode='after')
    def launch_required_for_launch_mode(self):
        if self.mode == ConnectionMode.LAUNCH and self.launch is None:
            raise ValueError("launch mode requires a launch spec")
        return self
