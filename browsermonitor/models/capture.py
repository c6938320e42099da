"""Pydantic models for captured page activity and dump artifacts.

This module defines the records produced by the capture engine: per-request
detail documents, the in-flight correlation entries used while a request is
outstanding, buffer statistics and the per-artifact results of a dump.
"""

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class RequestState(str, Enum):
    """Lifecycle state of a captured request."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RequestMetadata(BaseModel):
    """Outbound half of a request detail."""

    model_config = {"populate_by_name": True}

    headers: Dict[str, str] = Field(default_factory=dict, description="Request headers")
    post_data: Optional[str] = Field(default=None, alias="postData", description="Request body")


class ResponseMetadata(BaseModel):
    """Response half of a completed request."""

    model_config = {"populate_by_name": True}

    status: int = Field(description="HTTP status code")
    status_text: str = Field(default="", alias="statusText", description="HTTP status text")
    headers: Dict[str, str] = Field(default_factory=dict, description="Response headers")
    body: Optional[str] = Field(default=None, description="Text body, binary marker or read error")
    duration: int = Field(ge=0, description="Milliseconds from request start to response")


class FailureMetadata(BaseModel):
    """Failure half of a request that never completed."""

    model_config = {"populate_by_name": True}

    error_text: Optional[str] = Field(default=None, alias="errorText", description="Failure reason")
    duration: int = Field(ge=0, description="Milliseconds from request start to failure")


class RequestDetail(BaseModel):
    """Per-request document persisted as ``<id>.json``.

    A detail is created when the request starts and reaches at most one
    terminal state: ``response`` or ``failed``.
    """

    model_config = {"populate_by_name": True}

    id: int = Field(ge=1, description="Session-local monotonic request id")
    timestamp: str = Field(description="ISO timestamp of the request start")
    method: str = Field(description="HTTP method")
    resource_type: str = Field(default="other", alias="resourceType", description="Playwright resource type")
    url: str = Field(description="Request URL")
    request: RequestMetadata = Field(default_factory=RequestMetadata)
    response: Optional[ResponseMetadata] = Field(default=None)
    failed: Optional[FailureMetadata] = Field(default=None)

    @property
    def state(self) -> RequestState:
        """Current lifecycle state."""
        if self.response is not None:
            return RequestState.COMPLETED
        if self.failed is not None:
            return RequestState.FAILED
        return RequestState.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.state != RequestState.PENDING

    def complete(self, response: ResponseMetadata) -> bool:
        """Record the response. Returns False if the detail is already terminal."""
        if self.is_terminal:
            return False
        self.response = response
        return True

    def fail(self, failure: FailureMetadata) -> bool:
        """Record the failure. Returns False if the detail is already terminal."""
        if self.is_terminal:
            return False
        self.failed = failure
        return True

    def to_document(self) -> Dict[str, Any]:
        """Serialize using the on-disk field names."""
        exclude = {name for name in ("response", "failed") if getattr(self, name) is None}
        return self.model_dump(by_alias=True, exclude=exclude)


class InFlightRequest(BaseModel):
    """Correlation entry for a request awaiting its terminal event."""

    id: int = Field(ge=1)
    method: str
    url: str
    start_time: float = Field(description="Monotonic clock reading at request start")
    resource_type: str = Field(default="other")

    def elapsed_ms(self, now: float) -> int:
        """Milliseconds elapsed since the request started."""
        return max(0, int(round((now - self.start_time) * 1000)))


class BufferStats(BaseModel):
    """Counts reported by the buffer without side effects."""
    console_entries: int = 0
    network_entries: int = 0
    request_details: int = 0
    pending_requests: int = 0

    @property
    def is_empty(self) -> bool:
        return (
            self.console_entries == 0
            and self.network_entries == 0
            and self.request_details == 0
        )


class ArtifactResult(BaseModel):
    """Outcome of writing one dump artifact."""
    name: str = Field(description="Artifact name, e.g. console, network, cookies")
    ok: bool = Field(default=True)
    path: Optional[Path] = Field(default=None, description="File or directory written")
    count: int = Field(default=0, description="Entries written, where applicable")
    error: Optional[str] = Field(default=None)
    skipped: bool = Field(default=False, description="Collaborator had nothing to capture")


class DumpReport(BaseModel):
    """Summary of one dump."""
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    stats_before: BufferStats = Field(default_factory=BufferStats)
    artifacts: List[ArtifactResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(artifact.ok for artifact in self.artifacts)

    @property
    def failed_artifacts(self) -> List[ArtifactResult]:
        return [artifact for artifact in self.artifacts if not artifact.ok]

    def artifact(self, name: str) -> Optional[ArtifactResult]:
        for artifact in self.artifacts:
            if artifact.name == name:
                return artifact
        return None


class TabInfo(BaseModel):
    """One entry of the tab listing."""
    index: int = Field(ge=1, description="1-based position in the listing")
    url: str
    title: Optional[str] = None
    active: bool = False


class CookieEntry(BaseModel):
    """Cookie as written to the per-domain cookie document."""

    model_config = {"populate_by_name": True}

    name: str
    value: str
    domain: str
    path: str = "/"
    expires: str = Field(default="Session", description="ISO expiry or 'Session'")
    http_only: bool = Field(default=False, alias="httpOnly")
    secure: bool = False
    same_site: str = Field(default="None", alias="sameSite")

    @field_validator('same_site', mode='before')
    @classmethod
    def default_same_site(cls, v):
        return v or "None"


class CookieDocument(BaseModel):
    """All cookies of one domain."""

    model_config = {"populate_by_name": True}

    timestamp: str
    domain: str
    current_url: str = Field(alias="currentUrl")
    count: int = 0
    cookies: List[CookieEntry] = Field(default_factory=list)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)
