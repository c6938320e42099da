"""Shared test fixtures and configuration for browsermonitor tests."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from browsermonitor.capture.buffer import LogBuffer
from browsermonitor.capture.config import CaptureSettings, OutputPaths
from browsermonitor.capture.context import CaptureContext


FIXED_NOW = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
FIXED_CONSOLE_TS = "03:04:05.678"
FIXED_ISO_TS = "2024-01-02T03:04:05.678Z"


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def buffer():
    return LogBuffer()


@pytest.fixture
def paused():
    """Mutable pause flag for capture contexts."""
    return {"value": False}


@pytest.fixture
def context(buffer, clock, wall_clock, paused):
    return CaptureContext(
        buffer,
        settings=CaptureSettings(),
        is_paused=lambda: paused["value"],
        monotonic=clock,
        wall_clock=wall_clock,
    )


@pytest.fixture
def output_paths(tmp_path):
    return OutputPaths(tmp_path)


@pytest.fixture
def mock_page():
    """Mock Playwright page."""
    page = AsyncMock()
    page.on = MagicMock()
    page.remove_listener = MagicMock()
    page.url = "https://example.com/"
    return page


def make_request(url="https://example.com/api/data", method="GET", resource_type="fetch",
                 headers=None, post_data=None, failure=None):
    """Mock Playwright request."""
    request = MagicMock()
    request.url = url
    request.method = method
    request.resource_type = resource_type
    request.headers = headers if headers is not None else {"accept": "*/*"}
    request.post_data = post_data
    request.failure = failure
    return request


def make_response(request, status=200, status_text="OK", headers=None, body=""):
    """Mock Playwright response for ``request``."""
    response = MagicMock()
    response.request = request
    response.url = request.url
    response.status = status
    response.status_text = status_text
    response.headers = headers if headers is not None else {"content-type": "text/plain"}
    response.text = AsyncMock(return_value=body)
    return response


def make_console_message(msg_type="log", text="", values=None):
    """Mock console message whose arguments resolve to ``values``."""
    message = MagicMock()
    message.type = msg_type
    message.text = text
    args = []
    for value in values or []:
        handle = MagicMock()
        handle.json_value = AsyncMock(return_value=value)
        args.append(handle)
    message.args = args
    return message


@pytest.fixture
def request_factory():
    return make_request


@pytest.fixture
def response_factory():
    return make_response


@pytest.fixture
def console_factory():
    return make_console_message


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
