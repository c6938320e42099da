"""Network request handlers with request/response correlation.

This module provides the handlers for Playwright ``request``, ``response``
and ``requestfailed`` events. A request start allocates the next session id,
stores its RequestDetail immediately and remembers the Request object in the
context's in-flight map; the terminal event looks the object up, completes
the detail and removes the entry. Unmatched terminal events still produce a
network line using the placeholder id.
"""

import asyncio
import logging
from typing import Dict, Optional

from playwright.async_api import Request, Response

from ..models.capture import (
    FailureMetadata,
    InFlightRequest,
    RequestDetail,
    RequestMetadata,
    ResponseMetadata,
)
from .buffer import console_timestamp, iso_timestamp
from .config import (
    BODY_TIMEOUT_S,
    BODY_TRUNCATION_MARKER,
    STREAMING_CONTENT_TYPES,
    TEXT_CONTENT_MARKERS,
)
from .context import CaptureContext

logger = logging.getLogger(__name__)

PLACEHOLDER_ID = "?????"


def is_text_content(content_type: str) -> bool:
    content_type = content_type.lower()
    return any(marker in content_type for marker in TEXT_CONTENT_MARKERS)


def truncate_body(body: str, limit_bytes: int) -> str:
    """Cut a body to ``limit_bytes`` of UTF-8 and append the truncation marker."""
    encoded = body.encode("utf-8")
    if len(encoded) <= limit_bytes:
        return body
    return encoded[:limit_bytes].decode("utf-8", errors="ignore") + BODY_TRUNCATION_MARKER


def is_streaming_content(content_type: str) -> bool:
    content_type = content_type.lower()
    return any(marker in content_type for marker in STREAMING_CONTENT_TYPES)


async def read_body(response: Response, headers: Dict[str, str], limit_bytes: int,
                    timeout_s: float = BODY_TIMEOUT_S) -> str:
    """Body text for text-like content types, a marker for everything else.

    Streams such as server-sent events never finish, so they are not awaited;
    any other body that takes longer than ``timeout_s`` is replaced by a marker.
    """
    content_type = headers.get("content-type", "")
    if is_streaming_content(content_type):
        return f"[Streaming content: {content_type}]"
    if not is_text_content(content_type):
        return f"[Binary content: {content_type}]"
    try:
        return truncate_body(await asyncio.wait_for(response.text(), timeout_s), limit_bytes)
    except asyncio.TimeoutError:
        return f"[Body not available after {timeout_s:g}s]"
    except Exception as e:
        return f"[Error reading body: {e}]"


def handle_request(context: CaptureContext, request: Request) -> None:
    """Handle a Playwright ``request`` event.

    Args:
        context: Capture context of the attached page
        request: Request that just started
    """
    if not context.recording:
        return

    buffer = context.buffer
    url = request.url
    method = request.method
    resource_type = request.resource_type or "other"
    timestamp = iso_timestamp(context.wall_clock())

    try:
        post_data = request.post_data
    except Exception as e:
        # Binary bodies cannot be decoded as text
        logger.debug(f"Request body unavailable for {url}: {e}")
        post_data = None

    headers = dict(request.headers)

    request_id = buffer.next_request_id()
    context.in_flight[request] = InFlightRequest(
        id=request_id,
        method=method,
        url=url,
        start_time=context.monotonic(),
        resource_type=resource_type,
    )
    buffer.save_detail(RequestDetail(
        id=request_id,
        timestamp=timestamp,
        method=method,
        resource_type=resource_type,
        url=url,
        request=RequestMetadata(headers=headers, post_data=post_data),
    ))

    line = f"[{timestamp}] --> {request_id} {method} {resource_type.upper():<10} {url}"
    context.network_stream.emit(lambda: buffer.log_network(line))


async def handle_response(context: CaptureContext, response: Response) -> None:
    """Handle a Playwright ``response`` event.

    The in-flight entry is removed before the body is awaited so a response
    is correlated exactly once.
    """
    if not context.recording:
        return

    slot = context.network_stream.reserve()
    commit = None
    try:
        url = response.url
        status = response.status
        timestamp = iso_timestamp(context.wall_clock())
        entry: Optional[InFlightRequest] = context.in_flight.pop(response.request, None)

        request_id = PLACEHOLDER_ID
        duration = ""
        if entry is not None:
            elapsed = entry.elapsed_ms(context.monotonic())
            request_id = str(entry.id)
            duration = f" ({elapsed}ms)"
            headers = dict(response.headers)
            body = await read_body(
                response, headers,
                context.settings.body_limit_bytes,
                context.settings.body_timeout_s,
            )
            if not context.recording:
                # Detached or paused while the body was loading
                return
            context.buffer.complete_detail(entry.id, ResponseMetadata(
                status=status,
                status_text=response.status_text or "",
                headers=headers,
                body=body,
                duration=elapsed,
            ))

        line = f"[{timestamp}] <-- {request_id} {status:>3} {url}{duration}"
        commit = lambda: context.buffer.log_network(line)
    finally:
        context.network_stream.resolve(slot, commit)


def handle_request_failed(context: CaptureContext, request: Request) -> None:
    """Handle a Playwright ``requestfailed`` event."""
    if not context.recording:
        return

    buffer = context.buffer
    url = request.url
    error_text = request.failure
    timestamp = iso_timestamp(context.wall_clock())
    entry = context.in_flight.pop(request, None)

    request_id = PLACEHOLDER_ID
    duration = ""
    if entry is not None:
        elapsed = entry.elapsed_ms(context.monotonic())
        request_id = str(entry.id)
        duration = f" ({elapsed}ms)"
        buffer.fail_detail(entry.id, FailureMetadata(error_text=error_text, duration=elapsed))

    line = f"[{timestamp}] [FAILED] {request_id} {url}: {error_text}{duration}"
    context.network_stream.emit(lambda: buffer.log_network(line))

    if context.mirrors_failure(url):
        console_line = f"[{console_timestamp(context.wall_clock())}] {context.label}[FAILED] {url}: {error_text}"
        context.console_stream.emit(lambda: buffer.log_console(console_line))
