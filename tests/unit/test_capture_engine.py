"""Unit tests for CaptureEngine attach/detach and error isolation."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from browsermonitor.capture import engine as engine_module
from browsermonitor.capture.engine import CAPTURED_EVENTS, CaptureEngine
from browsermonitor.errors import CaptureFatal
from browsermonitor.models.capture import RequestState


def make_page(url="https://example.com/"):
    page = MagicMock()
    page.url = url
    return page


def listeners_of(page):
    """Map of event name to the listener registered with page.on."""
    return {call.args[0]: call.args[1] for call in page.on.call_args_list}


@pytest.fixture
def engine(buffer, clock, wall_clock):
    return CaptureEngine(buffer, monotonic=clock, wall_clock=wall_clock)


class TestAttachDetach:
    """Tests for page subscription bookkeeping."""

    def test_attach_subscribes_all_events(self, engine):
        page = make_page()
        engine.attach(page)

        assert set(listeners_of(page)) == set(CAPTURED_EVENTS)
        assert engine.attached
        assert engine.page is page

    def test_attach_second_page_detaches_first(self, engine):
        first, second = make_page("https://a/"), make_page("https://b/")
        engine.attach(first)
        engine.attach(second)

        assert first.remove_listener.call_count == len(CAPTURED_EVENTS)
        assert second.remove_listener.call_count == 0
        assert engine.page is second
        assert engine.attach_count - engine.detach_count == 1

    def test_detach_is_idempotent(self, engine):
        page = make_page()
        engine.attach(page)

        assert engine.detach() is True
        assert engine.detach() is False
        assert engine.attach_count - engine.detach_count == 0
        assert page.remove_listener.call_count == len(CAPTURED_EVENTS)

    def test_detach_tolerates_closed_page(self, engine):
        page = make_page()
        page.remove_listener.side_effect = Exception("Target closed")
        engine.attach(page)

        assert engine.detach() is True
        assert not engine.attached

    def test_detached_page_events_are_ignored(self, engine, buffer, request_factory):
        page = make_page()
        engine.attach(page)
        listeners = listeners_of(page)
        engine.detach()

        listeners["request"](request_factory())
        assert buffer.network_entries == []
        assert buffer.request_details == {}

    def test_pending_requests(self, engine, request_factory):
        page = make_page()
        engine.attach(page)
        listeners_of(page)["request"](request_factory())
        assert engine.pending_requests == 1

        engine.detach()
        assert engine.pending_requests == 0

    def test_label_applies_to_console_lines(self, engine):
        context = engine.attach(make_page(), label="[tab 2] ")
        assert context.label == "[tab 2] "


class TestLateCompletion:
    """Tests for responses completing after a detach."""

    @pytest.mark.asyncio
    async def test_response_body_resolving_after_detach(self, engine, buffer,
                                                        request_factory, response_factory):
        page = make_page()
        engine.attach(page)
        listeners = listeners_of(page)

        request = request_factory(url="https://example.com/slow")
        listeners["request"](request)

        gate = asyncio.Event()

        async def slow_text():
            await gate.wait()
            return "body"

        response = response_factory(request)
        response.text = AsyncMock(side_effect=slow_text)

        task = asyncio.create_task(listeners["response"](response))
        await asyncio.sleep(0)

        engine.detach()
        gate.set()
        await task

        assert buffer.get_detail(1).state == RequestState.PENDING
        assert len(buffer.network_entries) == 1


class TestErrorIsolation:
    """Tests for stale-context and fatal handler errors."""

    def test_stale_context_error_is_ignored(self, buffer, request_factory):
        fatal = MagicMock()
        failing = MagicMock(side_effect=Exception("Execution context was destroyed"))
        with patch.dict(engine_module.SYNC_HANDLERS, {"request": failing}):
            engine = CaptureEngine(buffer, on_fatal=fatal)
            page = make_page()
            engine.attach(page)

        listeners_of(page)["request"](request_factory())

        assert engine.stale_errors == 1
        fatal.assert_not_called()

    def test_fatal_error_reported(self, buffer, request_factory):
        fatal = MagicMock()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        with patch.dict(engine_module.SYNC_HANDLERS, {"request": failing}):
            engine = CaptureEngine(buffer, on_fatal=fatal)
            page = make_page()
            engine.attach(page)

        listeners_of(page)["request"](request_factory())

        fatal.assert_called_once()
        error = fatal.call_args.args[0]
        assert isinstance(error, CaptureFatal)
        assert error.event == "request"
        assert isinstance(error.original, RuntimeError)

    def test_fatal_error_raised_without_callback(self, buffer, request_factory):
        failing = MagicMock(side_effect=RuntimeError("boom"))
        with patch.dict(engine_module.SYNC_HANDLERS, {"requestfailed": failing}):
            engine = CaptureEngine(buffer)
            page = make_page()
            engine.attach(page)

        with pytest.raises(CaptureFatal):
            listeners_of(page)["requestfailed"](request_factory())

    @pytest.mark.asyncio
    async def test_async_handler_fatal_error(self, buffer):
        fatal = MagicMock()
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        with patch.dict(engine_module.ASYNC_HANDLERS, {"console": failing}):
            engine = CaptureEngine(buffer, on_fatal=fatal)
            page = make_page()
            engine.attach(page)

        await listeners_of(page)["console"](MagicMock())

        fatal.assert_called_once()
        assert fatal.call_args.args[0].event == "console"
