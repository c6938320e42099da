"""Unit tests for the dump lifecycle and its snapshot collaborators."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from browsermonitor.capture.buffer import LogBuffer, RealtimeWriter
from browsermonitor.capture.config import DOM_TRUNCATION_MARKER
from browsermonitor.capture.cookie_collector import (
    CookieCollector,
    format_expiry,
    group_by_domain,
    safe_domain_filename,
)
from browsermonitor.capture.dump import DumpManager
from browsermonitor.capture.snapshots import PageSnapshotter, truncate_dom
from browsermonitor.models.capture import ArtifactResult, RequestDetail, ResponseMetadata
from browsermonitor.models.connection import CaptureMode


def make_detail(request_id: int) -> RequestDetail:
    return RequestDetail(
        id=request_id,
        timestamp="2024-01-02T03:04:05.678Z",
        method="GET",
        resource_type="xhr",
        url=f"https://example.com/{request_id}",
    )


@pytest.fixture
def filled_buffer():
    buffer = LogBuffer()
    buffer.log_console("[03:04:05.678] LOG     hello")
    buffer.log_console("[03:04:05.679] ERROR   oops")
    buffer.log_network("[2024-01-02T03:04:05.678Z] --> 1 GET XHR        https://example.com/1")
    buffer.save_detail(make_detail(1))
    buffer.complete_detail(1, ResponseMetadata(status=200, status_text="OK", body="{}", duration=12))
    buffer.save_detail(make_detail(2))
    return buffer


class TestDumpManager:
    """Tests for DumpManager.dump and clear."""

    @pytest.mark.asyncio
    async def test_dump_writes_and_clears(self, filled_buffer, output_paths):
        manager = DumpManager(filled_buffer, output_paths)

        report = await manager.dump()

        assert report.ok
        assert report.stats_before.console_entries == 2
        assert report.stats_before.request_details == 2
        assert filled_buffer.stats().is_empty

        console = output_paths.console_log.read_text(encoding="utf-8")
        assert console == "[03:04:05.678] LOG     hello\n[03:04:05.679] ERROR   oops\n"
        assert output_paths.network_log.read_text(encoding="utf-8").startswith("[2024-01-02T03:04:05.678Z] --> 1")

        document = json.loads(output_paths.detail_path(1).read_text(encoding="utf-8"))
        assert document["resourceType"] == "xhr"
        assert document["response"]["statusText"] == "OK"
        pending = json.loads(output_paths.detail_path(2).read_text(encoding="utf-8"))
        assert "response" not in pending
        assert report.artifact("details").count == 2

    @pytest.mark.asyncio
    async def test_empty_dump_truncates_previous_files(self, filled_buffer, output_paths):
        manager = DumpManager(filled_buffer, output_paths)
        await manager.dump()

        report = await manager.dump()

        assert report.ok
        assert output_paths.console_log.read_text() == ""
        assert output_paths.network_log.read_text() == ""
        assert list(output_paths.network_dir.glob("*.json")) == []
        assert manager.dump_count == 2

    @pytest.mark.asyncio
    async def test_collaborator_failure_is_isolated(self, filled_buffer, output_paths):
        failing = AsyncMock(side_effect=RuntimeError("page crashed"))
        succeeding = AsyncMock(return_value=ArtifactResult(name="screenshot", count=3))
        manager = DumpManager(filled_buffer, output_paths,
                              collaborators=[("dom", failing), ("screenshot", succeeding)])

        report = await manager.dump()

        assert not report.ok
        assert [a.name for a in report.failed_artifacts] == ["dom"]
        assert report.artifact("dom").error == "page crashed"
        assert report.artifact("screenshot").ok
        succeeding.assert_awaited_once()
        # Logs were still written and the buffer still cleared
        assert output_paths.console_log.exists()
        assert filled_buffer.stats().is_empty

    @pytest.mark.asyncio
    async def test_entries_recorded_during_dump_survive(self, filled_buffer, output_paths):
        async def late_entry():
            filled_buffer.log_console("during dump")
            return ArtifactResult(name="late")

        manager = DumpManager(filled_buffer, output_paths, collaborators=[("late", late_entry)])
        await manager.dump()

        assert filled_buffer.console_entries == ["during dump"]
        assert "during dump" not in output_paths.console_log.read_text()

    @pytest.mark.asyncio
    async def test_realtime_lines_during_dump_land_in_new_log(self, output_paths):
        writer = RealtimeWriter(output_paths)
        buffer = LogBuffer(CaptureMode.REALTIME, output_paths, writer)

        async def late_entry():
            buffer.log_console("during dump")
            return ArtifactResult(name="late")

        try:
            await writer.start()
            buffer.log_console("before dump")
            manager = DumpManager(buffer, output_paths, collaborators=[("late", late_entry)])

            await manager.dump()
            await writer.flush()

            assert output_paths.console_log.read_text() == "before dump\nduring dump\n"
            assert buffer.console_entries == ["during dump"]
        finally:
            await writer.close()

    @pytest.mark.asyncio
    async def test_realtime_queued_lines_are_not_written_twice(self, output_paths):
        writer = RealtimeWriter(output_paths)
        buffer = LogBuffer(CaptureMode.REALTIME, output_paths, writer)
        try:
            await writer.start()
            for n in range(20):
                buffer.log_network(f"net {n}")

            await DumpManager(buffer, output_paths).dump()
            await writer.flush()

            lines = output_paths.network_log.read_text().splitlines()
            assert lines == [f"net {n}" for n in range(20)]
        finally:
            await writer.close()

    def test_clear_reports_previous_stats(self, filled_buffer, output_paths):
        manager = DumpManager(filled_buffer, output_paths)

        stats = manager.clear()

        assert stats.console_entries == 2
        assert stats.pending_requests == 1
        assert manager.stats().is_empty
        assert not output_paths.console_log.exists()


class TestCookieCollector:
    """Tests for cookie grouping and documents."""

    COOKIES = [
        {"name": "sid", "value": "1", "domain": ".example.com", "path": "/",
         "expires": -1, "httpOnly": True, "secure": True, "sameSite": "Lax"},
        {"name": "pref", "value": "dark", "domain": "example.com", "path": "/",
         "expires": 1704164645.0, "httpOnly": False, "secure": False, "sameSite": ""},
        {"name": "ads", "value": "x", "domain": "ads.other.net", "path": "/"},
    ]

    def test_group_by_domain_strips_leading_dot(self):
        grouped = group_by_domain(self.COOKIES)
        assert set(grouped) == {"example.com", "ads.other.net"}
        assert len(grouped["example.com"]) == 2

    def test_format_expiry(self):
        assert format_expiry(-1) == "Session"
        assert format_expiry(None) == "Session"
        assert format_expiry(1704164645.0) == "2024-01-02T03:04:05.000Z"

    def test_safe_domain_filename(self):
        assert safe_domain_filename("localhost:3000") == "localhost_3000"

    @pytest.mark.asyncio
    async def test_dump_writes_document_per_domain(self, output_paths):
        page = MagicMock()
        page.url = "https://example.com/app"
        page.context.cookies = AsyncMock(return_value=self.COOKIES)
        collector = CookieCollector(output_paths, lambda: page)

        result = await collector.dump()

        assert result.ok
        assert result.count == 3
        document = json.loads((output_paths.cookies_dir / "example.com.json").read_text())
        assert document["currentUrl"] == "https://example.com/app"
        assert document["count"] == 2
        sid = document["cookies"][0]
        assert sid["httpOnly"] is True
        assert sid["sameSite"] == "Lax"
        assert sid["expires"] == "Session"
        assert document["cookies"][1]["sameSite"] == "None"

    @pytest.mark.asyncio
    async def test_no_page_is_skipped(self, output_paths):
        result = await CookieCollector(output_paths, lambda: None).dump()
        assert result.skipped
        assert result.ok


class TestPageSnapshotter:
    """Tests for DOM and screenshot capture."""

    def test_truncate_dom_under_limit(self):
        assert truncate_dom("<html></html>", 100) == b"<html></html>"

    def test_truncate_dom_exact_prefix(self):
        html = "<html>" + "a" * 200 + "</html>"
        result = truncate_dom(html, 64)
        assert result == html.encode("utf-8")[:64] + DOM_TRUNCATION_MARKER.encode("utf-8")

    @pytest.mark.asyncio
    async def test_dump_dom_writes_truncated_document(self, output_paths):
        page = MagicMock()
        page.evaluate = AsyncMock(return_value="x" * 500)
        snapshotter = PageSnapshotter(output_paths, lambda: page, dom_max_bytes=100)

        result = await snapshotter.dump_dom()

        content = output_paths.dom_html.read_bytes()
        assert content.startswith(b"x" * 100)
        assert content.endswith(DOM_TRUNCATION_MARKER.encode("utf-8"))
        assert result.count == len(content)

    @pytest.mark.asyncio
    async def test_dump_screenshot(self, output_paths):
        page = MagicMock()
        page.screenshot = AsyncMock(return_value=b"\x89PNG data")
        snapshotter = PageSnapshotter(output_paths, lambda: page)

        result = await snapshotter.dump_screenshot()

        assert output_paths.screenshot.read_bytes() == b"\x89PNG data"
        page.screenshot.assert_awaited_once_with(type="png")
        assert result.count == 9

    @pytest.mark.asyncio
    async def test_computed_styles_error_is_returned(self, output_paths):
        page = MagicMock()
        page.evaluate = AsyncMock(side_effect=Exception("Execution context was destroyed"))
        snapshotter = PageSnapshotter(output_paths, lambda: page)

        result = await snapshotter.computed_styles("#app")
        assert "error" in result

    @pytest.mark.asyncio
    async def test_no_page_skips_snapshots(self, output_paths):
        snapshotter = PageSnapshotter(output_paths, lambda: None)
        assert (await snapshotter.dump_dom()).skipped
        assert (await snapshotter.dump_screenshot()).skipped
