"""Unit tests for the command dispatcher and the HTTP control API."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from browsermonitor.api.server import create_app
from browsermonitor.models.capture import ArtifactResult, BufferStats, DumpReport, TabInfo
from browsermonitor.models.connection import CaptureMode
from browsermonitor.session.commands import CommandDispatcher, CommandResult, CommandVerb
from browsermonitor.session.lifecycle import ShutdownCoordinator
from browsermonitor.session.manager import TabSelectionError
from browsermonitor.session.state import SessionState, SessionStatus


def make_session():
    session = MagicMock()
    session.state = SessionState(CaptureMode.LAZY)
    session.dump = AsyncMock(return_value=DumpReport(
        stats_before=BufferStats(console_entries=3, network_entries=2, request_details=1),
        artifacts=[ArtifactResult(name="console", count=3)],
    ))
    session.clear = MagicMock(return_value=BufferStats(console_entries=4, network_entries=1))
    session.status = MagicMock(side_effect=lambda: SessionStatus(
        capture_mode=CaptureMode.LAZY,
        paused=session.state.paused,
        current_url="https://app.local/",
    ))
    session.list_tabs = MagicMock(return_value=[
        TabInfo(index=1, url="https://app.local/", active=True),
        TabInfo(index=2, url="https://app.local/admin"),
    ])
    switched = MagicMock()
    switched.url = "https://app.local/admin"
    session.switch = AsyncMock(return_value=switched)
    return session


@pytest.fixture
def session():
    return make_session()


@pytest.fixture
def dispatcher(session):
    return CommandDispatcher(session, ShutdownCoordinator(session.state))


class TestCommandDispatcher:
    """Tests for command execution."""

    @pytest.mark.asyncio
    async def test_dump(self, dispatcher):
        result = await dispatcher.execute(CommandVerb.DUMP)

        assert result.ok
        assert result.message == "Dumped 3 console, 2 network, 1 request details"
        assert result.data["stats_before"]["console_entries"] == 3

    @pytest.mark.asyncio
    async def test_dump_with_failed_artifact(self, dispatcher, session):
        session.dump.return_value = DumpReport(artifacts=[
            ArtifactResult(name="console"),
            ArtifactResult(name="dom", ok=False, error="page crashed"),
        ])

        result = await dispatcher.execute("dump")

        assert not result.ok
        assert "1 artifact(s) failed" in result.message
        assert result.data["artifacts"][1]["error"] == "page crashed"

    @pytest.mark.asyncio
    async def test_clear(self, dispatcher):
        result = await dispatcher.execute(CommandVerb.CLEAR)
        assert result.data["cleared"]["console_entries"] == 4

    @pytest.mark.asyncio
    async def test_pause_resume_and_toggle(self, dispatcher, session):
        result = await dispatcher.execute(CommandVerb.PAUSE)
        assert result.message == "Collecting paused"
        assert session.state.paused

        again = await dispatcher.execute(CommandVerb.PAUSE)
        assert again.message == "Already paused"

        toggled = await dispatcher.toggle_pause()
        assert toggled.verb == CommandVerb.RESUME
        assert not session.state.paused

        status = await dispatcher.execute(CommandVerb.STATUS)
        assert status.message == "collecting"

    @pytest.mark.asyncio
    async def test_list_and_switch_tabs(self, dispatcher, session):
        tabs = await dispatcher.execute(CommandVerb.LIST_TABS)
        assert [t["index"] for t in tabs.data["tabs"]] == [1, 2]

        switched = await dispatcher.execute(CommandVerb.SWITCH_TAB, "2")
        assert switched.ok
        assert switched.data == {"index": 2, "url": "https://app.local/admin"}
        session.switch.assert_awaited_once_with(2)

    @pytest.mark.asyncio
    async def test_switch_invalid_index(self, dispatcher, session):
        result = await dispatcher.execute(CommandVerb.SWITCH_TAB, "abc")
        assert not result.ok
        session.switch.assert_not_called()

        session.switch.side_effect = TabSelectionError("Tab 9 does not exist (1-2)")
        result = await dispatcher.execute(CommandVerb.SWITCH_TAB, 9)
        assert not result.ok
        assert "does not exist" in result.message

    @pytest.mark.asyncio
    async def test_unknown_command(self, dispatcher):
        result = await dispatcher.execute("reboot")
        assert not result.ok
        assert "Unknown command" in result.message

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failed_result(self, dispatcher, session):
        session.clear.side_effect = RuntimeError("buffer gone")
        result = await dispatcher.execute(CommandVerb.CLEAR)
        assert not result.ok
        assert result.message == "buffer gone"

    @pytest.mark.asyncio
    async def test_commands_rejected_while_shutting_down(self, dispatcher, session):
        result = await dispatcher.execute(CommandVerb.QUIT)
        assert result.ok
        assert dispatcher.shutdown.request.close_browser is False

        rejected = await dispatcher.execute(CommandVerb.DUMP)
        assert not rejected.ok
        assert rejected.rejected
        assert rejected.message == "Session is shutting down"
        session.dump.assert_not_called()

        status = await dispatcher.execute(CommandVerb.STATUS)
        assert status.ok

        await dispatcher.shutdown.wait()

    @pytest.mark.asyncio
    async def test_kill_closes_browser(self, dispatcher):
        result = await dispatcher.execute(CommandVerb.KILL)
        request = await dispatcher.shutdown.wait()

        assert result.ok
        assert request.close_browser is True


def mock_dispatcher(result: CommandResult):
    dispatcher = MagicMock()
    dispatcher.execute = AsyncMock(return_value=result)
    dispatcher.session = MagicMock()
    return dispatcher


class TestControlApi:
    """Tests for the HTTP routes."""

    def test_root_lists_endpoints(self):
        client = TestClient(create_app(mock_dispatcher(CommandResult(verb=CommandVerb.STATUS))))
        response = client.get("/")
        assert response.status_code == 200
        assert "/dump" in response.json()["endpoints"]

    def test_status(self):
        dispatcher = mock_dispatcher(CommandResult(verb=CommandVerb.STATUS, message="collecting",
                                                   data={"paused": False}))
        client = TestClient(create_app(dispatcher))

        response = client.get("/status")

        assert response.status_code == 200
        body = response.json()
        assert body["command"] == "status"
        assert body["data"] == {"paused": False}
        dispatcher.execute.assert_awaited_once_with(CommandVerb.STATUS)

    @pytest.mark.parametrize("path,verb", [
        ("/dump", CommandVerb.DUMP),
        ("/clear", CommandVerb.CLEAR),
        ("/tabs", CommandVerb.LIST_TABS),
        ("/stop", CommandVerb.PAUSE),
        ("/start", CommandVerb.RESUME),
    ])
    def test_routes_map_to_commands(self, path, verb):
        dispatcher = mock_dispatcher(CommandResult(verb=verb))
        client = TestClient(create_app(dispatcher))

        assert client.get(path).status_code == 200
        assert dispatcher.execute.await_args.args[0] == verb

    def test_switch_unknown_tab_is_404(self):
        dispatcher = mock_dispatcher(CommandResult(verb=CommandVerb.SWITCH_TAB, ok=False,
                                                   message="Tab 7 does not exist (1-2)"))
        client = TestClient(create_app(dispatcher))

        response = client.get("/tabs/7")

        assert response.status_code == 404
        assert response.json()["error"] == "http_404"
        assert "Tab 7" in response.json()["message"]
        dispatcher.execute.assert_awaited_once_with(CommandVerb.SWITCH_TAB, 7)

    def test_shutting_down_is_409(self):
        dispatcher = mock_dispatcher(CommandResult(verb=CommandVerb.CLEAR, ok=False, rejected=True,
                                                   message="Shutdown in progress"))
        client = TestClient(create_app(dispatcher))

        response = client.get("/clear")

        assert response.status_code == 409
        assert response.json()["detail"] == "Shutdown in progress"

    def test_failure_with_shutdown_wording_is_not_409(self):
        dispatcher = mock_dispatcher(CommandResult(verb=CommandVerb.CLEAR, ok=False,
                                                   message="Session is shutting down"))
        client = TestClient(create_app(dispatcher))

        assert client.get("/clear").status_code == 500

    def test_partial_dump_is_returned(self):
        dispatcher = mock_dispatcher(CommandResult(verb=CommandVerb.DUMP, ok=False, message="Dumped",
                                                   data={"artifacts": [{"name": "dom", "ok": False}]}))
        client = TestClient(create_app(dispatcher))

        response = client.get("/dump")

        assert response.status_code == 200
        assert response.json()["ok"] is False

    def test_no_session_is_503(self):
        client = TestClient(create_app(None))
        assert client.get("/status").status_code == 503

    def test_computed_styles(self):
        dispatcher = mock_dispatcher(CommandResult(verb=CommandVerb.STATUS))
        dispatcher.session.computed_styles = AsyncMock(return_value={
            "selector": "#app", "tagName": "div", "computed": {"display": "block"},
        })
        client = TestClient(create_app(dispatcher))

        response = client.get("/computed-styles", params={"selector": "#app"})

        assert response.status_code == 200
        assert response.json()["computed"]["display"] == "block"

    def test_computed_styles_missing_element(self):
        dispatcher = mock_dispatcher(CommandResult(verb=CommandVerb.STATUS))
        dispatcher.session.computed_styles = AsyncMock(return_value={"error": "No element matching selector: #x"})
        client = TestClient(create_app(dispatcher))

        response = client.get("/computed-styles", params={"selector": "#x"})
        assert response.status_code == 404

    def test_computed_styles_without_page(self):
        dispatcher = mock_dispatcher(CommandResult(verb=CommandVerb.STATUS))
        dispatcher.session.active_page = None
        client = TestClient(create_app(dispatcher))

        assert client.get("/computed-styles", params={"selector": "#x"}).status_code == 409

    def test_computed_styles_requires_selector(self):
        client = TestClient(create_app(mock_dispatcher(CommandResult(verb=CommandVerb.STATUS))))
        assert client.get("/computed-styles").status_code == 422
