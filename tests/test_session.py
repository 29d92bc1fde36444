"""
Tests for the browser session boundary operations.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from conversational_browser.config import AppConfig, ControllerConfig
from conversational_browser.errors import ProviderNotConfigured
from conversational_browser.events import AssistantMessage, EventChannel, RunStateChanged
from conversational_browser.providers import Provider, ProviderConfig
from conversational_browser.session import EVENT_BACKLOG, BrowserSession
from conversational_browser.strategies import GeminiStrategy
from conversational_browser.types import TextBlock, ToolResult, ToolSpec


class MockResponse:
    """Mock HTTP response."""

    def __init__(self, json_data, status_code=200):
        self._json_data = json_data
        self.status_code = status_code
        self.text = json.dumps(json_data)

    def json(self):
        return self._json_data


def gemini_reply(*parts):
    return MockResponse({"candidates": [{"content": {"parts": list(parts)}, "finishReason": "STOP"}]})


def make_config(api_key="test-key"):
    return AppConfig(
        provider=ProviderConfig(provider=Provider.GOOGLE, api_key=api_key),
        controller=ControllerConfig(
            settle_navigation_s=0.0,
            settle_form_s=0.0,
            settle_default_s=0.0,
            snapshot_delay_s=0.0,
        ),
    )


@pytest.fixture
def gateway():
    gw = MagicMock()
    gw.list_tools.return_value = [ToolSpec("browser_click", "Click an element")]
    gw.call_tool.return_value = ToolResult([TextBlock("### Result\nClicked")])
    return gw


@pytest.fixture
def session(gateway):
    config = make_config()
    strategy = GeminiStrategy(config.provider)
    return BrowserSession(config, gateway=gateway, strategy=strategy)


class TestBrowserSession:
    """Tests for BrowserSession."""

    def test_start_and_shutdown(self, session, gateway):
        session.start(stream=False)
        gateway.initialize.assert_called_once()
        assert not session.streamer.is_running

        with patch.object(session._strategy, "close") as mock_close:
            session.shutdown()
        gateway.shutdown.assert_called_once()
        mock_close.assert_called_once()

    def test_process_message(self, session, gateway):
        replies = [
            gemini_reply({"functionCall": {"name": "browser_click", "args": {"ref": "e1", "element": "Login"}}}),
            gemini_reply({"text": "Logged in."}),
        ]
        with patch.object(session._strategy.client, "post", side_effect=replies):
            reply = session.process_message("click login")

        assert reply == {"text": "Logged in."}
        log = session.get_action_log()
        assert len(log) == 1
        assert log[0]["toolName"] == "browser_click"
        assert log[0]["arguments"] == {"ref": "e1", "element": "Login"}
        assert log[0]["success"] is True

    def test_validation_results_and_clear(self, session):
        replies = [
            gemini_reply({"functionCall": {
                "name": "record_validation",
                "args": {"description": "Logged in", "result": "pass"},
            }}),
            gemini_reply({"text": "Verified."}),
        ]
        with patch.object(session._strategy.client, "post", side_effect=replies):
            session.process_message("verify login")

        results = session.get_validation_results()
        assert results[0]["description"] == "Logged in"
        assert results[0]["result"] == "pass"
        assert "failReason" not in results[0]

        session.clear_action_log()
        assert session.get_action_log() == []
        assert session.get_validation_results() == []

    def test_llm_provider_hides_key(self, session):
        info = session.get_llm_provider()

        assert info["provider"] == "google"
        assert info["model"] == "gemini-1.5-flash"
        assert "test-key" not in json.dumps(info)

    def test_run_playbook(self, session, tmp_path):
        path = tmp_path / "login.md"
        path.write_text("1. Open the login page\n", encoding="utf-8")
        session.playbook.step_pause_s = 0.0
        session.playbook.announce_pause_s = 0.0

        with patch.object(session._strategy.client, "post", return_value=gemini_reply({"text": "Opened."})):
            report = session.run_playbook(path)

        assert report["name"] == "login.md"
        assert report["steps"] == 1
        assert report["failed"] == 0
        assert session.get_playbook_status()["isExecuting"] is False

    def test_cancel_without_run(self, session):
        session.cancel_execution()

    def test_missing_credentials(self, gateway):
        session = BrowserSession(make_config(api_key=None), gateway=gateway)

        with pytest.raises(ProviderNotConfigured):
            session.process_message("hello")

    def test_list_tools(self, session):
        assert [t.name for t in session.list_tools()] == ["browser_click"]

    def test_stream_controls(self, session, gateway):
        gateway.take_screenshot.return_value = None
        session.set_frame_listener(lambda frame: None)

        session.start_stream()
        try:
            assert session.streamer.is_running
        finally:
            session.stop_stream()
        assert not session.streamer.is_running

    def test_context_manager(self, gateway):
        config = make_config()
        gateway.take_screenshot.return_value = None
        with BrowserSession(config, gateway=gateway, strategy=GeminiStrategy(config.provider)) as session:
            assert session.gateway is gateway
            gateway.initialize.assert_called_once()
            session.stop_stream()
        gateway.shutdown.assert_called_once()


class TestEventChannel:
    """Tests for the outbound event channel."""

    def test_full_channel_drops_oldest(self):
        channel = EventChannel(maxsize=2)
        for text in ("one", "two", "three"):
            channel.emit(AssistantMessage(text))

        assert [e.text for e in channel.drain()] == ["two", "three"]

    def test_session_channel_is_bounded(self, session):
        for i in range(EVENT_BACKLOG + 10):
            session.events.emit(RunStateChanged(f"state-{i}"))

        assert len(session.events) == EVENT_BACKLOG
        assert session.events.drain()[-1].state == f"state-{EVENT_BACKLOG + 9}"
