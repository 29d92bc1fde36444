"""
Tests for the model strategies.
"""

import json
from unittest.mock import patch

import httpx
import pytest

from conversational_browser.errors import (
    ContextOverflow,
    ProviderNotConfigured,
    ProviderRequestError,
    UnknownActionError,
)
from conversational_browser.providers import Provider, ProviderConfig
from conversational_browser.strategies import (
    VALIDATION_TOOL_NAME,
    ActionRequest,
    ClaudeStrategy,
    GeminiStrategy,
    VisionTextStrategy,
    create_strategy,
)
from conversational_browser.strategies.base import merge_consecutive
from conversational_browser.types import (
    ConversationTurn,
    ImageBlock,
    Role,
    TextBlock,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    ToolSpec,
)

TOOLS = [
    ToolSpec(
        "browser_navigate",
        "Navigate to a URL",
        {"type": "object", "properties": {"url": {"type": "string"}}, "required": ["url"]},
    ),
]


class MockResponse:
    """Mock HTTP response."""

    def __init__(self, json_data, status_code=200, text=None):
        self._json_data = json_data
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(json_data)

    def json(self):
        return self._json_data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(
                f"HTTP {self.status_code}",
                request=None,
                response=self,
            )


def tool_exchange() -> list[ConversationTurn]:
    return [
        ConversationTurn.user("go to example.com"),
        ConversationTurn(Role.ASSISTANT, [
            TextPart("Opening the page."),
            ToolCallPart("call_1", "browser_navigate", {"url": "https://example.com"}),
        ]),
        ConversationTurn(Role.TOOL, [
            ToolResultPart("call_1", "browser_navigate", (TextBlock("Navigated"), ImageBlock("aW1n"))),
        ]),
    ]


def make_config(provider, api_key="test-key"):
    return ProviderConfig(provider=provider, api_key=api_key)


class TestCreateStrategy:
    """Tests for the strategy factory."""

    @pytest.mark.parametrize("provider,expected", [
        (Provider.ANTHROPIC, ClaudeStrategy),
        (Provider.GOOGLE, GeminiStrategy),
        (Provider.OPENAI, VisionTextStrategy),
        (Provider.LM_STUDIO, VisionTextStrategy),
    ])
    def test_create(self, provider, expected):
        strategy = create_strategy(make_config(provider))
        assert isinstance(strategy, expected)

    def test_missing_key(self):
        with pytest.raises(ProviderNotConfigured) as exc_info:
            create_strategy(make_config(Provider.ANTHROPIC, api_key=None))
        assert exc_info.value.provider == "anthropic"

    def test_local_needs_no_key(self):
        strategy = create_strategy(make_config(Provider.LM_STUDIO, api_key=None))
        assert strategy.config.api_key is None


class TestClaudeStrategy:
    """Tests for the Anthropic strategy."""

    def test_request_shape(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        mock_response = MockResponse({
            "content": [{"type": "text", "text": "Done."}],
            "stop_reason": "end_turn",
        })

        with patch.object(strategy.client, "post", return_value=mock_response) as mock_post:
            response = strategy.next_step(TOOLS, tool_exchange())

        call_kwargs = mock_post.call_args
        assert call_kwargs.args[0] == "https://api.anthropic.com/v1/messages"
        assert call_kwargs.kwargs["headers"]["x-api-key"] == "test-key"
        payload = call_kwargs.kwargs["json"]
        assert [t["name"] for t in payload["tools"]] == ["browser_navigate", VALIDATION_TOOL_NAME]
        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]

        tool_use = payload["messages"][1]["content"][1]
        assert tool_use == {
            "type": "tool_use",
            "id": "call_1",
            "name": "browser_navigate",
            "input": {"url": "https://example.com"},
        }
        result = payload["messages"][2]["content"][0]
        assert result["type"] == "tool_result"
        assert result["tool_use_id"] == "call_1"
        assert result["content"][1]["source"]["data"] == "aW1n"

        assert response.is_final
        assert response.text == "Done."

    def test_tool_use_response(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        response = strategy.parse_response({
            "content": [
                {"type": "text", "text": "Navigating."},
                {"type": "tool_use", "id": "toolu_1", "name": "browser_navigate", "input": {"url": "https://a.b"}},
            ],
            "stop_reason": "tool_use",
        })

        assert len(response.actions) == 1
        assert response.actions[0].id == "toolu_1"
        assert response.text == "Navigating."

    def test_tool_use_ignored_without_tool_use_stop(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        response = strategy.parse_response({
            "content": [{"type": "tool_use", "id": "t", "name": "browser_snapshot", "input": {}}],
            "stop_reason": "max_tokens",
        })
        assert response.is_final

    def test_consecutive_user_messages_merged(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        turns = tool_exchange() + [ConversationTurn.user("now check the title")]
        payload = strategy.format_request("system", TOOLS, turns)

        assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
        assert payload["messages"][2]["content"][-1] == {"type": "text", "text": "now check the title"}


class TestGeminiStrategy:
    """Tests for the Gemini strategy."""

    def test_request_shape(self):
        strategy = GeminiStrategy(make_config(Provider.GOOGLE))
        payload = strategy.format_request(strategy.system_prompt(TOOLS), TOOLS, tool_exchange())

        assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
        assert payload["contents"][1]["parts"][1] == {
            "functionCall": {"name": "browser_navigate", "args": {"url": "https://example.com"}},
        }
        parts = payload["contents"][2]["parts"]
        assert parts[0]["functionResponse"]["name"] == "browser_navigate"
        assert parts[0]["functionResponse"]["response"]["content"] == [{"type": "text", "text": "Navigated"}]
        assert parts[1] == {"inlineData": {"mimeType": "image/png", "data": "aW1n"}}
        assert payload["generationConfig"]["temperature"] == 0.1
        declarations = payload["tools"][0]["functionDeclarations"]
        assert declarations[0]["parameters"]["required"] == ["url"]

    def test_system_prompt_makes_validation_mandatory(self):
        strategy = GeminiStrategy(make_config(Provider.GOOGLE))
        prompt = strategy.system_prompt(TOOLS)

        assert "MANDATORY" in prompt
        assert VALIDATION_TOOL_NAME in prompt
        assert "browser_navigate" in prompt

    def test_url_carries_key(self):
        strategy = GeminiStrategy(make_config(Provider.GOOGLE))
        mock_response = MockResponse({"candidates": [{"content": {"parts": [{"text": "Done."}]}}]})

        with patch.object(strategy.client, "post", return_value=mock_response) as mock_post:
            strategy.next_step(TOOLS, [ConversationTurn.user("hi")])

        url = mock_post.call_args.args[0]
        assert ":generateContent?key=test-key" in url
        assert "/models/gemini-1.5-flash" in url

    def test_parallel_function_calls(self):
        strategy = GeminiStrategy(make_config(Provider.GOOGLE))
        response = strategy.parse_response({
            "candidates": [{
                "content": {"parts": [
                    {"functionCall": {"name": "browser_navigate", "args": {"url": "https://example.com"}}},
                    {"functionCall": {"name": "browser_snapshot", "args": {}}},
                ]},
                "finishReason": "STOP",
            }],
        })

        assert [a.name for a in response.actions] == ["browser_navigate", "browser_snapshot"]
        assert response.actions[0].id != response.actions[1].id

    def test_blocked_prompt(self):
        strategy = GeminiStrategy(make_config(Provider.GOOGLE))
        response = strategy.parse_response({"promptFeedback": {"blockReason": "SAFETY"}})

        assert response.is_final
        assert response.stop_reason == "SAFETY"


class TestVisionTextStrategy:
    """Tests for the free-text vision strategy."""

    def _reply(self, content):
        return {"choices": [{"message": {"content": content}, "finish_reason": "stop"}]}

    def test_request_shape(self):
        strategy = VisionTextStrategy(make_config(Provider.LM_STUDIO, api_key=None))
        mock_response = MockResponse(self._reply('<action>{"action": "done", "final_answer": "Title is Example"}</action>'))

        with patch.object(strategy.client, "post", return_value=mock_response) as mock_post:
            response = strategy.next_step(TOOLS, tool_exchange())

        call_kwargs = mock_post.call_args
        assert call_kwargs.args[0] == "http://127.0.0.1:1234/v1/chat/completions"
        assert "Authorization" not in call_kwargs.kwargs["headers"]
        messages = call_kwargs.kwargs["json"]["messages"]
        assert messages[0]["role"] == "system"
        assert "browser_navigate(url)" in messages[0]["content"]
        observation = messages[3]["content"]
        assert observation[0]["text"].startswith("Observation: browser_navigate succeeded.")
        assert observation[1]["image_url"]["url"] == "data:image/png;base64,aW1n"

        assert response.is_final
        assert response.text == "Title is Example"

    def test_bearer_auth(self):
        strategy = VisionTextStrategy(make_config(Provider.OPENAI))
        with patch.object(strategy.client, "post", return_value=MockResponse(self._reply("ok"))) as mock_post:
            strategy.next_step(TOOLS, [ConversationTurn.user("hi")])

        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer test-key"

    def test_action_maps_to_tool(self):
        strategy = VisionTextStrategy(make_config(Provider.LM_STUDIO, api_key=None))
        response = strategy.parse_response(self._reply(
            'The login button is at the top.\n<action>{"action": "click", "args": {"x": 100, "y": 20}}</action>'
        ))

        assert len(response.actions) == 1
        call = strategy.map_action(response.actions[0])
        assert call.name == "browser_mouse_click_xy"
        assert call.arguments["x"] == 100

    def test_unknown_action_maps_to_error(self):
        strategy = VisionTextStrategy(make_config(Provider.LM_STUDIO, api_key=None))
        response = strategy.parse_response(self._reply('<action>{"action": "teleport"}</action>'))

        with pytest.raises(UnknownActionError):
            strategy.map_action(response.actions[0])

    def test_unparseable_action_becomes_parse_error(self):
        strategy = VisionTextStrategy(make_config(Provider.LM_STUDIO, api_key=None))
        response = strategy.parse_response(self._reply("<action>{{ broken</action>"))

        assert len(response.actions) == 1
        assert response.actions[0].parse_error
        with pytest.raises(UnknownActionError):
            strategy.map_action(response.actions[0])

    def test_plain_text_is_final(self):
        strategy = VisionTextStrategy(make_config(Provider.LM_STUDIO, api_key=None))
        response = strategy.parse_response(self._reply("  The page says hello.  "))

        assert response.is_final
        assert response.text == "The page says hello."

    def test_terminal_without_answer_uses_text(self):
        strategy = VisionTextStrategy(make_config(Provider.LM_STUDIO, api_key=None))
        response = strategy.parse_response(self._reply('All finished.\n<action>{"action": "done"}</action>'))
        assert response.text == "All finished."


class TestErrorMapping:
    """Tests for HTTP error handling shared by all strategies."""

    def test_unauthorized(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        with patch.object(strategy.client, "post", return_value=MockResponse({"error": "bad key"}, status_code=401)):
            with pytest.raises(ProviderNotConfigured) as exc_info:
                strategy.send({})
        assert exc_info.value.status == 401

    def test_rate_limit_retries(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        responses = [
            MockResponse({"error": "slow down"}, status_code=429),
            MockResponse({"content": [{"type": "text", "text": "ok"}], "stop_reason": "end_turn"}),
        ]

        with patch.object(strategy.client, "post", side_effect=responses) as mock_post, \
                patch("conversational_browser.strategies.base.time.sleep") as mock_sleep:
            raw = strategy.send({})

        assert mock_post.call_count == 2
        mock_sleep.assert_called_once_with(4)
        assert raw["content"][0]["text"] == "ok"

    def test_rate_limit_exhausted(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC), max_retries=2)
        with patch.object(strategy.client, "post", return_value=MockResponse({}, status_code=429)) as mock_post, \
                patch("conversational_browser.strategies.base.time.sleep"):
            with pytest.raises(ProviderRequestError) as exc_info:
                strategy.send({})

        assert mock_post.call_count == 3
        assert exc_info.value.status == 429

    def test_context_overflow(self):
        strategy = VisionTextStrategy(make_config(Provider.OPENAI))
        body = {"error": {"message": "This model's maximum context length is 8192 tokens"}}
        with patch.object(strategy.client, "post", return_value=MockResponse(body, status_code=400)):
            with pytest.raises(ContextOverflow):
                strategy.send({})

    def test_invalid_api_key_message(self):
        strategy = GeminiStrategy(make_config(Provider.GOOGLE))
        body = {"error": {"message": "API key not valid. Please pass a valid API key."}}
        with patch.object(strategy.client, "post", return_value=MockResponse(body, status_code=400)):
            with pytest.raises(ProviderNotConfigured):
                strategy.send({})

    def test_other_client_error(self):
        strategy = GeminiStrategy(make_config(Provider.GOOGLE))
        with patch.object(strategy.client, "post", return_value=MockResponse({"error": "bad field"}, status_code=400)):
            with pytest.raises(ProviderRequestError, match="400"):
                strategy.send({})

    def test_timeout_not_retried(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        with patch.object(strategy.client, "post", side_effect=httpx.ReadTimeout("slow")) as mock_post:
            with pytest.raises(ProviderRequestError, match="did not respond"):
                strategy.send({})
        assert mock_post.call_count == 1


class TestHelpers:
    """Tests for shared strategy helpers."""

    def test_merge_consecutive(self):
        merged = merge_consecutive([
            {"role": "user", "parts": [1]},
            {"role": "user", "parts": [2]},
            {"role": "model", "parts": [3]},
        ], "parts")

        assert merged == [{"role": "user", "parts": [1, 2]}, {"role": "model", "parts": [3]}]

    def test_assistant_turn(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        response = strategy.parse_response({
            "content": [
                {"type": "text", "text": "Clicking"},
                {"type": "tool_use", "id": "t1", "name": "browser_click", "input": {"ref": "e1"}},
            ],
            "stop_reason": "tool_use",
        })
        turn = strategy.assistant_turn(response)

        assert turn.role == Role.ASSISTANT
        assert turn.text == "Clicking"
        assert turn.tool_calls[0].call_id == "t1"

    def test_map_action_default(self):
        strategy = ClaudeStrategy(make_config(Provider.ANTHROPIC))
        call = strategy.map_action(ActionRequest("t1", "browser_click", {"ref": "e1"}))

        assert call.name == "browser_click"
        assert call.arguments == {"ref": "e1"}
