"""Tests for the Anthropic client, its retries and response parsing."""

from unittest.mock import Mock, patch

import pytest
import requests

from phaseflow.config import AnthropicConfig, ConfigError, RetryConfig
from phaseflow.errors import LLMError, LLMErrorType, classify_status
from phaseflow.llm_clients import AnthropicClient, ToolSpec, parse_response

OK_BODY = {
    "content": [
        {"type": "text", "text": "Looking at the theme."},
        {"type": "tool_use", "id": "toolu_1", "name": "read", "input": {"path": "src/theme.ts"}},
    ],
    "stop_reason": "tool_use",
    "usage": {"input_tokens": 120, "output_tokens": 30},
}


def http_response(status_code, payload=None, headers=None, text=""):
    resp = Mock()
    resp.status_code = status_code
    resp.headers = headers or {}
    resp.text = text
    resp.json.return_value = payload
    return resp


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    return AnthropicClient(AnthropicConfig(), RetryConfig(max_retries=2))


@pytest.fixture
def mock_request():
    with patch("phaseflow.llm_clients.requests.request") as mock:
        yield mock


@pytest.fixture
def mock_sleep():
    with patch("phaseflow.llm_clients.time.sleep") as mock:
        yield mock


def complete(client):
    tool = ToolSpec("read", "Read a file", {"type": "object"})
    return client.complete("claude-sonnet-4-5", "system", [{"role": "user", "content": "hi"}], [tool])


class TestParseResponse:

    def test_text_and_tool_calls(self):
        result = parse_response(OK_BODY)
        assert result.text == "Looking at the theme."
        assert result.finish_reason == "tool_calls"
        assert result.tool_calls[0].to_dict() == {
            "id": "toolu_1", "name": "read", "input": {"path": "src/theme.ts"},
        }
        assert result.usage == {"input_tokens": 120, "output_tokens": 30}

    @pytest.mark.parametrize("stop_reason,expected", [
        ("end_turn", "stop"),
        ("max_tokens", "length"),
        ("refusal", "other"),
    ])
    def test_finish_reasons(self, stop_reason, expected):
        assert parse_response({"content": [], "stop_reason": stop_reason}).finish_reason == expected

    def test_missing_content(self):
        with pytest.raises(LLMError) as exc_info:
            parse_response({"type": "error"})
        assert exc_info.value.error_type == LLMErrorType.PARSE_ERROR


class TestClassifyStatus:

    @pytest.mark.parametrize("status,expected,recoverable", [
        (401, LLMErrorType.AUTH_FAILED, False),
        (429, LLMErrorType.RATE_LIMIT, True),
        (529, LLMErrorType.SERVER_OVERLOADED, True),
        (500, LLMErrorType.SERVER_ERROR, True),
        (400, LLMErrorType.INVALID_REQUEST, False),
        (418, LLMErrorType.UNKNOWN, False),
    ])
    def test_mapping(self, status, expected, recoverable):
        assert classify_status(status) == expected
        assert LLMError("x", expected).recoverable is recoverable


class TestComplete:

    def test_request_shape(self, client, mock_request, mock_sleep):
        mock_request.return_value = http_response(200, OK_BODY)
        complete(client)

        args, kwargs = mock_request.call_args
        assert args == ("POST", "https://api.anthropic.com/v1/messages")
        assert kwargs["headers"]["x-api-key"] == "sk-test"
        assert kwargs["json"]["tools"] == [{"name": "read", "description": "Read a file",
                                            "input_schema": {"type": "object"}}]
        assert kwargs["json"]["max_tokens"] == 8192
        mock_sleep.assert_not_called()

    def test_overload_retried_with_backoff(self, client, mock_request, mock_sleep):
        mock_request.side_effect = [
            http_response(529, text="overloaded"),
            http_response(529, text="overloaded"),
            http_response(200, OK_BODY),
        ]
        result = complete(client)
        assert result.finish_reason == "tool_calls"
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    def test_retry_after_header_honoured(self, client, mock_request, mock_sleep):
        mock_request.side_effect = [
            http_response(429, headers={"retry-after": "7"}),
            http_response(200, OK_BODY),
        ]
        complete(client)
        mock_sleep.assert_called_once_with(7.0)

    def test_retry_after_capped(self, client, mock_request, mock_sleep):
        mock_request.side_effect = [
            http_response(429, headers={"retry-after": "3600"}),
            http_response(200, OK_BODY),
        ]
        complete(client)
        mock_sleep.assert_called_once_with(60.0)

    def test_invalid_request_not_retried(self, client, mock_request, mock_sleep):
        mock_request.return_value = http_response(400, text="bad tool schema")
        with pytest.raises(LLMError) as exc_info:
            complete(client)
        assert exc_info.value.error_type == LLMErrorType.INVALID_REQUEST
        assert exc_info.value.body == "bad tool schema"
        assert mock_request.call_count == 1
        mock_sleep.assert_not_called()

    def test_retries_exhausted(self, client, mock_request, mock_sleep):
        mock_request.return_value = http_response(500)
        with pytest.raises(LLMError, match="returned 500"):
            complete(client)
        assert mock_request.call_count == 3

    def test_timeout_is_classified(self, client, mock_request, mock_sleep):
        mock_request.side_effect = requests.exceptions.Timeout("read timed out")
        with pytest.raises(LLMError) as exc_info:
            complete(client)
        assert exc_info.value.error_type == LLMErrorType.TIMEOUT
        assert mock_sleep.call_count == 2

    def test_missing_api_key(self, monkeypatch, mock_request):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        client = AnthropicClient(AnthropicConfig(), RetryConfig())
        with pytest.raises(ConfigError):
            complete(client)
        mock_request.assert_not_called()
