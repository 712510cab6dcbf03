"""
Model client for phaseflow.

This module provides:
- ToolSpec, ToolCall and ModelResponse, the JSON-serialisable shapes that
  flow through the agent loop and the step journal
- ModelClient, the protocol every model backend implements
- AnthropicClient, a Messages API client over requests with retry and
  exponential backoff for recoverable errors
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional, Protocol

import requests

from phaseflow.errors import LLMError, LLMErrorType, classify_status

if TYPE_CHECKING:
    from phaseflow.config import AnthropicConfig, RetryConfig
    from phaseflow.logger import PipelineLogger


# Anthropic stop_reason -> loop finish reason
FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


@dataclass
class ToolSpec:
    """A tool offered to the model, described by a JSON Schema."""
    name: str
    description: str
    input_schema: dict[str, Any]

    def to_api(self) -> dict[str, Any]:
        """Render as an Anthropic tool definition."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolCall:
    """One action requested by the model. ``id`` correlates the result."""
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "input": self.input}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(id=data["id"], name=data["name"], input=data.get("input") or {})


@dataclass
class ModelResponse:
    """One model turn: text, requested actions, why it stopped, token usage."""
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "tool_calls": [c.to_dict() for c in self.tool_calls],
            "finish_reason": self.finish_reason,
            "usage": self.usage,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelResponse:
        return cls(
            text=data.get("text", ""),
            tool_calls=[ToolCall.from_dict(c) for c in data.get("tool_calls", [])],
            finish_reason=data.get("finish_reason", "stop"),
            usage=data.get("usage") or {},
        )

    def to_message(self) -> dict[str, Any]:
        """Render as the assistant message appended to the conversation."""
        content: list[dict[str, Any]] = []
        if self.text:
            content.append({"type": "text", "text": self.text})
        for call in self.tool_calls:
            content.append({
                "type": "tool_use",
                "id": call.id,
                "name": call.name,
                "input": call.input,
            })
        return {"role": "assistant", "content": content}


class ModelClient(Protocol):
    """Anything that can produce one model turn."""

    def complete(
        self,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[ToolSpec],
        max_tokens: Optional[int] = None,
    ) -> ModelResponse:
        ...


def parse_response(data: dict[str, Any]) -> ModelResponse:
    """
    Convert a Messages API response body to a ModelResponse.

    Raises:
        LLMError: With PARSE_ERROR if the body is not a messages response.
    """
    content = data.get("content")
    if not isinstance(content, list):
        raise LLMError("Response has no content list", LLMErrorType.PARSE_ERROR)

    texts = []
    calls = []
    for block in content:
        if block.get("type") == "text":
            texts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            calls.append(ToolCall(id=block["id"], name=block["name"], input=block.get("input") or {}))

    stop_reason = data.get("stop_reason") or "end_turn"
    usage = data.get("usage") or {}
    return ModelResponse(
        text="".join(texts),
        tool_calls=calls,
        finish_reason=FINISH_REASONS.get(stop_reason, "other"),
        usage={
            "input_tokens": int(usage.get("input_tokens", 0)),
            "output_tokens": int(usage.get("output_tokens", 0)),
        },
    )


class AnthropicClient:
    """
    Anthropic Messages API client.

    Recoverable errors (rate limits, overload, 5xx, timeouts, connection
    failures) are retried with exponential backoff; everything else is raised
    as an LLMError immediately.
    """

    def __init__(
        self,
        config: AnthropicConfig,
        retry: RetryConfig,
        logger: Optional[PipelineLogger] = None,
    ) -> None:
        self.config = config
        self.retry = retry
        self._logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "anthropic_client"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.config.get_api_key(),
            "anthropic-version": self.config.api_version,
            "content-type": "application/json",
        }

    def _send(self, body: dict[str, Any]) -> requests.Response:
        """Make one HTTP call, converting transport failures to LLMError."""
        try:
            return requests.request(
                "POST",
                f"{self.config.base_url}/v1/messages",
                headers=self._headers(),
                json=body,
                timeout=self.config.timeout_seconds,
            )
        except requests.exceptions.Timeout as e:
            raise LLMError(f"Request timed out: {e}", LLMErrorType.TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise LLMError(f"Connection failed: {e}", LLMErrorType.CONNECTION)

    def _retry_delay(self, attempt: int, response: Optional[requests.Response]) -> float:
        """Delay before the next attempt, honouring Retry-After when present."""
        if response is not None:
            retry_after = response.headers.get("retry-after")
            if retry_after:
                try:
                    return min(float(retry_after), self.retry.max_delay_seconds)
                except ValueError:
                    pass
        if not self.retry.exponential_backoff:
            return self.retry.base_delay_seconds
        return min(self.retry.base_delay_seconds * (2 ** attempt), self.retry.max_delay_seconds)

    def complete(
        self,
        model: str,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[ToolSpec],
        max_tokens: Optional[int] = None,
    ) -> ModelResponse:
        """
        Produce one model turn.

        Args:
            model: Model identifier.
            system: System prompt.
            messages: Conversation so far.
            tools: Tools the model may call.
            max_tokens: Output cap (defaults to config).

        Returns:
            ModelResponse for this turn.

        Raises:
            LLMError: If the call fails and is not recoverable, or retries run out.
        """
        body: dict[str, Any] = {
            "model": model,
            "system": system,
            "messages": messages,
            "max_tokens": max_tokens or self.config.max_tokens,
        }
        if tools:
            body["tools"] = [t.to_api() for t in tools]

        attempt = 0
        while True:
            response: Optional[requests.Response] = None
            try:
                response = self._send(body)
                if response.status_code >= 400:
                    raise LLMError(
                        f"Anthropic API returned {response.status_code}",
                        classify_status(response.status_code),
                        status_code=response.status_code,
                        body=response.text[:1000],
                    )
                try:
                    data = response.json()
                except ValueError as e:
                    raise LLMError(f"Invalid JSON in response: {e}", LLMErrorType.PARSE_ERROR,
                                   body=response.text[:1000])
                result = parse_response(data)
                self._log("model_call_complete", {
                    "model": model,
                    "finish_reason": result.finish_reason,
                    "tool_calls": len(result.tool_calls),
                    "usage": result.usage,
                }, level="debug")
                return result
            except LLMError as e:
                if not e.recoverable or attempt >= self.retry.max_retries:
                    self._log("model_call_failed", {
                        "model": model,
                        "error_type": e.error_type.name,
                        "status_code": e.status_code,
                        "attempts": attempt + 1,
                    }, level="error")
                    raise
                delay = self._retry_delay(attempt, response)
                self._log("model_call_retry", {
                    "model": model,
                    "error_type": e.error_type.name,
                    "attempt": attempt + 1,
                    "delay_seconds": delay,
                }, level="warn")
                time.sleep(delay)
                attempt += 1
