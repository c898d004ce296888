"""
Tests for the provider adapters and the provider HTTP client.

HTTP is served by httpx.MockTransport; no network access.
"""

import json

import httpx
import pytest

from app.exceptions import UpstreamProviderError
from app.models.api import AIProvider, MessageRole
from app.models.domain import ChatMessage
from app.services.providers import (
    GEMINI_SYSTEM_ACK,
    AnthropicAdapter,
    GeminiAdapter,
    OpenAIAdapter,
    ProviderClient,
    get_adapter,
    is_quota_error,
)

MESSAGES = [
    ChatMessage(role=MessageRole.USER, content="What is relativity?"),
    ChatMessage(role=MessageRole.ASSISTANT, content="A theory."),
    ChatMessage(role=MessageRole.USER, content="Which one?"),
]


def _client_for(handler) -> ProviderClient:
    return ProviderClient(http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestAnthropicAdapter:
    """Anthropic Messages API mapping."""

    def test_build_request(self):
        """Key goes in x-api-key, system prompt in its own field."""
        request = AnthropicAdapter(model="claude-test").build_request(
            "sk-ant", MESSAGES, "Be helpful", 100
        )

        assert request.url == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert request.body["system"] == "Be helpful"
        assert request.body["max_tokens"] == 100
        assert [m["role"] for m in request.body["messages"]] == ["user", "assistant", "user"]

    def test_system_messages_fold_into_system_prompt(self):
        """System-role turns are not sent as messages."""
        messages = [ChatMessage(role=MessageRole.SYSTEM, content="Be brief"), *MESSAGES]
        request = AnthropicAdapter(model="claude-test").build_request("k", messages, "Base", 10)

        assert request.body["system"] == "Base\n\nBe brief"
        assert len(request.body["messages"]) == 3

    def test_parse_response(self):
        """Text blocks are joined and tokens are input plus output."""
        completion = AnthropicAdapter(model="claude-test").parse_response(
            {
                "model": "claude-served",
                "content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "there"}],
                "usage": {"input_tokens": 12, "output_tokens": 30},
            }
        )
        assert completion.text == "Hello there"
        assert completion.model == "claude-served"
        assert completion.tokens == 42

    def test_malformed_response(self):
        """Missing content is an upstream error."""
        with pytest.raises(UpstreamProviderError, match="Malformed"):
            AnthropicAdapter(model="claude-test").parse_response({"usage": {}})


class TestOpenAIAdapter:
    """OpenAI Chat Completions mapping."""

    def test_build_request(self):
        """Bearer auth and the system prompt as the first message."""
        request = OpenAIAdapter(model="gpt-test").build_request("sk-oa", MESSAGES, "Sys", 50)

        assert request.headers["Authorization"] == "Bearer sk-oa"
        assert request.body["messages"][0] == {"role": "system", "content": "Sys"}
        assert len(request.body["messages"]) == 4

    def test_parse_response(self):
        """Content and total_tokens are read from the first choice."""
        completion = OpenAIAdapter(model="gpt-test").parse_response(
            {
                "model": "gpt-served",
                "choices": [{"message": {"content": "Answer"}}],
                "usage": {"total_tokens": 77},
            }
        )
        assert (completion.text, completion.model, completion.tokens) == (
            "Answer",
            "gpt-served",
            77,
        )

    def test_empty_choices_is_malformed(self):
        """No choices is an upstream error."""
        with pytest.raises(UpstreamProviderError):
            OpenAIAdapter(model="gpt-test").parse_response({"choices": []})


class TestGeminiAdapter:
    """Gemini generateContent mapping."""

    def test_build_request(self):
        """Key goes in a header and the system prompt becomes an acknowledged user turn."""
        request = GeminiAdapter(model="gemini-test").build_request("AIza", MESSAGES, "Sys", 20)

        assert request.url.endswith("/gemini-test:generateContent")
        assert "key=" not in request.url
        assert request.headers["x-goog-api-key"] == "AIza"
        contents = request.body["contents"]
        assert contents[0] == {"role": "user", "parts": [{"text": "Sys"}]}
        assert contents[1] == {"role": "model", "parts": [{"text": GEMINI_SYSTEM_ACK}]}
        assert [c["role"] for c in contents[2:]] == ["user", "model", "user"]
        assert request.body["generationConfig"] == {"maxOutputTokens": 20}

    def test_parse_response(self):
        """Text of the first candidate and totalTokenCount."""
        completion = GeminiAdapter(model="gemini-test").parse_response(
            {
                "candidates": [{"content": {"parts": [{"text": "Hi"}]}}],
                "usageMetadata": {"totalTokenCount": 9},
            }
        )
        assert completion.text == "Hi"
        assert completion.model == "gemini-test"
        assert completion.tokens == 9

    def test_missing_candidates_is_malformed(self):
        """No candidates is an upstream error."""
        with pytest.raises(UpstreamProviderError):
            GeminiAdapter(model="gemini-test").parse_response({"usageMetadata": {}})


class TestAdapterSelection:
    """get_adapter and quota detection."""

    @pytest.mark.parametrize(
        ("provider", "adapter_type"),
        [
            (AIProvider.ANTHROPIC, AnthropicAdapter),
            (AIProvider.OPENAI, OpenAIAdapter),
            (AIProvider.GEMINI, GeminiAdapter),
        ],
    )
    def test_get_adapter(self, provider: AIProvider, adapter_type: type):
        """Each provider maps to its adapter."""
        adapter = get_adapter(provider)
        assert isinstance(adapter, adapter_type)
        assert adapter.provider is provider

    @pytest.mark.parametrize(
        ("message", "status_code", "expected"),
        [
            ("Too many requests", 429, True),
            ("You exceeded your current quota", 400, True),
            ("Your credit balance is too low", 400, True),
            ("RESOURCE_EXHAUSTED", None, True),
            ("invalid x-api-key", 401, False),
            ("Provider request timed out", None, False),
        ],
    )
    def test_is_quota_error(self, message: str, status_code: int | None, expected: bool):
        """Rate limits and exhausted quota are recognised."""
        error = UpstreamProviderError("openai", message, status_code=status_code)
        assert is_quota_error(error) is expected


class TestProviderClient:
    """One-shot HTTP dispatch."""

    @pytest.mark.asyncio
    async def test_success(self):
        """The adapter's request is sent and its response parsed."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "model": "gpt-served",
                    "choices": [{"message": {"content": "OK"}}],
                    "usage": {"total_tokens": 5},
                },
            )

        client = _client_for(handler)
        completion = await client.complete(OpenAIAdapter(model="gpt-test"), "sk", MESSAGES, "S", 10)

        assert completion.text == "OK"
        assert len(seen) == 1
        assert seen[0].headers["authorization"] == "Bearer sk"
        assert json.loads(seen[0].content)["model"] == "gpt-test"
        await client.close()

    @pytest.mark.asyncio
    async def test_error_payload_surfaces_provider_message(self):
        """The provider's own error message and status are kept."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401, json={"error": {"type": "authentication_error", "message": "invalid x-api-key"}}
            )

        with pytest.raises(UpstreamProviderError) as exc_info:
            await _client_for(handler).complete(
                AnthropicAdapter(model="claude-test"), "bad", MESSAGES, "S", 10
            )

        assert exc_info.value.message == "invalid x-api-key"
        assert exc_info.value.status_code == 401
        assert exc_info.value.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_error_field_on_success_status(self):
        """An error body is a failure even with HTTP 200."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"error": "quota exceeded"})

        with pytest.raises(UpstreamProviderError, match="quota exceeded"):
            await _client_for(handler).complete(
                OpenAIAdapter(model="gpt-test"), "sk", MESSAGES, "S", 10
            )

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        """HTML error pages become upstream errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="<html>Bad Gateway</html>")

        with pytest.raises(UpstreamProviderError, match="non-JSON") as exc_info:
            await _client_for(handler).complete(
                OpenAIAdapter(model="gpt-test"), "sk", MESSAGES, "S", 10
            )
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_timeout_is_not_retried(self):
        """A timeout fails the call after a single attempt."""
        attempts = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal attempts
            attempts += 1
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(UpstreamProviderError, match="timed out"):
            await _client_for(handler).complete(
                GeminiAdapter(model="gemini-test"), "AIza", MESSAGES, "S", 10
            )
        assert attempts == 1

    @pytest.mark.asyncio
    async def test_connection_error(self):
        """Unreachable providers become upstream errors."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(UpstreamProviderError, match="unreachable"):
            await _client_for(handler).complete(
                OpenAIAdapter(model="gpt-test"), "sk", MESSAGES, "S", 10
            )
