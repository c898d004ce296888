"""
AI Provider Adapters - One variant per provider, one shared contract.

NO DICTIONARIES - Requests and completions cross the adapter boundary as
typed dataclasses; provider JSON exists only inside build_request/parse_response.

Adding a provider means adding one adapter and one entry in get_adapter().
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, ClassVar, Protocol

import httpx
from structlog import get_logger

from app.config import Settings, settings
from app.exceptions import UpstreamProviderError
from app.models.api import AIProvider, MessageRole
from app.models.domain import ChatMessage, ProviderCompletion, ProviderRequest

logger = get_logger(__name__)

GEMINI_SYSTEM_ACK = "Understood. I will follow these instructions."

QUOTA_MARKERS = (
    "quota",
    "rate limit",
    "rate_limit",
    "resource_exhausted",
    "insufficient_quota",
    "credit balance",
    "billing",
)


class ProviderAdapter(Protocol):
    """
    Maps the canonical chat request/response onto one provider's wire format.

    Implementations are stateless and immutable.
    """

    provider: ClassVar[AIProvider]
    model: str

    def build_request(
        self,
        api_key: str,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        max_tokens: int,
    ) -> ProviderRequest:
        """Build the provider HTTP request."""
        ...

    def parse_response(self, payload: dict[str, Any]) -> ProviderCompletion:
        """Extract text, model and token usage from a successful response body."""
        ...


def _split_system(
    messages: Sequence[ChatMessage], system_prompt: str
) -> tuple[str, list[ChatMessage]]:
    """Fold system-role messages into the system prompt for providers without a system role."""
    extra = [m.content for m in messages if m.role == MessageRole.SYSTEM]
    turns = [m for m in messages if m.role != MessageRole.SYSTEM]
    return "\n\n".join([system_prompt, *extra]) if extra else system_prompt, turns


def _malformed(provider: AIProvider, error: Exception) -> UpstreamProviderError:
    return UpstreamProviderError(provider.value, f"Malformed provider response: {error}")


@dataclass(frozen=True)
class AnthropicAdapter:
    """Anthropic Messages API."""

    provider: ClassVar[AIProvider] = AIProvider.ANTHROPIC

    model: str
    url: str = "https://api.anthropic.com/v1/messages"
    api_version: str = "2023-06-01"

    def build_request(
        self,
        api_key: str,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        max_tokens: int,
    ) -> ProviderRequest:
        system, turns = _split_system(messages, system_prompt)
        return ProviderRequest(
            url=self.url,
            headers={
                "Content-Type": "application/json",
                "x-api-key": api_key,
                "anthropic-version": self.api_version,
            },
            body={
                "model": self.model,
                "max_tokens": max_tokens,
                "system": system,
                "messages": [{"role": m.role.value, "content": m.content} for m in turns],
            },
        )

    def parse_response(self, payload: dict[str, Any]) -> ProviderCompletion:
        try:
            text = "".join(
                block["text"] for block in payload["content"] if block.get("type", "text") == "text"
            )
            usage = payload.get("usage") or {}
            tokens = int(usage.get("input_tokens", 0)) + int(usage.get("output_tokens", 0))
            return ProviderCompletion(
                text=text, model=str(payload.get("model", self.model)), tokens=tokens
            )
        except (KeyError, TypeError, ValueError) as e:
            raise _malformed(self.provider, e) from e


@dataclass(frozen=True)
class OpenAIAdapter:
    """OpenAI Chat Completions API."""

    provider: ClassVar[AIProvider] = AIProvider.OPENAI

    model: str
    url: str = "https://api.openai.com/v1/chat/completions"

    def build_request(
        self,
        api_key: str,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        max_tokens: int,
    ) -> ProviderRequest:
        return ProviderRequest(
            url=self.url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            body={
                "model": self.model,
                "max_tokens": max_tokens,
                "messages": [
                    {"role": MessageRole.SYSTEM.value, "content": system_prompt},
                    *({"role": m.role.value, "content": m.content} for m in messages),
                ],
            },
        )

    def parse_response(self, payload: dict[str, Any]) -> ProviderCompletion:
        try:
            text = payload["choices"][0]["message"]["content"] or ""
            usage = payload.get("usage") or {}
            return ProviderCompletion(
                text=text,
                model=str(payload.get("model", self.model)),
                tokens=int(usage.get("total_tokens", 0)),
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise _malformed(self.provider, e) from e


@dataclass(frozen=True)
class GeminiAdapter:
    """Google Gemini generateContent API.

    Gemini has no system role here; the system prompt is sent as an opening
    user turn followed by a model acknowledgement.
    """

    provider: ClassVar[AIProvider] = AIProvider.GEMINI

    model: str
    base_url: str = "https://generativelanguage.googleapis.com/v1beta/models"

    def build_request(
        self,
        api_key: str,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        max_tokens: int,
    ) -> ProviderRequest:
        system, turns = _split_system(messages, system_prompt)
        contents = [
            {"role": "user", "parts": [{"text": system}]},
            {"role": "model", "parts": [{"text": GEMINI_SYSTEM_ACK}]},
        ]
        contents.extend(
            {
                "role": "model" if m.role == MessageRole.ASSISTANT else "user",
                "parts": [{"text": m.content}],
            }
            for m in turns
        )
        return ProviderRequest(
            url=f"{self.base_url}/{self.model}:generateContent",
            headers={"Content-Type": "application/json", "x-goog-api-key": api_key},
            body={
                "contents": contents,
                "generationConfig": {"maxOutputTokens": max_tokens},
            },
        )

    def parse_response(self, payload: dict[str, Any]) -> ProviderCompletion:
        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
            usage = payload.get("usageMetadata") or {}
            return ProviderCompletion(
                text=text,
                model=self.model,
                tokens=int(usage.get("totalTokenCount", 0)),
            )
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise _malformed(self.provider, e) from e


def get_adapter(provider: AIProvider, config: Settings = settings) -> ProviderAdapter:
    """Select the adapter for a provider."""
    if provider == AIProvider.ANTHROPIC:
        return AnthropicAdapter(model=config.anthropic_model)
    if provider == AIProvider.OPENAI:
        return OpenAIAdapter(model=config.openai_model)
    if provider == AIProvider.GEMINI:
        return GeminiAdapter(model=config.gemini_model)
    raise ValueError(f"Unknown provider: {provider}")


def is_quota_error(error: UpstreamProviderError) -> bool:
    """True for rate-limit and quota failures, which still prove a key is genuine."""
    if error.status_code == 429:
        return True
    message = error.message.lower()
    return any(marker in message for marker in QUOTA_MARKERS)


def _error_message(payload: Any) -> str | None:
    """Pull the provider's error message out of an error body, if there is one."""
    if not isinstance(payload, dict) or not payload.get("error"):
        return None
    error = payload["error"]
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or error)
    return str(error)


class ProviderClient:
    """
    Performs provider calls over HTTP.

    A call is attempted exactly once; every failure surfaces as
    UpstreamProviderError carrying the provider's own message.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
    ) -> None:
        self._http_client = http_client
        self.timeout = timeout if timeout is not None else settings.provider_timeout_seconds

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def complete(
        self,
        adapter: ProviderAdapter,
        api_key: str,
        messages: Sequence[ChatMessage],
        system_prompt: str,
        max_tokens: int,
    ) -> ProviderCompletion:
        """Send one chat turn and parse the completion."""
        provider = adapter.provider.value
        request = adapter.build_request(api_key, messages, system_prompt, max_tokens)

        try:
            response = await self.http_client.post(
                request.url, headers=request.headers, json=request.body
            )
        except httpx.TimeoutException as e:
            logger.warning("provider_request_timeout", provider=provider)
            raise UpstreamProviderError(provider, "Provider request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("provider_request_failed", provider=provider, error_type=type(e).__name__)
            raise UpstreamProviderError(provider, f"Provider unreachable: {type(e).__name__}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamProviderError(
                provider,
                f"Provider returned non-JSON response (HTTP {response.status_code})",
                status_code=response.status_code,
            ) from e

        message = _error_message(payload)
        if message is not None or response.status_code >= 400:
            logger.warning(
                "provider_error_response",
                provider=provider,
                status_code=response.status_code,
            )
            raise UpstreamProviderError(
                provider,
                message or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if not isinstance(payload, dict):
            raise UpstreamProviderError(provider, "Provider returned an unexpected body")

        return adapter.parse_response(payload)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
