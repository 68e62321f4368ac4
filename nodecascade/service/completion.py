from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from nodecascade.logging import get_logger
from nodecascade.service.errors import (
    MissingCredentialsError,
    ModelUnavailableError,
    ProviderError,
)

logger = get_logger(__name__)

DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 8000

# Legacy and short UI names mapped to provider-qualified ids.
MODEL_MAP: Dict[str, str] = {
    "openai-gpt-4o": "google/gemini-3-flash-preview",
    "gpt-4o": "google/gemini-3-flash-preview",
    "gpt-4": "openai/gpt-5",
    "claude-3.5": "google/gemini-2.5-pro",
    "sonar": "google/gemini-2.5-flash",
    "local-vllm": "google/gemini-2.5-flash",
    "gemini-2.5-pro": "google/gemini-2.5-pro",
    "gemini-2.5-flash": "google/gemini-2.5-flash",
    "gemini-2.5-flash-lite": "google/gemini-2.5-flash-lite",
    "gemini-3-flash-preview": "google/gemini-3-flash-preview",
    "gemini-3-pro-preview": "google/gemini-3-pro-preview",
    "gpt-5": "openai/gpt-5",
    "gpt-5-mini": "openai/gpt-5-mini",
    "gpt-5-nano": "openai/gpt-5-nano",
    "gpt-5.2": "openai/gpt-5.2",
}

PERPLEXITY_PREFIX = "perplexity/"


def map_model_name(ui_model: Optional[str]) -> str:
    name = ui_model or DEFAULT_MODEL
    return MODEL_MAP.get(name, name)


@dataclass
class CompletionResult:
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    finish_reason: Optional[str] = None
    has_usage: bool = False

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "length"

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "CompletionResult":
        choices = data.get("choices") or [{}]
        first = choices[0] or {}
        message = first.get("message") or {}
        usage = data.get("usage") or {}
        prompt_tokens = int(usage.get("prompt_tokens") or 0)
        completion_tokens = int(usage.get("completion_tokens") or 0)
        return cls(
            text=message.get("content") or "",
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=int(usage.get("total_tokens") or prompt_tokens + completion_tokens),
            finish_reason=first.get("finish_reason"),
            has_usage=bool(data.get("usage")),
        )


class CompletionClient:
    """Chat-completions client routing between the gateway and Perplexity.

    Models prefixed ``perplexity/`` go to the Perplexity endpoint with the
    prefix stripped; everything else goes to the completion gateway.
    """

    def __init__(
        self,
        *,
        api_url: str,
        api_key: Optional[str],
        perplexity_api_url: str,
        perplexity_api_key: Optional[str],
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_url = api_url
        self.api_key = api_key
        self.perplexity_api_url = perplexity_api_url
        self.perplexity_api_key = perplexity_api_key
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def route(self, model: str) -> Tuple[str, Optional[str], str, str]:
        """Return ``(url, api_key, key_name, api_model)`` for ``model``."""
        if model.startswith(PERPLEXITY_PREFIX):
            return (
                self.perplexity_api_url,
                self.perplexity_api_key,
                "PERPLEXITY_API_KEY",
                model[len(PERPLEXITY_PREFIX):],
            )
        return self.api_url, self.api_key, "COMPLETION_API_KEY", model

    def ensure_configured(self, model: str) -> None:
        _, api_key, key_name, _ = self.route(model)
        if not api_key:
            raise MissingCredentialsError(key_name)

    async def complete(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
        temperature: Optional[float] = None,
        web_search: bool = False,
        token_field: str = "max_completion_tokens",
    ) -> CompletionResult:
        url, api_key, key_name, api_model = self.route(model)
        if not api_key:
            raise MissingCredentialsError(key_name)

        body: Dict[str, Any] = {
            "model": api_model,
            "messages": messages,
            token_field: max_tokens,
        }
        if temperature is not None:
            body["temperature"] = temperature
        if web_search and model.startswith("google/"):
            body["tools"] = [{"googleSearch": {}}]

        client = await self._get_client()
        response = await client.post(
            url,
            json=body,
            headers={"Authorization": f"Bearer {api_key}"},
        )
        if response.status_code >= 400:
            error_text = response.text
            logger.error(
                "completion_request_failed",
                model=model,
                status_code=response.status_code,
                body=error_text[:500],
            )
            if ModelUnavailableError.matches(response.status_code, error_text):
                raise ModelUnavailableError(response.status_code, error_text, model=model)
            raise ProviderError(response.status_code, error_text, model=model)
        return CompletionResult.from_response(response.json())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
