"""
Completion backends for the task classifier.

Only the Anthropic Messages API is wired up here; a classifier probe aimed at
any other provider raises UnsupportedProviderError, which the classifier
absorbs into its fallback like every other probe failure.
"""

from __future__ import annotations

from typing import Optional

import anthropic
import structlog

from relay.routing.registry import ModelInfo, ModelRegistry

logger = structlog.get_logger(__name__)


class UnsupportedProviderError(RuntimeError):
    """Raised when no completion backend exists for a model's provider."""


class AnthropicCompleter:
    """Completer backed by ``anthropic.AsyncAnthropic``.

    Credentials come from the registry at call time, so one completer can be
    shared across registry snapshots taken at different moments.
    """

    providers = ("anthropic",)

    def __init__(self, registry: ModelRegistry, request_timeout: float = 30.0) -> None:
        self._registry = registry
        self._request_timeout = request_timeout
        self._clients: dict[str, anthropic.AsyncAnthropic] = {}

    def _client_for(self, api_key: str) -> anthropic.AsyncAnthropic:
        client = self._clients.get(api_key)
        if client is None:
            client = anthropic.AsyncAnthropic(api_key=api_key, timeout=self._request_timeout)
            self._clients[api_key] = client
        return client

    async def complete(self, model: ModelInfo, prompt: str, *, max_tokens: int = 256) -> str:
        if model.provider != "anthropic":
            raise UnsupportedProviderError(f"No completion backend for provider {model.provider!r}")
        api_key: Optional[str] = self._registry.get_api_key_for(model.provider, model.id)
        if not api_key:
            raise UnsupportedProviderError(f"No credentials for {model.display_name}")

        response = await self._client_for(api_key).messages.create(
            model=model.id,
            max_tokens=max_tokens,
            messages=[{"role": "user", "content": prompt}],
        )
        parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        logger.debug(
            "completion.anthropic",
            model=model.id,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return "".join(parts)
