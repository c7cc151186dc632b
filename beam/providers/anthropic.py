"""Anthropic Claude provider using anthropic SDK streaming."""

import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from beam.models import ChatMessage
from beam.providers.base import AIProvider, DeltaCallback, ProviderError, split_system_message

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def stream(self, messages: list[ChatMessage], on_delta: DeltaCallback) -> str:
        system, turns = split_system_message(messages)
        request: dict = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "messages": [{"role": m.role, "content": m.text} for m in turns],
        }
        if system:
            request["system"] = system

        start = time.monotonic()
        content = ""
        try:
            async with self._client.messages.stream(**request) as stream:
                async for text in stream.text_stream:
                    if not text:
                        continue
                    content += text
                    on_delta(content, True)
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        if not content:
            raise ProviderError(self._config.name, "Empty response content")

        logger.info("Anthropic stream: %.2fs, %d chars", time.monotonic() - start, len(content))
        return content
