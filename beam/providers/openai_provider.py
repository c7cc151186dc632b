"""OpenAI provider using openai SDK streaming chat completions."""

import logging
import os
import time

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from beam.models import ChatMessage
from beam.providers.base import AIProvider, DeltaCallback, ProviderError

logger = logging.getLogger(__name__)


async def stream_chat_completion(
    client: AsyncOpenAI,
    config: ModelConfig,
    messages: list[ChatMessage],
    on_delta: DeltaCallback,
) -> str:
    """Stream one chat completion from an OpenAI-compatible endpoint; returns the full text."""
    content = ""
    try:
        stream = await client.chat.completions.create(
            model=config.model,
            messages=[{"role": m.role, "content": m.text} for m in messages],
            max_tokens=config.max_tokens,
            stream=True,
        )
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                content += delta
                on_delta(content, True)
    except Exception as exc:
        raise ProviderError(config.name, f"API call failed: {exc}") from exc

    if not content:
        raise ProviderError(config.name, "Empty response content")
    return content


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK."""

    _label = "OpenAI"

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = AsyncOpenAI(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def stream(self, messages: list[ChatMessage], on_delta: DeltaCallback) -> str:
        start = time.monotonic()
        content = await stream_chat_completion(self._client, self._config, messages, on_delta)
        logger.info("%s stream: %.2fs, %d chars", self._label, time.monotonic() - start, len(content))
        return content
