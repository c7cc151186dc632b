"""Gemini provider using google-genai SDK streaming."""

import logging
import os
import time

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from beam.models import ChatMessage
from beam.providers.base import AIProvider, DeltaCallback, ProviderError, split_system_message

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def stream(self, messages: list[ChatMessage], on_delta: DeltaCallback) -> str:
        system, turns = split_system_message(messages)
        contents = [
            genai_types.Content(
                role="model" if m.role == "assistant" else "user",
                parts=[genai_types.Part(text=m.text)],
            )
            for m in turns
        ]

        start = time.monotonic()
        content = ""
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=self._config.model,
                contents=contents,
                config=genai_types.GenerateContentConfig(
                    max_output_tokens=self._config.max_tokens,
                    system_instruction=system,
                ),
            )
            async for chunk in stream:
                if chunk.text:
                    content += chunk.text
                    on_delta(content, True)
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        if not content:
            raise ProviderError(self._config.name, "Empty response text")

        logger.info("Gemini stream: %.2fs, %d chars", time.monotonic() - start, len(content))
        return content
