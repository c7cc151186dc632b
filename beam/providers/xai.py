"""xAI Grok provider: the OpenAI streaming client pointed at xAI's compatible endpoint."""

import logging
import os

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from beam.providers.base import ProviderError
from beam.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


class XAIProvider(OpenAIProvider):
    _label = "xAI"

    def __init__(self, config: ModelConfig) -> None:
        if not config.base_url:
            raise ProviderError(config.name, "base_url is required for xAI provider")
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._config = config
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)
        logger.debug("xAI client for %s at %s", config.model, config.base_url)
