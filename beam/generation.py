"""Streaming generation contract consumed by scatter, gather and council, plus the provider router."""

import asyncio
import logging
from abc import ABC, abstractmethod

from beam.cancellation import CancellationToken
from beam.models import ChatMessage, GenerateResult
from beam.providers.base import AIProvider, DeltaCallback, ProviderError

logger = logging.getLogger(__name__)


class ChatGenerator(ABC):
    """Generates one streamed completion for a named model."""

    @abstractmethod
    async def generate(
        self,
        model_id: str,
        messages: list[ChatMessage],
        token: CancellationToken,
        on_delta: DeltaCallback,
    ) -> GenerateResult:
        """Stream a completion, forwarding cumulative text to on_delta.

        Never raises for transport problems: the outcome is 'success', 'aborted'
        (token revoked) or 'errored' (with error_message).
        """
        ...


class ProviderGenerator(ChatGenerator):
    """Routes model ids (the provider names from settings) to streaming providers."""

    def __init__(self, providers: dict[str, AIProvider]) -> None:
        self._providers = dict(providers)

    @property
    def model_ids(self) -> list[str]:
        return list(self._providers)

    def model_name(self, model_id: str) -> str:
        provider = self._providers.get(model_id)
        return f"{model_id} ({provider.model_string()})" if provider else model_id

    async def generate(
        self,
        model_id: str,
        messages: list[ChatMessage],
        token: CancellationToken,
        on_delta: DeltaCallback,
    ) -> GenerateResult:
        provider = self._providers.get(model_id)
        if provider is None:
            return GenerateResult("errored", error_message=f"Unknown model: {model_id}")
        if token.cancelled:
            return GenerateResult("aborted")

        last_text = ""

        def forward(text: str, typing: bool) -> None:
            nonlocal last_text
            if token.cancelled:
                return
            last_text = text
            on_delta(text, typing)

        stream_task = asyncio.ensure_future(provider.stream(messages, forward))
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({stream_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            stream_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if not stream_task.done():
            # revoked while streaming: the provider observes it as task cancellation
            stream_task.cancel()
            try:
                await stream_task
            except (asyncio.CancelledError, ProviderError):
                pass
            logger.info("Generation aborted for %s after %d chars", model_id, len(last_text))
            return GenerateResult("aborted", text=last_text)

        try:
            text = stream_task.result()
        except ProviderError as exc:
            logger.warning("Generation failed for %s: %s", model_id, exc)
            return GenerateResult("errored", text=last_text, error_message=str(exc))
        except Exception as exc:
            logger.warning("Generation failed for %s: %s", model_id, exc)
            return GenerateResult("errored", text=last_text, error_message=f"Unexpected error: {exc}")

        if token.cancelled:
            return GenerateResult("aborted", text=last_text)

        on_delta(text, False)
        return GenerateResult("success", text=text)
