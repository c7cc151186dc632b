"""Abstract base for all streaming model providers."""

from abc import ABC, abstractmethod
from collections.abc import Callable

from beam.models import ChatMessage

# on_delta(text_so_far, typing)
DeltaCallback = Callable[[str, bool], None]


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


def split_system_message(messages: list[ChatMessage]) -> tuple[str | None, list[ChatMessage]]:
    """Pull system messages out of the history, joined in order. Other turns keep their order."""
    system_parts = [m.text for m in messages if m.role == "system" and m.text]
    rest = [m for m in messages if m.role != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), rest


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'claude')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def stream(self, messages: list[ChatMessage], on_delta: DeltaCallback) -> str:
        """Stream a completion for the given conversation.

        Args:
            messages: Conversation turns; system turns are sent as the system instruction.
            on_delta: Called with the cumulative text after every received chunk.

        Returns:
            The full generated text.

        Raises:
            ProviderError: On API failure or empty response.
        """
        ...
