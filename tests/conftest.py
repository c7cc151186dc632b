"""Shared pytest fixtures."""

import asyncio
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PromptsConfig
from beam.cancellation import CancellationToken
from beam.generation import ChatGenerator
from beam.models import ChatMessage, GenerateResult, create_text_message
from beam.providers.base import AIProvider, DeltaCallback, ProviderError


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="test",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        ranking_system="You rank responses.",
        ranking="Question: {query}\n\nResponses:\n{responses}\n\nRank them. End with FINAL RANKING:",
        chairman_system="You are the chairman.",
        chairman="Question: {query}\n\nResponses:\n{responses}\n\nRankings:\n{rankings}\n\nSynthesize:",
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        ray_count=2,
        output_dir=tmp_path / "output",
        gather_model="claude",
        chairman="claude",
        ray_models=["claude", "gemini"],
        preferences_path=tmp_path / "prefs.yaml",
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        model="claude-sonnet-4-5",
        api_key_env="ANTHROPIC_API_KEY",
        max_tokens=4096,
    )
    return AppConfig(
        defaults=sample_defaults_config,
        models={"claude": model_cfg},
        prompts=sample_prompts_config,
        available_providers={"claude"},
    )


@pytest.fixture
def user_history() -> list[ChatMessage]:
    return [
        create_text_message("system", "You are helpful."),
        create_text_message("user", "Should we use YAML or JSON for config?"),
    ]


# --- generator test doubles ---


@dataclass
class Reply:
    """One scripted generation: chunks streamed in order, then an outcome."""
    chunks: list[str] = field(default_factory=lambda: ["Mock ", "response"])
    outcome: str = "success"
    error_message: str | None = None
    hold: bool = False  # after the chunks, block until the token is revoked


@dataclass
class GenerateCall:
    model_id: str
    messages: list[ChatMessage]
    started: int
    finished: int | None = None
    outcome: str | None = None


class ScriptedGenerator(ChatGenerator):
    """ChatGenerator double that replays scripted replies per model and records every call."""

    def __init__(self, replies: dict[str, Reply | list[Reply]] | None = None, default: Reply | None = None) -> None:
        self._replies: dict[str, list[Reply]] = {
            model_id: list(reply) if isinstance(reply, list) else [reply]
            for model_id, reply in (replies or {}).items()
        }
        self._default = default or Reply()
        self._clock = itertools.count(1)
        self.calls: list[GenerateCall] = []

    def _next_reply(self, model_id: str) -> Reply:
        queue = self._replies.get(model_id)
        if not queue:
            return self._default
        # the last scripted reply repeats
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def _finish(self, call: GenerateCall, result: GenerateResult) -> GenerateResult:
        call.finished = next(self._clock)
        call.outcome = result.outcome
        return result

    async def generate(
        self,
        model_id: str,
        messages: list[ChatMessage],
        token: CancellationToken,
        on_delta: Callable[[str, bool], None],
    ) -> GenerateResult:
        call = GenerateCall(model_id=model_id, messages=list(messages), started=next(self._clock))
        self.calls.append(call)
        reply = self._next_reply(model_id)

        text = ""
        for chunk in reply.chunks:
            await asyncio.sleep(0)
            if token.cancelled:
                return self._finish(call, GenerateResult("aborted", text=text))
            text += chunk
            on_delta(text, True)

        if reply.hold:
            await token.wait()
        await asyncio.sleep(0)
        if token.cancelled:
            return self._finish(call, GenerateResult("aborted", text=text))
        if reply.outcome == "errored":
            return self._finish(call, GenerateResult("errored", text=text, error_message=reply.error_message))
        on_delta(text, False)
        return self._finish(call, GenerateResult("success", text=text))


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


class MockProvider(AIProvider):
    """Test double AIProvider streaming fixed chunks."""

    def __init__(
        self,
        provider_name: str = "mock",
        chunks: list[str] | None = None,
        error: str | None = None,
        hang: bool = False,
    ) -> None:
        self._name = provider_name
        self._chunks = chunks if chunks is not None else ["Mock ", "response"]
        self._error = error
        self._hang = hang
        self.cancelled = False

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def stream(self, messages: list[ChatMessage], on_delta: DeltaCallback) -> str:
        content = ""
        for chunk in self._chunks:
            await asyncio.sleep(0)
            content += chunk
            on_delta(content, True)
        if self._hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self._error:
            raise ProviderError(self._name, self._error)
        return content


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)
