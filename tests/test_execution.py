"""Tests for beam/gather/execution.py: the fusion instruction chain."""

from dataclasses import replace

import pytest

from beam.gather.execution import gather_start_fusion, gather_stop_fusion
from beam.gather.fusion import Fusion, create_fusion, fusion_is_usable_output
from beam.gather.instructions import ChatGenerateInstruction
from beam.models import ProgressView, create_text_message
from tests.conftest import Reply, ScriptedGenerator, wait_until


class _FusionHolder:
    """Plays the owning engine: applies updates copy-on-write and records them."""

    def __init__(self, fusion: Fusion) -> None:
        self.fusion = fusion
        self.stages: list[str] = [fusion.stage]
        self.progress: list[ProgressView] = []

    def update(self, update) -> None:
        changes = update(self.fusion) if callable(update) else update
        if not changes:
            return
        self.fusion = replace(self.fusion, **changes)
        if "stage" in changes:
            self.stages.append(changes["stage"])
        if isinstance(changes.get("progress_view"), ProgressView):
            self.progress.append(changes["progress_view"])


def _steps(count: int = 3) -> list[ChatGenerateInstruction]:
    return [
        ChatGenerateInstruction(label=f"Step {i}", system_prompt=f"S{i}", user_prompt=f"U{i} <{{{{PrevStepOutput}}}}>")
        for i in range(1, count + 1)
    ]


@pytest.fixture
def chat_messages():
    return [create_text_message("user", "Which database?")]


@pytest.fixture
def ray_messages():
    return [create_text_message("assistant", "Postgres"), create_text_message("assistant", "SQLite")]


async def test_chain_runs_in_order_and_carries_output(chat_messages, ray_messages):
    generator = ScriptedGenerator({"claude": [Reply(chunks=["one"]), Reply(chunks=["two"]), Reply(chunks=["three"])]})
    holder = _FusionHolder(create_fusion("custom", _steps(), "claude"))

    task = gather_start_fusion(holder.fusion, chat_messages, ray_messages, generator, holder.update)
    await task

    calls = generator.calls
    assert len(calls) == 3
    # step i+1 never starts before step i has settled
    assert calls[0].finished < calls[1].started
    assert calls[1].finished < calls[2].started
    assert calls[1].messages[-1].text == "U2 <one>"
    assert calls[2].messages[-1].text == "U3 <two>"

    assert holder.fusion.stage == "success"
    assert holder.fusion.output_message.text == "three"
    assert holder.fusion.cancel_source is None
    assert holder.fusion.progress_view is None
    assert holder.fusion.instruction_view is None
    assert [p.text for p in holder.progress] == ["1/3 · Step 1 ...", "2/3 · Step 2 ...", "3/3 · Step 3 ..."]
    assert fusion_is_usable_output(holder.fusion)


async def test_cancel_during_step_two_keeps_step_two_partial(chat_messages, ray_messages):
    generator = ScriptedGenerator({"claude": [
        Reply(chunks=["step one output"]),
        Reply(chunks=["step two ", "partial"], hold=True),
        Reply(chunks=["never"]),
    ]})
    holder = _FusionHolder(create_fusion("custom", _steps(), "claude"))

    task = gather_start_fusion(holder.fusion, chat_messages, ray_messages, generator, holder.update)
    await wait_until(lambda: len(generator.calls) == 2 and generator.calls[1].outcome is None
                     and "partial" in holder.fusion.instruction_view.text)
    holder.fusion.cancel_source.cancel()
    await task

    assert holder.fusion.stage == "stopped"
    assert holder.fusion.error_text is None
    assert holder.fusion.output_message.text == "step two partial"
    assert len(generator.calls) == 2


async def test_stop_fusion_marks_stopped(chat_messages, ray_messages):
    generator = ScriptedGenerator({"claude": Reply(chunks=["x"], hold=True)})
    holder = _FusionHolder(create_fusion("fuse", _steps(1), "claude"))

    task = gather_start_fusion(holder.fusion, chat_messages, ray_messages, generator, holder.update)
    await wait_until(lambda: len(generator.calls) == 1)
    holder.fusion = gather_stop_fusion(holder.fusion)
    await task

    assert holder.fusion.stage == "stopped"
    assert holder.fusion.output_message.text == "x"


async def test_model_error_becomes_issue(chat_messages, ray_messages):
    generator = ScriptedGenerator({"claude": Reply(chunks=[], outcome="errored", error_message="rate limited")})
    holder = _FusionHolder(create_fusion("fuse", _steps(2), "claude"))

    await gather_start_fusion(holder.fusion, chat_messages, ray_messages, generator, holder.update)

    assert holder.fusion.stage == "error"
    assert holder.fusion.error_text == "Issue: Model execution error: rate limited"
    assert len(generator.calls) == 1
    assert not fusion_is_usable_output(holder.fusion)


@pytest.mark.parametrize("case, expected", [
    ("no_instructions", "No fusion instructions available"),
    ("no_history", "No conversation history available"),
    ("one_ray", "No responses available"),
    ("no_model", "No Merge model selected"),
])
async def test_validation_gate_never_calls_generator(chat_messages, ray_messages, case, expected):
    generator = ScriptedGenerator()
    fusion = create_fusion("fuse", _steps(1), "claude")
    if case == "no_instructions":
        fusion = replace(fusion, instructions=[])
    if case == "no_history":
        chat_messages = []
    if case == "one_ray":
        ray_messages = ray_messages[:1]
    if case == "no_model":
        fusion = replace(fusion, model_id=None)
    holder = _FusionHolder(fusion)

    task = gather_start_fusion(holder.fusion, chat_messages, ray_messages, generator, holder.update)

    assert task is None
    assert holder.fusion.stage == "error"
    assert holder.fusion.error_text == expected
    assert set(holder.stages) <= {"idle", "error"}
    assert generator.calls == []


async def test_restart_ignores_superseded_run(chat_messages, ray_messages):
    generator = ScriptedGenerator({"claude": [Reply(chunks=["old"], hold=True), Reply(chunks=["new"])]})
    holder = _FusionHolder(create_fusion("fuse", _steps(1), "claude"))

    first = gather_start_fusion(holder.fusion, chat_messages, ray_messages, generator, holder.update)
    await wait_until(lambda: len(generator.calls) == 1)
    second = gather_start_fusion(holder.fusion, chat_messages, ray_messages, generator, holder.update)
    await first
    await second

    assert holder.fusion.stage == "success"
    assert holder.fusion.output_message.text == "new"


async def test_failed_restart_is_not_overwritten_by_superseded_run(chat_messages, ray_messages):
    generator = ScriptedGenerator({"claude": [Reply(chunks=["old"], hold=True)]})
    holder = _FusionHolder(create_fusion("fuse", _steps(1), "claude"))

    first = gather_start_fusion(holder.fusion, chat_messages, ray_messages, generator, holder.update)
    await wait_until(lambda: len(generator.calls) == 1)
    second = gather_start_fusion(holder.fusion, chat_messages, ray_messages[:1], generator, holder.update)
    assert second is None
    await first

    assert holder.fusion.stage == "error"
    assert holder.fusion.error_text == "No responses available"
    assert holder.fusion.output_message is None
    assert holder.fusion.cancel_source is None
