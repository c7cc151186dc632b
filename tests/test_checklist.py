"""Tests for beam/gather/checklist.py."""

import asyncio

import pytest

from beam.cancellation import CancellationSource
from beam.gather.checklist import (
    execute_user_input_checklist_instruction,
    parse_text_to_checklist,
    render_checklist_selection,
)
from beam.gather.instructions import (
    ExecutionInputState,
    InstructionError,
    InstructionStopped,
    UserInputChecklistInstruction,
)
from beam.models import ChecklistItem, ChecklistView, create_empty_message, create_text_message
from tests.conftest import wait_until

_OUTPUT_PROMPT = "The user selected:\n{{YesAnswers}}\n\nThe user did NOT select:\n{{NoAnswers}}"


def _inputs(generator, source: CancellationSource, views: list) -> ExecutionInputState:
    return ExecutionInputState(
        chat_messages=[create_text_message("user", "Q")],
        ray_messages=[create_text_message("assistant", "A"), create_text_message("assistant", "B")],
        model_id="claude",
        context_ref="fusion-1",
        generator=generator,
        chain_token=source.token,
        update_progress_view=lambda view: None,
        update_instruction_view=views.append,
        request_stop=source.cancel,
        intermediate_message=create_empty_message(),
    )


def test_parse_strict_checkboxes():
    items = parse_text_to_checklist("Intro\n- [x] Keep tests\n- [ ] Remove docs\nOutro")
    assert items == [ChecklistItem("Keep tests", True), ChecklistItem("Remove docs", False)]


def test_parse_uppercase_x_and_bold_labels():
    items = parse_text_to_checklist("- [X] **Speed**: faster builds\n* [ ] **Safety**: fewer bugs")
    assert [i.selected for i in items] == [True, False]
    assert items[0].label == "**Speed**: faster builds"


def test_parse_relaxed_fallback_for_plain_bullets():
    items = parse_text_to_checklist("1. First idea\n2. Second idea\n- Third idea")
    assert [i.label for i in items] == ["First idea", "Second idea", "Third idea"]
    assert not any(i.selected for i in items)


def test_parse_without_fallback():
    assert parse_text_to_checklist("- plain\n- bullets", relaxed_fallback=False) == []


def test_render_selection_sections():
    rendered = render_checklist_selection(_OUTPUT_PROMPT, [
        ChecklistItem("Keep tests", True),
        ChecklistItem("Remove docs", False),
    ])
    selected, not_selected = rendered.split("The user did NOT select:")
    assert "- Keep tests" in selected
    assert "Remove docs" not in selected
    assert "- Remove docs" in not_selected


def test_render_empty_sections():
    rendered = render_checklist_selection(_OUTPUT_PROMPT, [ChecklistItem("Only", True)])
    assert rendered.endswith("(none)")


async def test_checklist_round_trip(generator):
    source = CancellationSource()
    views: list = []
    instruction = UserInputChecklistInstruction(label="Criteria Selection", output_prompt=_OUTPUT_PROMPT)

    task = asyncio.ensure_future(execute_user_input_checklist_instruction(
        instruction, _inputs(generator, source, views), "- [x] Keep tests\n- [ ] Remove docs",
    ))
    await wait_until(lambda: bool(views))

    view = views[0]
    assert isinstance(view, ChecklistView)
    assert [(i.label, i.selected) for i in view.items] == [("Keep tests", True), ("Remove docs", False)]
    view.confirm(view.items)
    output = await asyncio.wait_for(task, timeout=1.0)

    selected, not_selected = output.split("The user did NOT select:")
    assert "Keep tests" in selected
    assert "Remove docs" in not_selected
    # the view is cleared when the step ends
    assert views[-1] is None
    assert generator.calls == []


async def test_checklist_cancel_stops_chain(generator):
    source = CancellationSource()
    views: list = []
    instruction = UserInputChecklistInstruction(label="Criteria Selection", output_prompt=_OUTPUT_PROMPT)

    task = asyncio.ensure_future(execute_user_input_checklist_instruction(
        instruction, _inputs(generator, source, views), "- [ ] A\n- [ ] B",
    ))
    await wait_until(lambda: bool(views))
    views[0].cancel()

    with pytest.raises(InstructionStopped):
        await asyncio.wait_for(task, timeout=1.0)
    assert source.cancelled is True


async def test_checklist_needs_two_items(generator):
    source = CancellationSource()
    instruction = UserInputChecklistInstruction(label="Criteria Selection", output_prompt=_OUTPUT_PROMPT)
    with pytest.raises(InstructionError, match="enough options"):
        await execute_user_input_checklist_instruction(instruction, _inputs(generator, source, []), "- [ ] Lonely")
