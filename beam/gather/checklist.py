"""The human-in-the-loop step: turn the previous output into a checklist and wait for a selection."""

import asyncio
import logging
import re

from beam.gather.instructions import (
    ExecutionInputState,
    InstructionError,
    InstructionStopped,
    UserInputChecklistInstruction,
)
from beam.models import ChecklistItem, ChecklistView
from beam.templating import mix_prompt

logger = logging.getLogger(__name__)

_MIN_ITEMS = 2

# - [ ] label / - [x] label
_STRICT_ITEM = re.compile(r"^\s*[-*+]\s*\[([ xX])\]\s*(.+?)\s*$", re.MULTILINE)
# any bullet or numbered line, optional checkbox
_RELAXED_ITEM = re.compile(r"^\s*(?:[-*+•]|\d+[.)])\s+(?:\[([ xX])\]\s*)?(.+?)\s*$", re.MULTILINE)


def _items_from(pattern: re.Pattern[str], text: str) -> list[ChecklistItem]:
    return [
        ChecklistItem(label=match.group(2), selected=(match.group(1) or " ").lower() == "x")
        for match in pattern.finditer(text)
        if match.group(2).strip()
    ]


def parse_text_to_checklist(text: str, relaxed_fallback: bool = True) -> list[ChecklistItem]:
    """Extract checklist items, falling back to looser bullets when fewer than two strict ones match."""
    items = _items_from(_STRICT_ITEM, text)
    if len(items) < _MIN_ITEMS and relaxed_fallback:
        relaxed = _items_from(_RELAXED_ITEM, text)
        if len(relaxed) > len(items):
            items = relaxed
    return items


def render_checklist_selection(output_prompt: str, items: list[ChecklistItem]) -> str:
    yes = [f"- {item.label}" for item in items if item.selected]
    no = [f"- {item.label}" for item in items if not item.selected]
    return mix_prompt(output_prompt, {
        "{{YesAnswers}}": "\n".join(yes) or "(none)",
        "{{NoAnswers}}": "\n".join(no) or "(none)",
    }).strip()


async def execute_user_input_checklist_instruction(
    instruction: UserInputChecklistInstruction,
    inputs: ExecutionInputState,
    prev_step_output: str,
) -> str:
    """Suspend the chain until the human confirms a selection or the chain is stopped."""
    items = parse_text_to_checklist(prev_step_output)
    if len(items) < _MIN_ITEMS:
        raise InstructionError("Could not find enough options in the previous step output")

    loop = asyncio.get_running_loop()
    answer: asyncio.Future[list[ChecklistItem]] = loop.create_future()

    def on_abort() -> None:
        if not answer.done():
            logger.info("Operation aborted during user input for: %s", instruction.label)
            answer.set_exception(InstructionStopped("Operation aborted."))

    def confirm(selected: list[ChecklistItem]) -> None:
        if not answer.done():
            answer.set_result(list(selected))

    remove_listener = inputs.chain_token.add_callback(on_abort)
    inputs.update_instruction_view(ChecklistView(items=items, confirm=confirm, cancel=inputs.request_stop))
    logger.info("Waiting for user input for: %s (%d options)", instruction.label, len(items))
    try:
        selection = await answer
    finally:
        remove_listener()
        inputs.update_instruction_view(None)

    return render_checklist_selection(instruction.output_prompt, selection)
