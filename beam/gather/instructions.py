"""Fusion instruction types and the generation executors.

An instruction is one step of a fusion pipeline. Executors receive the shared
ExecutionInputState plus the string carried over from the previous step, and
return the string for the next one.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Literal, Union

from beam.cancellation import CancellationToken
from beam.generation import ChatGenerator
from beam.models import (
    CharacterCountView,
    ChatMessage,
    MessageView,
    create_text_message,
)
from beam.templating import mix_prompt

logger = logging.getLogger(__name__)

# sandwiches the existing history and the ray proposals between the System and User prompts
METHOD_SANDWICH = "s-s0-h0-u0-aN-u"

Display = Literal["chat-message", "character-count", "mute"]


class InstructionError(Exception):
    """Raised when a fusion step cannot continue."""


class InstructionStopped(InstructionError):
    """Raised by a step that observed the chain's cancellation."""


@dataclass
class ChatGenerateInstruction:
    label: str
    system_prompt: str
    user_prompt: str
    method: str = METHOD_SANDWICH
    display: Display = "chat-message"
    type: Literal["chat-generate"] = field(default="chat-generate", init=False)


@dataclass
class GatherInstruction:
    label: str
    system_prompt: str
    user_prompt: str
    method: str = METHOD_SANDWICH
    display: Display = "chat-message"
    type: Literal["gather"] = field(default="gather", init=False)


@dataclass
class UserInputChecklistInstruction:
    label: str
    output_prompt: str
    type: Literal["user-input-checklist"] = field(default="user-input-checklist", init=False)


Instruction = Union[ChatGenerateInstruction, GatherInstruction, UserInputChecklistInstruction]


@dataclass(frozen=True)
class ExecutionInputState:
    # inputs
    chat_messages: list[ChatMessage]
    ray_messages: list[ChatMessage]
    model_id: str
    context_ref: str
    generator: ChatGenerator
    # interaction
    chain_token: CancellationToken
    update_progress_view: Callable[[object], None]
    update_instruction_view: Callable[[object], None]
    request_stop: Callable[[], None]
    # output of step i, input of step i+1
    intermediate_message: ChatMessage


def mix_chat_generate_prompt(prompt: str, rays_count: int, prev_step_output: str) -> str:
    return mix_prompt(prompt, {
        "{{N}}": str(rays_count),
        "{{PrevStepOutput}}": prev_step_output,
    })


def _chat_generate_history(
    instruction: ChatGenerateInstruction,
    inputs: ExecutionInputState,
    prev_step_output: str,
) -> list[ChatMessage]:
    """Text-only turns: system prompt, history without system turns, proposals, user prompt."""
    rays_count = len(inputs.ray_messages)
    return [
        create_text_message("system", mix_chat_generate_prompt(instruction.system_prompt, rays_count, prev_step_output)),
        *(
            create_text_message("assistant" if m.role == "assistant" else "user", m.text)
            for m in inputs.chat_messages
            if m.role in ("user", "assistant")
        ),
        *(create_text_message("assistant", m.text) for m in inputs.ray_messages),
        create_text_message("user", mix_chat_generate_prompt(instruction.user_prompt, rays_count, prev_step_output)),
    ]


def _gather_history(
    instruction: GatherInstruction,
    inputs: ExecutionInputState,
    prev_step_output: str,
) -> list[ChatMessage]:
    """Full conversation messages (metadata kept), proposals as assistant turns, then the user prompt."""
    for ray_message in inputs.ray_messages:
        if ray_message.role != "assistant":
            raise InstructionError("Invalid response role")
    rays_count = len(inputs.ray_messages)
    return [
        create_text_message("system", mix_chat_generate_prompt(instruction.system_prompt, rays_count, prev_step_output)),
        *(m for m in inputs.chat_messages if m.role in ("user", "assistant")),
        *inputs.ray_messages,
        create_text_message("user", mix_chat_generate_prompt(instruction.user_prompt, rays_count, prev_step_output)),
    ]


def _publish_message_view(instruction: ChatGenerateInstruction | GatherInstruction, inputs: ExecutionInputState) -> None:
    message = inputs.intermediate_message
    if instruction.display == "mute":
        return
    if instruction.display == "character-count":
        inputs.update_instruction_view(CharacterCountView(characters=len(message.text)))
        return
    inputs.update_instruction_view(MessageView(text=message.text, pending=message.pending_incomplete))


async def execute_generate_instruction(
    instruction: ChatGenerateInstruction | GatherInstruction,
    inputs: ExecutionInputState,
    prev_step_output: str,
) -> str:
    """Run one generation step, streaming into the intermediate message in place."""
    if instruction.method != METHOD_SANDWICH:
        raise InstructionError(f"Unsupported Chat Generate method: {instruction.method}")
    if not inputs.chat_messages:
        raise InstructionError("No conversation history available")
    if not inputs.ray_messages:
        raise InstructionError("No responses available")

    if instruction.type == "gather":
        history = _gather_history(instruction, inputs, prev_step_output)
    else:
        history = _chat_generate_history(instruction, inputs, prev_step_output)

    message = inputs.intermediate_message

    def on_delta(text: str, typing: bool) -> None:
        if text:
            message.text = text
            message.updated = time.time()
        if not typing:
            message.pending_incomplete = False
        _publish_message_view(instruction, inputs)

    result = await inputs.generator.generate(inputs.model_id, history, inputs.chain_token, on_delta)

    if result.outcome != "success" and message.updated is None:
        # interrupted before any content: nothing worth keeping
        message.text = ""
    message.pending_incomplete = False
    message.model_id = inputs.model_id

    if result.outcome == "aborted":
        raise InstructionStopped("Instruction Stopped.")
    if result.outcome == "errored":
        raise InstructionError(f"Model execution error: {result.error_message or 'Unknown error'}")

    logger.debug("Instruction '%s' produced %d chars", instruction.label, len(message.text))
    return message.text


def copy_instructions(instructions: list[Instruction]) -> list[Instruction]:
    return [replace(instruction) for instruction in instructions]
