"""Fusion execution: runs a fusion's instructions strictly in order as one cancellable task."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace

from beam.cancellation import CancellationSource
from beam.gather.checklist import execute_user_input_checklist_instruction
from beam.gather.fusion import Fusion, FusionUpdate
from beam.gather.instructions import (
    ExecutionInputState,
    Instruction,
    InstructionError,
    execute_generate_instruction,
)
from beam.generation import ChatGenerator
from beam.models import GATHER_PLACEHOLDER, ChatMessage, ProgressView, create_empty_message

logger = logging.getLogger(__name__)


async def _execute_instruction(instruction: Instruction, inputs: ExecutionInputState, prev_step_output: str) -> str:
    if instruction.type in ("chat-generate", "gather"):
        return await execute_generate_instruction(instruction, inputs, prev_step_output)
    if instruction.type == "user-input-checklist":
        return await execute_user_input_checklist_instruction(instruction, inputs, prev_step_output)
    raise InstructionError("Unsupported Merge instruction")


def gather_start_fusion(
    fusion: Fusion,
    chat_messages: list[ChatMessage],
    ray_messages: list[ChatMessage],
    generator: ChatGenerator,
    on_update: Callable[[FusionUpdate], None],
) -> asyncio.Task | None:
    """Validate, reset the fusion to 'fusing' and schedule its instruction chain.

    Returns the chain task, or None when a precondition failed (the fusion is then in 'error').
    """
    if fusion.cancel_source is not None:
        fusion.cancel_source.cancel()

    def on_error(error_text: str) -> None:
        logger.info("Fusion %s not started: %s", fusion.fusion_id, error_text)
        on_update({"stage": "error", "error_text": error_text, "cancel_source": None, "run_source": None})

    instructions = list(fusion.instructions)
    if len(instructions) < 1:
        on_error("No fusion instructions available")
        return None
    if len(chat_messages) < 1:
        on_error("No conversation history available")
        return None
    if len(ray_messages) <= 1:
        on_error("No responses available")
        return None
    if not fusion.model_id:
        on_error("No Merge model selected")
        return None

    source = CancellationSource()

    def guarded(update: dict) -> None:
        # drop late updates once a newer run or a failed restart owns the fusion
        on_update(lambda f: update if f.run_source is source else None)

    intermediate = create_empty_message("assistant")
    intermediate.text = GATHER_PLACEHOLDER
    intermediate.pending_incomplete = True

    inputs = ExecutionInputState(
        chat_messages=list(chat_messages),
        ray_messages=list(ray_messages),
        model_id=fusion.model_id,
        context_ref=fusion.fusion_id,
        generator=generator,
        chain_token=source.token,
        update_progress_view=lambda view: guarded({"progress_view": view}),
        update_instruction_view=lambda view: guarded({"instruction_view": view}),
        request_stop=source.cancel,
        intermediate_message=intermediate,
    )

    on_update({
        "stage": "fusing",
        "error_text": None,
        "output_message": None,
        "cancel_source": source,
        "run_source": source,
        "progress_view": None,
        "instruction_view": None,
    })

    async def run_chain() -> None:
        outcome: dict = {}
        carried = ""
        try:
            for step, instruction in enumerate(instructions, start=1):
                inputs.update_progress_view(ProgressView(step=step, total=len(instructions), label=instruction.label))
                intermediate.text = GATHER_PLACEHOLDER
                intermediate.pending_incomplete = True
                intermediate.updated = None
                carried = await _execute_instruction(instruction, inputs, carried)
            outcome = {"stage": "success", "error_text": None}
        except asyncio.CancelledError:
            outcome = {"stage": "stopped"}
            raise
        except Exception as exc:
            if source.cancelled:
                # user abort: not an error
                outcome = {"stage": "stopped"}
            else:
                logger.warning("Fusion %s failed: %s", fusion.fusion_id, exc)
                outcome = {"stage": "error", "error_text": f"Issue: {str(exc) or 'Unknown error'}"}
        finally:
            intermediate.pending_incomplete = False
            guarded({
                **outcome,
                # the intermediate message becomes the output, partial or not
                "output_message": intermediate,
                "cancel_source": None,
                "progress_view": None,
                "instruction_view": None,
            })
            logger.info("Fusion %s finished: %s", fusion.fusion_id, outcome.get("stage"))

    logger.info("Fusion %s (%s) started on %s with %d steps",
                fusion.fusion_id, fusion.factory_id, fusion.model_id, len(instructions))
    return asyncio.get_running_loop().create_task(run_chain())


def gather_stop_fusion(fusion: Fusion) -> Fusion:
    """Revoke the chain; the running step observes it and the chain settles as 'stopped'."""
    if fusion.cancel_source is not None:
        fusion.cancel_source.cancel()
    return replace(
        fusion,
        stage="stopped" if fusion.stage == "fusing" else fusion.stage,
        cancel_source=None,
    )
