"""The Fusion record: one configured attempt at merging the ray outputs."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from beam.cancellation import CancellationSource
from beam.gather.instructions import Instruction
from beam.models import GATHER_PLACEHOLDER, ChatMessage, ProgressView, new_id

CUSTOM_FACTORY_ID = "custom"

FusionStage = Literal[
    "idle",     # at the beginning, never go back here
    "fusing",   # in progress
    "success",  # completed successfully
    "stopped",  # aborted by the user
    "error",    # failed (error_text is set)
]


@dataclass
class Fusion:
    fusion_id: str
    factory_id: str
    instructions: list[Instruction]
    model_id: str | None
    stage: FusionStage = "idle"
    error_text: str | None = None
    output_message: ChatMessage | None = None
    # execution state, only while fusing
    cancel_source: CancellationSource | None = None
    progress_view: ProgressView | None = None
    instruction_view: object | None = None
    # source of the latest started run, kept after a stop so that run can still settle
    run_source: CancellationSource | None = None


FusionUpdate = dict | Callable[[Fusion], dict | None]


def create_fusion(factory_id: str, instructions: list[Instruction], model_id: str | None) -> Fusion:
    return Fusion(
        fusion_id=new_id("beam-fusion"),
        factory_id=factory_id,
        instructions=instructions,
        model_id=model_id,
    )


def fusion_is_editable(fusion: Fusion | None) -> bool:
    return fusion is not None and fusion.factory_id == CUSTOM_FACTORY_ID


def fusion_is_fusing(fusion: Fusion | None) -> bool:
    return fusion is not None and fusion.stage == "fusing"


def fusion_is_usable_output(fusion: Fusion | None) -> bool:
    message = fusion.output_message if fusion else None
    return (
        message is not None
        and message.updated is not None
        and bool(message.text)
        and message.text != GATHER_PLACEHOLDER
    )
