"""Gather state: the fusions of a session, the current merge model and factory."""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace

from beam.gather.execution import gather_start_fusion, gather_stop_fusion
from beam.gather.factories import FUSION_FACTORIES, FUSION_FACTORY_DEFAULT, find_fusion_factory
from beam.gather.fusion import (
    CUSTOM_FACTORY_ID,
    Fusion,
    FusionUpdate,
    create_fusion,
    fusion_is_editable,
    fusion_is_fusing,
)
from beam.generation import ChatGenerator
from beam.models import ChatMessage

logger = logging.getLogger(__name__)


class GatherEngine:
    """Owns the fusion array. Fusion records are replaced, never patched from outside."""

    def __init__(
        self,
        generator: ChatGenerator,
        get_inputs: Callable[[], tuple[list[ChatMessage], list[ChatMessage]]],
        on_change: Callable[[], None] | None = None,
        on_config_change: Callable[[dict], None] | None = None,
    ) -> None:
        self._generator = generator
        self._get_inputs = get_inputs
        self._on_change = on_change
        self._on_config_change = on_config_change
        self._tasks: set[asyncio.Task] = set()

        self.current_factory_id: str | None = FUSION_FACTORY_DEFAULT
        self.current_gather_model_id: str | None = None
        self.current_fusion_id: str | None = None
        self.fusions: list[Fusion] = []
        # derived
        self.is_gathering_any = False

    def reinit(self, gather_model_id: str | None, factory_id: str | None = FUSION_FACTORY_DEFAULT) -> None:
        """Stop and drop every fusion, keeping the given gather model and factory."""
        for fusion in self.fusions:
            gather_stop_fusion(fusion)
        self.current_factory_id = factory_id
        self.current_gather_model_id = gather_model_id
        self.current_fusion_id = None
        self._set_fusions([])

    # --- settings ---

    def set_current_gather_model_id(self, model_id: str | None) -> None:
        self.current_gather_model_id = model_id
        self._notify()
        if self._on_config_change:
            self._on_config_change({"gather_model_id": model_id})

    def set_current_factory_id(self, factory_id: str | None) -> None:
        if factory_id is not None and find_fusion_factory(factory_id) is None:
            raise ValueError(f"Unknown fusion factory: {factory_id}")
        self.current_factory_id = factory_id
        self._notify()
        if self._on_config_change:
            self._on_config_change({"gather_factory_id": factory_id})

    def set_current_fusion_id(self, fusion_id: str | None) -> None:
        if fusion_id is not None and self.get_fusion(fusion_id) is None:
            return
        self.current_fusion_id = fusion_id
        self._notify()

    # --- fusions ---

    def get_fusion(self, fusion_id: str) -> Fusion | None:
        return next((f for f in self.fusions if f.fusion_id == fusion_id), None)

    @property
    def current_fusion(self) -> Fusion | None:
        return self.get_fusion(self.current_fusion_id) if self.current_fusion_id else None

    def create_fusion(self) -> Fusion | None:
        """Append a fusion from the current factory and start it, unless it is custom."""
        factory = next((f for f in FUSION_FACTORIES if f.factory_id == self.current_factory_id), None)
        if factory is None:
            return None
        fusion = create_fusion(factory.factory_id, factory.create_instructions(), self.current_gather_model_id)
        self.current_fusion_id = fusion.fusion_id
        self._set_fusions([*self.fusions, fusion])
        if fusion.factory_id != CUSTOM_FACTORY_ID:
            self.toggle_fusion_gathering(fusion.fusion_id)
        return self.get_fusion(fusion.fusion_id)

    def remove_fusion(self, fusion_id: str) -> None:
        fusion = self.get_fusion(fusion_id)
        if fusion is None:
            return
        gather_stop_fusion(fusion)
        if self.current_fusion_id == fusion_id:
            self.current_fusion_id = None
        self._set_fusions([f for f in self.fusions if f.fusion_id != fusion_id])

    def fusion_recreate_as_custom(self, source_fusion_id: str) -> Fusion | None:
        """Copy the source factory's canonical instructions into a new editable fusion."""
        source = self.get_fusion(source_fusion_id)
        factory = find_fusion_factory(source.factory_id) if source else None
        if source is None or factory is None:
            return None

        custom = create_fusion(CUSTOM_FACTORY_ID, factory.create_instructions(), self.current_gather_model_id)
        replaced = False
        fusions: list[Fusion] = []
        for fusion in self.fusions:
            if fusion_is_editable(fusion):
                gather_stop_fusion(fusion)
                if not replaced:
                    fusions.append(custom)
                    replaced = True
            else:
                fusions.append(fusion)
        if not replaced:
            fusions.append(custom)

        self.current_factory_id = CUSTOM_FACTORY_ID
        self.current_fusion_id = custom.fusion_id
        self._set_fusions(fusions)
        return custom

    def fusion_instruction_update(self, fusion_id: str, instruction_index: int, update: dict) -> None:
        """Edit one instruction of a custom fusion. The instruction type cannot change."""
        fusion = self.get_fusion(fusion_id)
        if fusion is None:
            return
        if not fusion_is_editable(fusion):
            logger.warning("Fusion %s (%s) is not editable", fusion_id, fusion.factory_id)
            return
        if "type" in update:
            raise ValueError("Cannot change the type of an instruction")
        self._fusion_update(fusion_id, lambda f: {
            "instructions": [
                replace(instruction, **update) if index == instruction_index else instruction
                for index, instruction in enumerate(f.instructions)
            ],
        })

    def fusion_set_model_id(self, fusion_id: str, model_id: str | None) -> None:
        self._fusion_update(fusion_id, {"model_id": model_id})

    # --- execution ---

    def toggle_fusion_gathering(self, fusion_id: str) -> None:
        fusion = self.get_fusion(fusion_id)
        if fusion is None:
            return
        if fusion.stage == "fusing":
            self.stop_fusion(fusion_id)
            return
        self.start_fusion(fusion_id)

    def start_fusion(self, fusion_id: str) -> None:
        fusion = self.get_fusion(fusion_id)
        if fusion is None:
            return
        chat_messages, ray_messages = self._get_inputs()
        task = gather_start_fusion(
            fusion,
            chat_messages,
            ray_messages,
            self._generator,
            lambda update: self._fusion_update(fusion_id, update),
        )
        if task is not None:
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def stop_fusion(self, fusion_id: str) -> None:
        fusion = self.get_fusion(fusion_id)
        if fusion is None:
            return
        stopped = gather_stop_fusion(fusion)
        self._set_fusions([stopped if f.fusion_id == fusion_id else f for f in self.fusions])

    def stop_all(self) -> None:
        self._set_fusions([gather_stop_fusion(f) for f in self.fusions])

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- internals ---

    def _fusion_update(self, fusion_id: str, update: FusionUpdate) -> None:
        fusions: list[Fusion] = []
        for fusion in self.fusions:
            if fusion.fusion_id == fusion_id:
                changes = update(fusion) if callable(update) else update
                if changes:
                    fusion = replace(fusion, **changes)
            fusions.append(fusion)
        self._set_fusions(fusions)

    def _set_fusions(self, fusions: list[Fusion]) -> None:
        self.fusions = fusions
        # 'or' the status of all fusions
        self.is_gathering_any = any(fusion_is_fusing(f) for f in fusions)
        self._notify()

    def _notify(self) -> None:
        if self._on_change:
            self._on_change()
