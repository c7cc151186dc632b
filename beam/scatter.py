"""Scatter: a set of independent generation slots (rays), each startable and stoppable on its own."""

import asyncio
import logging
import time
from collections.abc import Callable, Collection
from dataclasses import dataclass, replace
from typing import Literal

from beam.cancellation import CancellationSource, CancellationToken
from beam.generation import ChatGenerator
from beam.models import SCATTER_PLACEHOLDER, ChatMessage, GenerateResult, create_empty_message, new_id

logger = logging.getLogger(__name__)

RayStatus = Literal["empty", "scattering", "success", "stopped", "error"]

_OUTCOME_TO_STATUS: dict[str, RayStatus] = {
    "success": "success",
    "aborted": "stopped",
    "errored": "error",
}


@dataclass
class Ray:
    ray_id: str
    status: RayStatus
    message: ChatMessage
    model_id: str | None
    scatter_issue: str | None = None
    cancel_source: CancellationSource | None = None   # present iff status == "scattering"
    user_selected: bool = False
    imported: bool = False

    @property
    def cancellation_token(self) -> CancellationToken | None:
        return self.cancel_source.token if self.cancel_source else None


def create_ray_empty(model_id: str | None) -> Ray:
    return Ray(
        ray_id=new_id("beam-ray"),
        status="empty",
        message=create_empty_message("assistant"),
        model_id=model_id,
    )


def ray_is_scattering(ray: Ray | None) -> bool:
    return ray is not None and ray.status == "scattering"


def ray_is_selectable(ray: Ray | None) -> bool:
    """A ray is selectable once real content has started flowing in."""
    return ray is not None and bool(ray.message.text) and ray.message.text != SCATTER_PLACEHOLDER


def _ray_scatter_stop(ray: Ray) -> Ray:
    if ray.cancel_source is not None:
        ray.cancel_source.cancel()
    return replace(
        ray,
        status="stopped" if ray.status == "scattering" else ray.status,
        cancel_source=None,
    )


RayUpdate = dict | Callable[[Ray], dict]


class ScatterEngine:
    """Owns the ray array. Every mutation replaces Ray records and recomputes derived state."""

    def __init__(
        self,
        generator: ChatGenerator,
        get_input_history: Callable[[], list[ChatMessage] | None],
        on_change: Callable[[], None] | None = None,
        on_config_change: Callable[[dict], None] | None = None,
    ) -> None:
        self._generator = generator
        self._get_input_history = get_input_history
        self._on_change = on_change
        self._on_config_change = on_config_change
        self._tasks: set[asyncio.Task] = set()

        self.rays: list[Ray] = []
        self.had_imported_rays = False
        # derived
        self.is_scattering = False
        self.rays_ready = 0

    # --- lifecycle ---

    def reinit(self) -> None:
        """Stop everything and recreate empty rays with the same models."""
        for ray in self.rays:
            _ray_scatter_stop(ray)
        self.had_imported_rays = False
        self._set_rays([create_ray_empty(ray.model_id) for ray in self.rays])

    # --- ray set ---

    def get_ray(self, ray_id: str) -> Ray | None:
        return next((ray for ray in self.rays if ray.ray_id == ray_id), None)

    def set_ray_count(self, count: int) -> None:
        if count < 0:
            raise ValueError(f"Ray count must be >= 0, got {count}")
        if count == len(self.rays):
            return
        if count < len(self.rays):
            for ray in self.rays[count:]:
                _ray_scatter_stop(ray)
            self._set_rays(self.rays[:count])
        else:
            inherited = self.rays[-1].model_id if self.rays else None
            self._set_rays([*self.rays, *(create_ray_empty(inherited) for _ in range(count - len(self.rays)))])
        self._store_last_scatter_config()

    def remove_ray(self, ray_id: str) -> None:
        kept: list[Ray] = []
        for ray in self.rays:
            if ray.ray_id == ray_id:
                _ray_scatter_stop(ray)
            else:
                kept.append(ray)
        self._set_rays(kept)
        self._store_last_scatter_config()

    def import_rays(
        self,
        messages: list[ChatMessage],
        fallback_model_id: str | None,
        known_model_ids: Collection[str] | None = None,
    ) -> None:
        """Pre-seed rays from earlier assistant turns, already in 'success'."""
        imported: list[Ray] = []
        for message in messages:
            model_id = fallback_model_id
            if message.model_id and (known_model_ids is None or message.model_id in known_model_ids):
                model_id = message.model_id
            ray = create_ray_empty(model_id)
            if message.text:
                ray = replace(
                    ray,
                    status="success",
                    message=replace(message, message_id=new_id("msg"), pending_incomplete=False, updated=time.time()),
                    imported=True,
                )
            imported.append(ray)

        # empty rays on the same models make room for the imported ones
        to_remove = [
            r for r in self.rays
            if r.status == "empty" and any(i.model_id == r.model_id for i in imported)
        ][:len(imported)]
        self.had_imported_rays = len(messages) > 0
        self._set_rays([*imported, *(r for r in self.rays if r not in to_remove)])
        self._store_last_scatter_config()

    def set_ray_model_ids(self, model_ids: list[str]) -> None:
        self.set_ray_count(len(model_ids))
        self._set_rays([
            replace(ray, model_id=model_ids[index] or None) if index < len(model_ids) else ray
            for index, ray in enumerate(self.rays)
        ])
        self._store_last_scatter_config()

    def ray_set_model_id(self, ray_id: str, model_id: str | None) -> None:
        self._ray_update(ray_id, {"model_id": model_id})
        self._store_last_scatter_config()

    def ray_toggle_user_selected(self, ray_id: str) -> None:
        self._ray_update(ray_id, lambda ray: {"user_selected": not ray.user_selected})

    # --- scattering ---

    def start_all(self) -> None:
        """Start every ray that is not already running; imported rays keep their content."""
        history = self._get_input_history() or []
        self._set_rays([
            ray if ray.imported else self._ray_scatter_start(ray, history)
            for ray in self.rays
        ])

    def stop_all(self) -> None:
        self._set_rays([_ray_scatter_stop(ray) for ray in self.rays])

    def start_ray(self, ray_id: str) -> None:
        history = self._get_input_history() or []
        self._ray_replace(ray_id, lambda ray: self._ray_scatter_start(ray, history))

    def stop_ray(self, ray_id: str) -> None:
        self._ray_replace(ray_id, _ray_scatter_stop)

    def toggle_ray(self, ray_id: str) -> None:
        ray = self.get_ray(ray_id)
        if ray is None:
            return
        if ray.status == "scattering":
            self.stop_ray(ray_id)
        else:
            self.start_ray(ray_id)

    def ray_messages(self) -> list[ChatMessage]:
        """Messages of rays that have content, in ray order."""
        return [ray.message for ray in self.rays if ray_is_selectable(ray) and ray.message.text.strip()]

    async def wait_idle(self) -> None:
        """Wait until no ray task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- internals ---

    def _ray_scatter_start(self, ray: Ray, input_history: list[ChatMessage]) -> Ray:
        if ray.cancel_source is not None:
            return ray
        if not ray.model_id:
            return replace(ray, scatter_issue="No model selected")
        if not input_history or input_history[-1].role != "user":
            return replace(ray, scatter_issue=f"Invalid conversation history ({len(input_history)})")

        source = CancellationSource()
        task = asyncio.get_running_loop().create_task(
            self._run_ray(ray.ray_id, ray.model_id, list(input_history), source)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("Ray %s scattering on %s", ray.ray_id, ray.model_id)

        return Ray(
            ray_id=ray.ray_id,
            status="scattering",
            message=replace(
                ray.message,
                text=SCATTER_PLACEHOLDER,
                pending_incomplete=True,
                created=time.time(),
                updated=None,
                model_id=ray.model_id,
            ),
            model_id=ray.model_id,
            cancel_source=source,
        )

    async def _run_ray(
        self,
        ray_id: str,
        model_id: str,
        history: list[ChatMessage],
        source: CancellationSource,
    ) -> None:
        def on_delta(text: str, typing: bool) -> None:
            if not text:
                return
            self._ray_update(
                ray_id,
                lambda ray: {"message": replace(ray.message, text=text, updated=time.time())}
                if ray.cancel_source is source else {},
            )

        try:
            result = await self._generator.generate(model_id, history, source.token, on_delta)
        except Exception as exc:
            logger.exception("Ray %s generator raised", ray_id)
            result = GenerateResult("errored", error_message=f"Unexpected error: {exc}")

        def settle(ray: Ray) -> dict:
            # a newer run owns this ray now
            if ray.cancel_source is not None and ray.cancel_source is not source:
                return {}
            interrupted_at_start = ray.message.updated is None and result.outcome != "success"
            if interrupted_at_start:
                message = create_empty_message("assistant")
            else:
                text = ray.message.text
                if result.outcome == "success" and result.text:
                    text = result.text
                message = replace(ray.message, text=text, pending_incomplete=False)
            return {
                "message": message,
                "status": _OUTCOME_TO_STATUS.get(result.outcome, "empty"),
                "scatter_issue": result.error_message or None,
                "cancel_source": None,
            }

        self._ray_update(ray_id, settle)
        logger.info("Ray %s on %s finished: %s", ray_id, model_id, result.outcome)

    def _ray_update(self, ray_id: str, update: RayUpdate) -> None:
        def apply(ray: Ray) -> Ray:
            changes = update(ray) if callable(update) else update
            return replace(ray, **changes) if changes else ray
        self._ray_replace(ray_id, apply)

    def _ray_replace(self, ray_id: str, fn: Callable[[Ray], Ray]) -> None:
        if not any(ray.ray_id == ray_id for ray in self.rays):
            return
        self._set_rays([fn(ray) if ray.ray_id == ray_id else ray for ray in self.rays])

    def _set_rays(self, rays: list[Ray]) -> None:
        self.rays = rays
        self.is_scattering = any(ray_is_scattering(ray) for ray in rays)
        self.rays_ready = sum(1 for ray in rays if ray_is_selectable(ray))
        if self._on_change:
            self._on_change()

    def _store_last_scatter_config(self) -> None:
        if self._on_config_change:
            self._on_config_change({"ray_model_ids": [ray.model_id for ray in self.rays if ray.model_id]})
