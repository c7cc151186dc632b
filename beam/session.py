"""BeamSession: the root orchestration store tying scatter, gather and council together.

One session is constructed per application and passed explicitly to callers.
Persisted preferences come in as a read-only snapshot and changes go out through
on_config_change.
"""

import logging
from collections.abc import Callable
from dataclasses import replace

from config.config_loader import PromptsConfig
from config.preferences import BeamConfigSnapshot, Preferences
from beam.council.engine import CouncilEngine
from beam.council.execution import CouncilRay
from beam.gather.engine import GatherEngine
from beam.gather.fusion import fusion_is_usable_output
from beam.generation import ChatGenerator
from beam.models import ChatMessage
from beam.scatter import ScatterEngine, ray_is_selectable

logger = logging.getLogger(__name__)

# rays created on first open when nothing else is configured
SCATTER_RAY_DEFAULT = 2

SuccessCallback = Callable[[str, str | None], None]


class BeamSession:
    def __init__(
        self,
        generator: ChatGenerator,
        prompts: PromptsConfig,
        preferences: Preferences | None = None,
        on_config_change: Callable[[dict], None] | None = None,
        default_ray_model_ids: list[str] | None = None,
        model_name: Callable[[str], str] | None = None,
    ) -> None:
        self._preferences = preferences or Preferences()
        self._on_config_change = on_config_change
        self._default_ray_model_ids = list(default_ray_model_ids or [])
        self._model_name = model_name or (lambda model_id: model_id)
        self._listeners: list[Callable[[], None]] = []

        self.is_open = False
        self.is_edit_mode = False
        self.input_history: list[ChatMessage] | None = None
        self.input_issues: str | None = None
        self.input_ready = False
        self._on_success: SuccessCallback | None = None

        self.scatter = ScatterEngine(
            generator,
            lambda: self.input_history,
            on_change=self._notify,
            on_config_change=self._config_changed,
        )
        self.gather = GatherEngine(
            generator,
            lambda: (list(self.input_history or []), self.scatter.ray_messages()),
            on_change=self._notify,
            on_config_change=self._config_changed,
        )
        self.council = CouncilEngine(
            generator,
            prompts,
            lambda: (list(self.input_history or []), self.council_rays()),
            on_change=self._notify,
        )

    @property
    def preferences(self) -> Preferences:
        return self._preferences

    # --- observers ---

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a change listener. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _config_changed(self, update: dict) -> None:
        if self._on_config_change:
            self._on_config_change(update)

    # --- lifecycle ---

    def open(
        self,
        chat_history: list[ChatMessage],
        initial_model_id: str | None,
        on_success: SuccessCallback,
        is_edit_mode: bool = False,
    ) -> None:
        was_already_open = self.is_open
        self.terminate_keeping_settings()

        history = list(chat_history)
        is_valid_history = len(history) >= 1 and history[-1].role == "user"

        self.is_open = True
        self.is_edit_mode = is_edit_mode
        self.input_history = history if is_valid_history else None
        self.input_issues = None if is_valid_history else "Invalid conversation history: missing user message"
        self.input_ready = is_valid_history
        self._on_success = on_success
        if not is_valid_history:
            logger.warning("Opened with invalid history (%d messages)", len(history))

        # the model is only adopted if the session was not already open
        if not was_already_open and initial_model_id:
            self.gather.current_gather_model_id = initial_model_id
        self._notify()

        # recycle existing rays
        if self.scatter.rays:
            return

        self.load_beam_config(self._preferences.last_config)
        if self.scatter.rays:
            return

        if self._default_ray_model_ids:
            self.scatter.set_ray_model_ids(self._default_ray_model_ids)
            if not self.gather.current_gather_model_id:
                self.gather.set_current_gather_model_id(self._default_ray_model_ids[0])
            return

        if initial_model_id:
            self.scatter.set_ray_model_ids([initial_model_id] * SCATTER_RAY_DEFAULT)
        else:
            self.scatter.set_ray_count(SCATTER_RAY_DEFAULT)

    def terminate_keeping_settings(self) -> None:
        """Stop all work and reset content. Ray models, the gather model and the factory survive."""
        self.scatter.reinit()
        self.gather.reinit(self.gather.current_gather_model_id, self.gather.current_factory_id)
        self.council.reinit()
        self.is_open = False
        self.is_edit_mode = False
        self.input_history = None
        self.input_issues = None
        self.input_ready = False
        self._on_success = None
        self._notify()

    def load_beam_config(self, snapshot: BeamConfigSnapshot | None) -> None:
        if snapshot is None:
            return
        logger.info("Loading beam config %r", snapshot.name or snapshot.id)
        if snapshot.ray_model_ids:
            self.scatter.set_ray_model_ids(list(snapshot.ray_model_ids))
        if snapshot.gather_model_id:
            self.gather.set_current_gather_model_id(snapshot.gather_model_id)
        if snapshot.gather_factory_id:
            self.gather.set_current_factory_id(snapshot.gather_factory_id)

    def input_history_replace_message_text(self, message_id: str, text: str) -> None:
        """Edit one message of the input history in place of the original."""
        if self.input_history is None:
            return
        found = False
        history: list[ChatMessage] = []
        for message in self.input_history:
            if message.message_id == message_id:
                message = replace(message, text=text)
                found = True
            history.append(message)
        if not found:
            logger.warning("Cannot find message %s in the input history", message_id)
            return
        self.input_history = history
        self._notify()

    # --- inputs ---

    def council_rays(self) -> list[CouncilRay]:
        return [
            CouncilRay(
                ray_id=ray.ray_id,
                model_id=ray.model_id,
                model_name=self._model_name(ray.model_id),
                message=ray.message,
            )
            for ray in self.scatter.rays
            if ray.model_id and ray_is_selectable(ray)
        ]

    # --- acceptance ---

    def _deliver(self, text: str, model_id: str | None) -> bool:
        callback = self._on_success
        if callback is None:
            logger.warning("Result already delivered or session not open")
            return False
        self._on_success = None
        callback(text, model_id)
        return True

    def accept_ray(self, ray_id: str) -> bool:
        ray = self.scatter.get_ray(ray_id)
        if ray is None or not ray_is_selectable(ray):
            return False
        return self._deliver(ray.message.text, ray.message.model_id or ray.model_id)

    def accept_fusion(self, fusion_id: str) -> bool:
        fusion = self.gather.get_fusion(fusion_id)
        if fusion is None or not fusion_is_usable_output(fusion):
            return False
        return self._deliver(fusion.output_message.text, fusion.model_id)

    def accept_council(self) -> bool:
        results = self.council.results
        if results is None or not results.chairman_message.text:
            return False
        return self._deliver(results.chairman_message.text, results.chairman_message.model_id)
