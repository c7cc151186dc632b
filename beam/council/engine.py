"""Council state for a session: phase, progress, results and partial rankings."""

import asyncio
import logging
from collections.abc import Callable

from config.config_loader import PromptsConfig
from beam.cancellation import CancellationSource
from beam.council.execution import CouncilPhaseError, CouncilRay, execute_council_voting
from beam.council.ranking import MAX_COUNCIL_RAYS, RankingParser, parse_council_ranking
from beam.generation import ChatGenerator
from beam.models import ChatMessage, CouncilPhase, CouncilProgress, CouncilRanking, CouncilResults

logger = logging.getLogger(__name__)


class CouncilEngine:
    def __init__(
        self,
        generator: ChatGenerator,
        prompts: PromptsConfig,
        get_inputs: Callable[[], tuple[list[ChatMessage], list[CouncilRay]]],
        on_change: Callable[[], None] | None = None,
        parse_ranking: RankingParser = parse_council_ranking,
    ) -> None:
        self._generator = generator
        self._prompts = prompts
        self._get_inputs = get_inputs
        self._on_change = on_change
        self._parse_ranking = parse_ranking
        self._task: asyncio.Task | None = None
        # source of the latest started run, kept after a stop so that run can still settle
        self._run_source: CancellationSource | None = None

        self.phase: CouncilPhase = "idle"
        self.progress: CouncilProgress | None = None
        self.results: CouncilResults | None = None
        self.rankings: list[CouncilRanking] = []
        self.error_text: str | None = None
        self.chairman_model_id: str | None = None
        self.chairman_text = ""
        self.cancel_source: CancellationSource | None = None

    @property
    def is_running(self) -> bool:
        return self.cancel_source is not None

    def reinit(self) -> None:
        self.stop_council()
        self._run_source = None
        self.phase = "idle"
        self.progress = None
        self.results = None
        self.rankings = []
        self.error_text = None
        self.chairman_text = ""
        self._notify()

    def start_council(self, chairman_model_id: str | None) -> asyncio.Task | None:
        """Start a council run. A running council is stopped first.

        Returns the run task, or None when the inputs are not valid (phase becomes 'error').
        """
        if self.cancel_source is not None:
            self.cancel_source.cancel()

        chat_history, rays = self._get_inputs()
        error_text = None
        if not chairman_model_id:
            error_text = "No chairman model selected"
        elif len(rays) < 2:
            error_text = "At least two responses are required"
        elif len(rays) > MAX_COUNCIL_RAYS:
            error_text = f"At most {MAX_COUNCIL_RAYS} responses can be ranked"
        if error_text:
            logger.info("Council not started: %s", error_text)
            self.phase = "error"
            self.error_text = error_text
            self.cancel_source = None
            self._run_source = None
            self._notify()
            return None

        source = CancellationSource()
        self.phase = "ranking"
        self.progress = None
        self.results = None
        self.rankings = []
        self.error_text = None
        self.chairman_model_id = chairman_model_id
        self.chairman_text = ""
        self.cancel_source = source
        self._run_source = source
        self._notify()

        def on_progress(progress: CouncilProgress) -> None:
            if self._run_source is not source or source.cancelled:
                return
            self.progress = progress
            if progress.phase not in ("error", "complete"):
                self.phase = progress.phase
            self._notify()

        def on_chairman_delta(text: str, typing: bool) -> None:
            if self._run_source is source and not source.cancelled:
                self.chairman_text = text
                self._notify()

        async def run() -> None:
            try:
                results = await execute_council_voting(
                    chat_history, rays, chairman_model_id, self._generator, self._prompts,
                    source.token, on_progress, self._parse_ranking, on_chairman_delta,
                )
            except CouncilPhaseError as exc:
                if self._run_source is not source:
                    return
                self.rankings = exc.rankings
                if source.cancelled:
                    self.phase = "stopped"
                    self.error_text = None
                else:
                    logger.warning("Council failed: %s", exc)
                    self.phase = "error"
                    self.error_text = str(exc)
            else:
                if self._run_source is not source:
                    return
                self.results = results
                self.rankings = results.rankings
                self.chairman_text = results.chairman_message.text
                self.phase = "complete"
            finally:
                if self.cancel_source is source:
                    self.cancel_source = None
                self._notify()

        logger.info("Council started: %d rays, chairman %s", len(rays), chairman_model_id)
        self._task = asyncio.get_running_loop().create_task(run())
        return self._task

    def stop_council(self) -> None:
        """Revoke the running council; it settles as 'stopped' keeping partial rankings."""
        if self.cancel_source is None:
            return
        self.cancel_source.cancel()
        self.cancel_source = None
        self.phase = "stopped"
        self._notify()

    async def wait_idle(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    def _notify(self) -> None:
        if self._on_change:
            self._on_change()
