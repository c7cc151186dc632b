"""Council voting: sequential peer ranking, aggregation, chairman synthesis."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from config.config_loader import PromptsConfig
from beam.cancellation import CancellationToken
from beam.council.prompts import (
    create_council_chairman_prompt,
    create_council_ranking_prompt,
    extract_user_query,
)
from beam.council.ranking import (
    MAX_COUNCIL_RAYS,
    RankingParser,
    aggregate_council_rankings,
    build_ranking_matrix,
    extract_ranking_section,
    parse_council_ranking,
    response_labels,
)
from beam.generation import ChatGenerator
from beam.models import (
    ChatMessage,
    CouncilProgress,
    CouncilRanking,
    CouncilResults,
    RankedPosition,
    create_text_message,
)

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 100


class CouncilPhaseError(Exception):
    """A council phase failed. Rankings gathered before the failure stay available."""

    def __init__(self, phase: str, message: str, rankings: list[CouncilRanking] | None = None) -> None:
        self.phase = phase
        self.message = message
        self.rankings = list(rankings or [])
        super().__init__(f"[{phase}] {message}")


@dataclass
class CouncilRay:
    ray_id: str
    model_id: str
    model_name: str
    message: ChatMessage


async def _generate_text(
    generator: ChatGenerator,
    model_id: str,
    system_prompt: str,
    user_prompt: str,
    token: CancellationToken,
    on_delta: Callable[[str, bool], None] | None = None,
) -> tuple[str, str, str | None]:
    """One system+user call. Returns (outcome, text, error_message)."""
    messages = [create_text_message("system", system_prompt), create_text_message("user", user_prompt)]
    result = await generator.generate(model_id, messages, token, on_delta or (lambda text, typing: None))
    return result.outcome, result.text, result.error_message


async def execute_council_voting(
    chat_history: list[ChatMessage],
    rays: list[CouncilRay],
    chairman_model_id: str,
    generator: ChatGenerator,
    prompts: PromptsConfig,
    token: CancellationToken,
    on_progress: Callable[[CouncilProgress], None],
    parse_ranking: RankingParser = parse_council_ranking,
    on_chairman_delta: Callable[[str, bool], None] | None = None,
) -> CouncilResults:
    """Run the full council over completed rays.

    Rankers run one after another, each on its ray's own model. A ranker whose
    output cannot be parsed contributes no positions.

    Raises:
        CouncilPhaseError: on abort or generation failure, tagged with the phase
            ('ranking' or 'synthesis') and carrying the rankings so far.
    """
    # N rankings, aggregation, synthesis
    total_steps = len(rays) + 2
    step = 0
    rankings: list[CouncilRanking] = []
    phase = "ranking"

    def progress(state: str, message: str, error: str | None = None) -> None:
        on_progress(CouncilProgress(phase=state, current_step=step, total_steps=total_steps,
                                    message=message, error=error))

    try:
        if len(rays) < 2:
            raise CouncilPhaseError("ranking", "At least two responses are required")
        if len(rays) > MAX_COUNCIL_RAYS:
            raise CouncilPhaseError("ranking", f"At most {MAX_COUNCIL_RAYS} responses can be ranked")

        query = extract_user_query(chat_history)
        labels = response_labels(len(rays))
        anonymized = [(label, ray.message.text) for label, ray in zip(labels, rays)]
        logger.debug("Council labels: %s", {label: ray.ray_id for label, ray in zip(labels, rays)})

        # Peer ranking, sequential
        progress("ranking", "Starting peer rankings...")
        ranking_prompt = create_council_ranking_prompt(prompts, query, anonymized)
        for ray in rays:
            step += 1
            progress("ranking", f"{ray.model_name} evaluating responses...")
            outcome, evaluation, error = await _generate_text(
                generator, ray.model_id, prompts.ranking_system, ranking_prompt, token,
            )
            if outcome == "aborted":
                raise CouncilPhaseError("ranking", "Ranking aborted", rankings)
            if outcome == "errored":
                raise CouncilPhaseError("ranking", f"Ranking failed: {error or 'Unknown error'}", rankings)

            parsed = parse_ranking(evaluation, labels)
            if not parsed:
                logger.warning("Could not parse ranking from %s, skipping its votes", ray.model_name)
            rankings.append(CouncilRanking(
                ranker_ray_id=ray.ray_id,
                ranker_model_name=ray.model_name,
                rankings=[
                    RankedPosition(ray_id=rays[labels.index(label)].ray_id, position=position)
                    for label, position in parsed
                    if label in labels
                ],
                evaluation_text=evaluation,
                extracted_ranking=extract_ranking_section(evaluation),
            ))

        # Aggregation
        phase = "aggregating"
        step += 1
        progress("aggregating", "Calculating aggregate rankings...")
        aggregations = aggregate_council_rankings(
            rankings,
            [ray.ray_id for ray in rays],
            {ray.ray_id: ray.model_name for ray in rays},
            {ray.ray_id: ray.message.text[:_PREVIEW_CHARS] for ray in rays},
        )
        ranking_matrix = build_ranking_matrix(rankings)

        # Chairman synthesis
        phase = "synthesis"
        step += 1
        progress("synthesizing", "Chairman synthesizing final answer...")
        chairman_prompt = create_council_chairman_prompt(
            prompts,
            query,
            [(ray.model_name, ray.message.text) for ray in rays],
            [(r.ranker_model_name, r.evaluation_text, r.extracted_ranking) for r in rankings],
        )
        outcome, synthesis, error = await _generate_text(
            generator, chairman_model_id, prompts.chairman_system, chairman_prompt, token, on_chairman_delta,
        )
        if outcome == "aborted":
            raise CouncilPhaseError("synthesis", "Chairman synthesis aborted", rankings)
        if outcome == "errored":
            raise CouncilPhaseError("synthesis", f"Chairman synthesis failed: {error or 'Unknown error'}", rankings)

        chairman_message = create_text_message("assistant", synthesis)
        chairman_message.model_id = chairman_model_id

    except CouncilPhaseError as exc:
        progress("error", "Council voting failed", error=str(exc))
        raise
    except Exception as exc:
        progress("error", "Council voting failed", error=str(exc))
        raise CouncilPhaseError(phase, str(exc) or "Unknown error", rankings) from exc

    step = total_steps
    progress("complete", "Council voting complete")
    logger.info("Council complete: %d rankings, winner %s",
                len(rankings), aggregations[0].model_name if aggregations else "-")
    return CouncilResults(
        rankings=rankings,
        aggregations=aggregations,
        ranking_matrix=ranking_matrix,
        chairman_message=chairman_message,
    )
