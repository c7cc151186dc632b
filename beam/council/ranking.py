"""Peer-ranking parser and aggregation for council voting.

Ranking extraction from free text is best effort. The parser sits behind the
RankingParser signature so a stricter extractor can replace it without touching
aggregation or orchestration.
"""

import logging
import re
import statistics
import string
from collections.abc import Callable

from beam.models import CouncilAggregation, CouncilRanking

logger = logging.getLogger(__name__)

RANKING_MARKER = "FINAL RANKING:"

# Worst-case mean for rays that received no votes; keeps them on the leaderboard, last
UNRANKED_AVERAGE = 999.0

CONSENSUS_MAX_STD = 0.5
CONTROVERSIAL_MIN_STD = 1.0

# one single-letter label per response
MAX_COUNCIL_RAYS = len(string.ascii_uppercase)

RankingParser = Callable[[str, list[str]], list[tuple[str, int]]]

_RESPONSE_LABEL = re.compile(r"Response\s+([A-Z])\b")


def response_labels(count: int) -> list[str]:
    """'Response A', 'Response B', ... for count responses (at most MAX_COUNCIL_RAYS)."""
    if count > MAX_COUNCIL_RAYS:
        raise ValueError(f"At most {MAX_COUNCIL_RAYS} responses can be labeled, got {count}")
    return [f"Response {letter}" for letter in string.ascii_uppercase[:count]]


def extract_ranking_section(evaluation_text: str) -> str:
    """Text after the last FINAL RANKING: marker, or '' if there is none."""
    index = evaluation_text.rfind(RANKING_MARKER)
    if index < 0:
        return ""
    return evaluation_text[index + len(RANKING_MARKER):].strip()


def parse_council_ranking(evaluation_text: str, labels: list[str]) -> list[tuple[str, int]]:
    """Parse '(label, position)' pairs from the FINAL RANKING: block.

    Positions follow the order in which distinct known labels appear in the block,
    starting at 1. Unknown and repeated labels are skipped. Returns [] when the
    block is missing or names no known label.
    """
    section = extract_ranking_section(evaluation_text)
    if not section:
        logger.warning("No '%s' section found in evaluation (%d chars)", RANKING_MARKER, len(evaluation_text))
        return []

    known = set(labels)
    seen: list[str] = []
    for match in _RESPONSE_LABEL.finditer(section):
        label = f"Response {match.group(1)}"
        if label in known and label not in seen:
            seen.append(label)

    if not seen:
        logger.warning("Ranking section names no known response: %r", section[:200])
    return [(label, position) for position, label in enumerate(seen, start=1)]


def agreement_label(vote_count: int, std_dev: float) -> str:
    if vote_count == 0:
        return "unranked"
    if vote_count >= 2 and std_dev <= CONSENSUS_MAX_STD:
        return "consensus"
    if std_dev >= CONTROVERSIAL_MIN_STD:
        return "controversial"
    return "mixed"


def aggregate_council_rankings(
    rankings: list[CouncilRanking],
    ray_ids: list[str],
    model_names: dict[str, str],
    response_previews: dict[str, str],
) -> list[CouncilAggregation]:
    """Leaderboard sorted by mean position, best first.

    The sort is stable, so ties keep the order of ray_ids.
    """
    positions: dict[str, list[int]] = {ray_id: [] for ray_id in ray_ids}
    for ranking in rankings:
        for ranked in ranking.rankings:
            if ranked.ray_id in positions:
                positions[ranked.ray_id].append(ranked.position)

    aggregations: list[CouncilAggregation] = []
    for ray_id in ray_ids:
        votes = positions[ray_id]
        if votes:
            average = statistics.fmean(votes)
            std_dev = statistics.pstdev(votes)
        else:
            average = UNRANKED_AVERAGE
            std_dev = 0.0
        aggregations.append(CouncilAggregation(
            ray_id=ray_id,
            model_name=model_names.get(ray_id, ray_id),
            average_rank=average,
            vote_count=len(votes),
            std_dev=std_dev,
            positions=list(votes),
            response_preview=response_previews.get(ray_id, ""),
            agreement=agreement_label(len(votes), std_dev),
        ))

    return sorted(aggregations, key=lambda a: a.average_rank)


def build_ranking_matrix(rankings: list[CouncilRanking]) -> dict[str, dict[str, int]]:
    """ranker ray id -> ranked ray id -> position."""
    return {
        ranking.ranker_ray_id: {ranked.ray_id: ranked.position for ranked in ranking.rankings}
        for ranking in rankings
    }
