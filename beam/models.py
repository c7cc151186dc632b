"""Plain dataclasses shared across scatter, gather and council. No orchestration logic."""

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

# Visible while a generation has started but no text has arrived yet
SCATTER_PLACEHOLDER = "…"
GATHER_PLACEHOLDER = "…"

Role = Literal["system", "user", "assistant"]
Outcome = Literal["success", "aborted", "errored"]


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class ChatMessage:
    role: Role
    text: str = ""
    message_id: str = field(default_factory=lambda: new_id("msg"))
    created: float = field(default_factory=time.time)
    updated: float | None = None   # None until content arrives
    pending_incomplete: bool = False
    model_id: str | None = None    # generator that produced this message, if any


def create_empty_message(role: Role = "assistant") -> ChatMessage:
    return ChatMessage(role=role)


def create_text_message(role: Role, text: str) -> ChatMessage:
    return ChatMessage(role=role, text=text, updated=time.time())


@dataclass
class GenerateResult:
    outcome: Outcome
    text: str = ""                 # last cumulative text seen, possibly partial
    error_message: str | None = None


# --- Views published to the presentation layer (data only) ---

@dataclass(frozen=True)
class ProgressView:
    step: int
    total: int
    label: str

    @property
    def text(self) -> str:
        if self.total > 1:
            return f"{self.step}/{self.total} · {self.label} ..."
        return f"{self.label} ..."


@dataclass(frozen=True)
class MessageView:
    text: str
    pending: bool


@dataclass(frozen=True)
class CharacterCountView:
    characters: int


@dataclass
class ChecklistItem:
    label: str
    selected: bool = False


@dataclass(frozen=True)
class ChecklistView:
    """Interactive step: the human picks items, then calls confirm() or cancel()."""
    items: list[ChecklistItem]
    confirm: Callable[[list[ChecklistItem]], None]
    cancel: Callable[[], None]


# --- Council ---

CouncilPhase = Literal["idle", "ranking", "aggregating", "synthesizing", "complete", "stopped", "error"]


@dataclass(frozen=True)
class RankedPosition:
    ray_id: str
    position: int                  # 1 = best


@dataclass
class CouncilRanking:
    ranker_ray_id: str
    ranker_model_name: str
    rankings: list[RankedPosition]
    evaluation_text: str
    extracted_ranking: str


@dataclass
class CouncilAggregation:
    ray_id: str
    model_name: str
    average_rank: float            # lower is better
    vote_count: int
    std_dev: float
    positions: list[int] = field(default_factory=list)
    response_preview: str = ""
    agreement: str = "unranked"    # "consensus", "mixed", "controversial", "unranked"


@dataclass
class CouncilResults:
    rankings: list[CouncilRanking]
    aggregations: list[CouncilAggregation]
    ranking_matrix: dict[str, dict[str, int]]
    chairman_message: ChatMessage


@dataclass(frozen=True)
class CouncilProgress:
    phase: CouncilPhase
    current_step: int
    total_steps: int
    message: str
    error: str | None = None
