"""Catalog of merge strategies. Each factory builds a fresh, canonical instruction list."""

from collections.abc import Callable
from dataclasses import dataclass

from beam.gather.fusion import CUSTOM_FACTORY_ID
from beam.gather.instructions import (
    ChatGenerateInstruction,
    GatherInstruction,
    Instruction,
    UserInputChecklistInstruction,
)


@dataclass(frozen=True)
class FusionFactory:
    factory_id: str
    label: str
    short_label: str
    icon: str | None
    description: str
    create_instructions: Callable[[], list[Instruction]]
    is_dev: bool = False


def _guided_instructions() -> list[Instruction]:
    return [
        ChatGenerateInstruction(
            label="Generating Checklist",
            display="character-count",
            system_prompt="""
You are an intelligent agent tasked with analyzing a set of {{N}} AI-generated responses to the user message to identify key insights, solutions, or themes.
Your goal is to distill these into a clear, concise, and actionable checklist that the user can review and select from.
The checklist should be brief, commensurate with the task at hand, and formatted precisely as follows:

- [ ] **Insight/Solution/Theme name 1**: [Very brief, actionable description]
- [ ] **Insight/Solution/Theme name 2**: [Very brief, actionable description]
...
- [ ] **Insight/Solution/Theme name N**: [Very brief, actionable description]

The checklist should contain no more than 3-9 orthogonal items, especially points of difference, in a single brief line each (no end period).
Prioritize items based on what would be most helpful to the user when merging the {{N}} response alternatives.""".strip(),
            user_prompt="""
Given the conversation history and the {{N}} alternatives provided, identify and list the key insights, themes, or solutions as distinct orthogonal options in a checklist format.
Each item should be clearly briefly articulated to allow for easy selection by the user.
Ensure the checklist is comprehensive, covering the breadth of ideas presented in the alternatives, yet concise enough to facilitate clear decision-making.""".strip(),
        ),
        UserInputChecklistInstruction(
            label="Criteria Selection",
            output_prompt="""
The user selected:
{{YesAnswers}}

The user did NOT select:
{{NoAnswers}}""".strip(),
        ),
        ChatGenerateInstruction(
            label="Checklist-guided Merge",
            system_prompt="""
You are a master synthesizer, equipped with specific directions selected by the user from a checklist you previously helped generate.
Your task is to combine the {{N}} response alternatives into a single cohesive response, following the preferences of the user.
This synthesis should address the user's original query comprehensively, incorporating the {{N}} response alternatives following the user's chosen options.
Aim for clarity and coherence in your final output.""".strip(),
            user_prompt="""
Given the user preferences below, synthesize the {{N}} response alternatives above into a single, cohesive, comprehensive response that follows the user query and the preferences below:

{{PrevStepOutput}}

Ensure the synthesis is coherent, integrating the response alternatives in a clear manner.
The final output should reflect a deep understanding of the user's preferences and the conversation's context.""".strip(),
        ),
    ]


def _fuse_instructions() -> list[Instruction]:
    return [
        GatherInstruction(
            label="Synthesizing Fusion",
            system_prompt="""
You are an expert AI text synthesizer, your task is to analyze the following inputs and generate a single, comprehensive response that addresses the core objectives or questions.

Consider the conversation history, the last user message, and the diverse perspectives presented in the {{N}} response alternatives.

Your response should integrate the most relevant insights from these inputs into a cohesive and actionable answer.

Synthesize the perfect response that merges the key insights and provides clear guidance or answers based on the collective intelligence of the alternatives.""".strip(),
            user_prompt="""
Synthesize the perfect cohesive response to my last message that merges the collective intelligence of the {{N}} alternatives above.""".strip(),
        ),
    ]


def _eval_instructions() -> list[Instruction]:
    return [
        ChatGenerateInstruction(
            label="Evaluation",
            system_prompt="""
You are an advanced analytical tool designed to process and evaluate a set of AI-generated responses related to a user's query.

Your objective is to organize these responses in a way that aids decision-making.
You will first identify key criteria essential for evaluating the responses based on relevance, quality, and applicability.

Then, you will analyze each response against these criteria.

Finally, you will synthesize your findings into a table, providing a clear overview of how each response measures up. Start by identifying up to 8 orthogonal criteria for evaluation.""".strip(),
            user_prompt="""
Now that you have reviewed the {{N}} alternatives, proceed with the following steps:

1. **Analyze Responses:** Evaluate each response individually against the criteria you identified. Assess how well each response meets each criterion, noting strengths and weaknesses.

2. **Generate Table:** Organize your analysis into a table. The table should have rows for each response and columns for each of the criteria, plus an initial column for the response identifiers. Fill in the table with your assessment of how each response aligns with the criteria, using a 1-10 scoring range.

**Table Format:**

| Response | Criterion 1 | Criterion 2 | ... | Criterion 8 (max) |
|----------|-------------|-------------|-----|-------------|
| Response 1 | ... | ... | ... | ... |
| Response 2 | ... | ... | ... | ... |
| ... | ... | ... | ... | ... |
| Response N | ... | ... | ... | ... |

Complete this table to offer a structured and detailed comparison of the {{N}} options, providing an at-a-glance overview that will significantly aid in the decision-making process.

Only work with the provided {{N}} responses. Begin with listing the criteria.""".strip(),
        ),
    ]


def _custom_instructions() -> list[Instruction]:
    return [
        GatherInstruction(
            label="Executing Your Merge Strategy",
            system_prompt="""
Your task is to synthesize a cohesive and relevant response based on the following messages: the original system message, the full conversation history up to the user query, the user query, and a set of {{N}} answers generated independently.
These alternatives explore different solutions and perspectives and are presented in random order. Your output should integrate insights from these alternatives, aligned with the conversation's context and objectives, into a single, coherent response that addresses the user's needs and questions as expressed throughout the conversation.""".strip(),
            user_prompt="""
Based on the {{N}} alternatives provided, synthesize a single, comprehensive response.""".strip(),
        ),
    ]


FUSION_FACTORIES: list[FusionFactory] = [
    FusionFactory(
        factory_id="guided",
        label="Guided",
        short_label="Guided",
        icon="checkbox",
        description="A brainstorming session with AI, where you first pick your favorite ideas from a list it "
                    "generates, and then the AI combines those picks into a tailored solution.",
        create_instructions=_guided_instructions,
    ),
    FusionFactory(
        factory_id="fuse",
        label="Fuse",
        short_label="Fuse",
        icon="mediation",
        description="AI combines conversation details and various AI-generated ideas into one clear, "
                    "comprehensive answer, making sense of diverse insights for you.",
        create_instructions=_fuse_instructions,
    ),
    FusionFactory(
        factory_id="eval",
        label="Comparison Table",
        short_label="Eval",
        icon="table",
        description="Analyzes and ranks AI responses, offering a clear, comparative overview to support your choice of answer.",
        create_instructions=_eval_instructions,
        is_dev=True,
    ),
    # may be overwritten by other factories, when editing those
    FusionFactory(
        factory_id=CUSTOM_FACTORY_ID,
        label="Custom",
        short_label="Custom",
        icon=None,
        description="Define your own fusion prompt.",
        create_instructions=_custom_instructions,
    ),
]

FUSION_FACTORY_DEFAULT = "fuse"


def find_fusion_factory(factory_id: str | None) -> FusionFactory | None:
    return next((f for f in FUSION_FACTORIES if f.factory_id == factory_id), None)
