"""Council prompt construction from the templates in settings.yaml."""

from config.config_loader import PromptsConfig
from beam.models import ChatMessage


def extract_user_query(chat_history: list[ChatMessage]) -> str:
    """Text of the last user turn, or '' if the history has none."""
    for message in reversed(chat_history):
        if message.role == "user":
            return message.text
    return ""


def _format_anonymized(responses: list[tuple[str, str]]) -> str:
    return "\n\n".join(f"{label}:\n{content}" for label, content in responses)


def create_council_ranking_prompt(
    prompts: PromptsConfig,
    query: str,
    responses: list[tuple[str, str]],
) -> str:
    """Ranking request over (label, content) pairs. Model names are never shown to rankers."""
    return prompts.ranking.format(query=query, responses=_format_anonymized(responses))


def create_council_chairman_prompt(
    prompts: PromptsConfig,
    query: str,
    responses: list[tuple[str, str]],
    rankings: list[tuple[str, str, str]],
) -> str:
    """Chairman request.

    Args:
        prompts: Prompt templates from config.
        query: The user question.
        responses: (model name, content) for each ray, in ray order.
        rankings: (ranker model name, evaluation text, extracted ranking) per ranker.
    """
    responses_text = "\n\n".join(f"Model: {name}\nResponse: {content}" for name, content in responses)
    rankings_parts: list[str] = []
    for ranker, evaluation, extracted in rankings:
        part = f"Evaluator: {ranker}\n{evaluation}"
        if extracted:
            part += f"\n\nExtracted ranking:\n{extracted}"
        rankings_parts.append(part)
    rankings_text = "\n\n---\n\n".join(rankings_parts) or "(no peer rankings were produced)"
    return prompts.chairman.format(query=query, responses=responses_text, rankings=rankings_text)
