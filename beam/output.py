"""Rich console output and markdown file save for beam results."""

import logging
import re
import string
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from beam.council.ranking import UNRANKED_AVERAGE
from beam.gather.factories import find_fusion_factory
from beam.gather.fusion import Fusion
from beam.models import CouncilResults
from beam.scatter import Ray

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_STATUS_STYLE = {
    "success": "green",
    "stopped": "yellow",
    "error": "red",
    "scattering": "cyan",
    "empty": "dim",
}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(text: str, words: int = 50) -> str:
    """Return first N words of a text."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _ray_letter(index: int) -> str:
    # numbers past Z
    return string.ascii_uppercase[index] if index < len(string.ascii_uppercase) else str(index + 1)


def _format_rank(average: float) -> str:
    return "-" if average >= UNRANKED_AVERAGE else f"{average:.2f}"


def print_rays(rays: list[Ray], model_name: Callable[[str], str] = str, show_lettering: bool = False) -> None:
    """Print one panel per ray with a preview of its content."""
    console.print(Rule("[bold cyan]Rays[/bold cyan]"))
    for index, ray in enumerate(rays):
        style = _STATUS_STYLE.get(ray.status, "dim")
        body = _preview(ray.message.text) if ray.message.text else Text(ray.scatter_issue or "(no content)", style="dim")
        subtitle = f"[{style}]{ray.status}[/{style}]"
        if ray.scatter_issue:
            subtitle += f" | {ray.scatter_issue[:80]}"
        console.print(
            Panel(
                body,
                title=(f"[bold]{_ray_letter(index)}[/bold] " if show_lettering else "")
                + (model_name(ray.model_id) if ray.model_id else "(no model)"),
                subtitle=subtitle,
                border_style="dim",
            )
        )


def print_fusion(fusion: Fusion) -> None:
    """Print a fusion's output using Rich markdown."""
    factory = find_fusion_factory(fusion.factory_id)
    console.print(Rule(f"[bold green]{factory.label if factory else fusion.factory_id} Fusion[/bold green]"))
    console.print(Text(f"Merged by: {fusion.model_id} | Stage: {fusion.stage}", style="dim"))
    if fusion.error_text:
        console.print(Text(fusion.error_text, style="red"))
    if fusion.output_message and fusion.output_message.text:
        console.print(Markdown(fusion.output_message.text))


def build_leaderboard(results: CouncilResults) -> Table:
    table = Table(title="Council Leaderboard", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Model")
    table.add_column("Avg rank", justify="right")
    table.add_column("Votes", justify="right")
    table.add_column("Std dev", justify="right")
    table.add_column("Agreement")
    for place, aggregation in enumerate(results.aggregations, start=1):
        table.add_row(
            str(place),
            aggregation.model_name,
            _format_rank(aggregation.average_rank),
            str(aggregation.vote_count),
            f"{aggregation.std_dev:.2f}",
            aggregation.agreement,
        )
    return table


def print_council(results: CouncilResults) -> None:
    console.print(Rule("[bold green]Council[/bold green]"))
    console.print(build_leaderboard(results))
    console.print(Rule("[bold green]Chairman Synthesis[/bold green]"))
    console.print(Markdown(results.chairman_message.text))


def save_to_file(
    question: str,
    rays: list[Ray],
    output_dir: Path,
    fusion: Fusion | None = None,
    council: CouncilResults | None = None,
    model_name: Callable[[str], str] = str,
    slug_override: str | None = None,
) -> Path:
    """Save the beam transcript as a markdown file.

    Args:
        question: The last user message.
        rays: Rays in display order.
        output_dir: Directory to save the file in.
        fusion: The fusion to include, if any.
        council: Council results to include, if any.
        model_name: Maps a model id to a display name.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the question text.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(question)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    lines: list[str] = [
        f"# Beam: {question[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Rays:** {', '.join(model_name(r.model_id) for r in rays if r.model_id)}",
        "",
        "---",
        "",
        "## Rays",
        "",
    ]

    for index, ray in enumerate(rays):
        label = model_name(ray.model_id) if ray.model_id else "(no model)"
        lines.append(f"### {_ray_letter(index)}. {label} ({ray.status})")
        lines.append("")
        lines.append(ray.message.text or f"*{ray.scatter_issue or 'No content'}*")
        lines.append("")

    if fusion is not None:
        factory = find_fusion_factory(fusion.factory_id)
        lines += [f"## Fusion: {factory.label if factory else fusion.factory_id} (by {fusion.model_id})", ""]
        if fusion.error_text:
            lines += [f"*{fusion.error_text}*", ""]
        if fusion.output_message is not None:
            lines += [fusion.output_message.text, ""]

    if council is not None:
        lines += [
            "## Council Leaderboard",
            "",
            "| # | Model | Avg rank | Votes | Std dev | Agreement |",
            "|---|-------|----------|-------|---------|-----------|",
        ]
        for place, aggregation in enumerate(council.aggregations, start=1):
            lines.append(
                f"| {place} | {aggregation.model_name} | {_format_rank(aggregation.average_rank)} "
                f"| {aggregation.vote_count} | {aggregation.std_dev:.2f} | {aggregation.agreement} |"
            )
        lines += ["", "## Peer Evaluations", ""]
        for ranking in council.rankings:
            lines += [f"### {ranking.ranker_model_name}", "", ranking.evaluation_text, ""]
        lines += ["## Chairman Synthesis", "", council.chairman_message.text, ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Beam saved to: %s", filepath)
    return filepath
