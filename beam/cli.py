"""Click CLI: loads config, builds providers, scatters, then fuses or runs the council."""

import asyncio
import itertools
import logging
import sys
from dataclasses import replace
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, load_config
from config.preferences import BeamConfigSnapshot, Preferences, PreferencesStore
from beam.conversation import load_conversation
from beam.gather.factories import FUSION_FACTORIES
from beam.gather.fusion import fusion_is_usable_output
from beam.generation import ProviderGenerator
from beam.healthcheck import run_health_checks
from beam.models import ChatMessage, ChecklistItem, ChecklistView, ProgressView, create_text_message
from beam.output import print_council, print_fusion, print_rays, save_to_file
from beam.providers.anthropic import AnthropicProvider
from beam.providers.base import AIProvider
from beam.providers.gemini import GeminiProvider
from beam.providers.openai_provider import OpenAIProvider
from beam.providers.xai import XAIProvider
from beam.scatter import ray_is_selectable
from beam.session import BeamSession

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "claude": AnthropicProvider,
    "grok": XAIProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build all available providers. Returns dict keyed by name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        if name not in PROVIDER_CLASSES:
            logging.warning("Provider '%s' unknown, skipping", name)
            continue
        model_cfg = config.models[name]
        try:
            providers[name] = PROVIDER_CLASSES[name](model_cfg)
        except Exception as exc:
            logging.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _check_and_filter_providers(all_providers: dict[str, AIProvider]) -> dict[str, AIProvider]:
    """Run health checks, print results, and ask user what to do on failures.

    Returns the filtered dict of working providers. Exits if the user
    declines to continue or no providers pass.
    """
    console.print("\n[bold]Checking models...[/bold]")
    results = asyncio.run(run_health_checks(ProviderGenerator(all_providers), list(all_providers)))

    failed_names: list[str] = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed_names.append(name)

    if not failed_names:
        console.print()
        return all_providers

    working = {n: p for n, p in all_providers.items() if n not in failed_names}

    if not working:
        console.print("\n[bold red]Error:[/bold red] No models passed the health check.")
        sys.exit(1)

    console.print(f"\n[yellow]{len(failed_names)} model(s) failed:[/yellow] {', '.join(failed_names)}")
    console.print(f"Working models: {', '.join(sorted(working))}")

    if not click.confirm("Continue with working models only?", default=True):
        sys.exit(0)

    console.print()
    return working


def _default_ray_models(config: AppConfig, available: list[str]) -> list[str]:
    """Configured ray models that are available, cycled to the configured ray count."""
    models = [m for m in config.defaults.ray_models if m in available] or list(available)
    if not models:
        return []
    return list(itertools.islice(itertools.cycle(models), max(config.defaults.ray_count, 1)))


def _sanitize_snapshot(snapshot: BeamConfigSnapshot | None, available: list[str]) -> BeamConfigSnapshot | None:
    """Drop models that are not available in this run."""
    if snapshot is None:
        return None
    return replace(
        snapshot,
        ray_model_ids=[m for m in snapshot.ray_model_ids if m in available],
        gather_model_id=snapshot.gather_model_id if snapshot.gather_model_id in available else None,
    )


def _resolve_auto_merge(prefs_store: PreferencesStore, auto_merge: bool | None) -> bool:
    """Effective auto-merge setting. An explicit flag is remembered in preferences."""
    current = prefs_store.preferences.gather_auto_start_after_scatter
    if auto_merge is None:
        return current
    if auto_merge != current:
        prefs_store.toggle("gather_auto_start_after_scatter")
    return auto_merge


def _parse_models(models: str | list | None) -> list[str] | None:
    if models is None:
        return None
    if isinstance(models, str):
        models = models.split(",")
    return [str(m).strip() for m in models if str(m).strip()]


def _ask_checklist(items: list[ChecklistItem]) -> list[ChecklistItem] | None:
    """Blocking prompt for a checklist step. Returns the selection, or None to stop."""
    console.print("\n[bold]Pick the points to keep in the merge:[/bold]")
    for number, item in enumerate(items, start=1):
        mark = "x" if item.selected else " "
        console.print(f"  {number}. [{mark}] {item.label}")
    answer = click.prompt(
        "Numbers to keep (comma-separated, 'all', or 'q' to stop)",
        default="all",
        show_default=True,
    ).strip().lower()
    if answer in ("q", "quit", "stop"):
        return None
    if answer == "all":
        return [replace(item, selected=True) for item in items]
    chosen: set[int] = set()
    for part in answer.split(","):
        part = part.strip()
        if part.isdigit():
            chosen.add(int(part))
    return [replace(item, selected=number in chosen) for number, item in enumerate(items, start=1)]


async def _scatter(session: BeamSession) -> None:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Scattering...", total=None)

        def on_change() -> None:
            rays = session.scatter.rays
            running = sum(1 for r in rays if r.status == "scattering")
            progress.update(task, description=f"Scattering: {session.scatter.rays_ready}/{len(rays)} ready, {running} running")

        unsubscribe = session.subscribe(on_change)
        try:
            session.scatter.start_all()
            await session.scatter.wait_idle()
        finally:
            unsubscribe()


async def _fuse(session: BeamSession) -> str | None:
    """Create a fusion from the current factory and drive it, answering checklist steps."""
    fusion = session.gather.create_fusion()
    if fusion is None:
        return None
    fusion_id = fusion.fusion_id
    if fusion.stage == "idle":
        # custom fusions are not started on creation
        session.gather.start_fusion(fusion_id)

    views: asyncio.Queue[ChecklistView] = asyncio.Queue()
    seen: list[ChecklistView] = []

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Merging...", total=None)

        def on_change() -> None:
            current = session.gather.get_fusion(fusion_id)
            if current is None:
                return
            if isinstance(current.progress_view, ProgressView):
                progress.update(task, description=current.progress_view.text)
            view = current.instruction_view
            if isinstance(view, ChecklistView) and not any(view is s for s in seen):
                seen.append(view)
                views.put_nowait(view)

        unsubscribe = session.subscribe(on_change)
        idle = asyncio.ensure_future(session.gather.wait_idle())
        try:
            while not idle.done():
                getter = asyncio.ensure_future(views.get())
                done, _ = await asyncio.wait({idle, getter}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    getter.cancel()
                    continue
                view = getter.result()
                progress.stop()
                selection = await asyncio.to_thread(_ask_checklist, view.items)
                progress.start()
                if selection is None:
                    view.cancel()
                else:
                    view.confirm(selection)
        finally:
            unsubscribe()

    return fusion_id


async def _run_beam(
    config: AppConfig,
    all_providers: dict[str, AIProvider],
    prefs_store: PreferencesStore,
    messages: list[ChatMessage],
    rays: int | None,
    models: list[str] | None,
    factory: str,
    gather_model: str,
    use_council: bool,
    chairman: str,
    preset: str | None,
    save_preset: str | None,
    output_dir: Path,
    slug_override: str | None = None,
    auto_merge: bool | None = None,
) -> Path:
    generator = ProviderGenerator(all_providers)
    available = generator.model_ids
    prefs = prefs_store.preferences
    snapshot_prefs: Preferences = replace(prefs, last_config=_sanitize_snapshot(prefs.last_config, available))

    session = BeamSession(
        generator,
        config.prompts,
        preferences=snapshot_prefs,
        on_config_change=prefs_store.update_last_config,
        default_ray_model_ids=_default_ray_models(config, available),
        model_name=generator.model_name,
    )

    accepted: list[tuple[str, str | None]] = []
    initial_model = gather_model if gather_model in available else available[0]
    session.open(messages, initial_model, lambda text, model_id: accepted.append((text, model_id)))
    if not session.input_ready:
        console.print(f"[bold red]Error:[/bold red] {session.input_issues}")
        sys.exit(1)

    if preset:
        found = prefs_store.find_preset(preset)
        if found is None:
            console.print(f"[bold red]Error:[/bold red] Unknown preset '{preset}'.")
            sys.exit(1)
        session.load_beam_config(_sanitize_snapshot(found, available))
    if models:
        unknown = [m for m in models if m not in available]
        if unknown:
            logger.warning("Models not available, skipping: %s", ", ".join(unknown))
        session.scatter.set_ray_model_ids([m for m in models if m in available])
    if rays is not None:
        session.scatter.set_ray_count(rays)
    if gather_model in available:
        session.gather.set_current_gather_model_id(gather_model)
    try:
        session.gather.set_current_factory_id(factory)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    ray_models = [r.model_id for r in session.scatter.rays if r.model_id]
    if len(ray_models) < 2:
        console.print(
            f"[bold red]Error:[/bold red] Need at least 2 rays with a model, got {len(ray_models)}. "
            "Check API keys in .env or adjust --models / --rays."
        )
        sys.exit(1)

    merge = _resolve_auto_merge(prefs_store, auto_merge)

    question = messages[-1].text
    console.print(f"\n[bold cyan]Beam[/bold cyan]: {len(session.scatter.rays)} rays: {', '.join(ray_models)}")
    console.print(f"Question: [italic]{question[:80]}{'...' if len(question) > 80 else ''}[/italic]\n")

    await _scatter(session)
    print_rays(session.scatter.rays, generator.model_name, show_lettering=prefs.scatter_show_lettering)

    fusion = None
    council = None
    if session.scatter.rays_ready < 2:
        console.print("[yellow]Fewer than 2 rays produced content, skipping the merge.[/yellow]")
    elif use_council:
        chairman_id = chairman if chairman in available else session.gather.current_gather_model_id
        with console.status("Council voting..."):
            session.council.start_council(chairman_id)
            await session.council.wait_idle()
        if session.council.results is not None:
            council = session.council.results
            print_council(council)
            session.accept_council()
        else:
            console.print(f"[bold red]Council {session.council.phase}:[/bold red] {session.council.error_text or ''}")
    elif merge or await asyncio.to_thread(
        click.confirm,
        f"Merge the {session.scatter.rays_ready} rays with '{session.gather.current_factory_id}'?",
        default=True,
    ):
        fusion_id = await _fuse(session)
        fusion = session.gather.get_fusion(fusion_id) if fusion_id else None
        if fusion is not None:
            print_fusion(fusion)
            if fusion_is_usable_output(fusion):
                session.accept_fusion(fusion_id)
    else:
        console.print("[dim]Merge skipped.[/dim]")

    if not accepted:
        best = next((r for r in session.scatter.rays if ray_is_selectable(r)), None)
        if best is not None:
            session.accept_ray(best.ray_id)

    if save_preset:
        created = prefs_store.add_preset(
            save_preset,
            [r.model_id for r in session.scatter.rays if r.model_id],
            session.gather.current_gather_model_id,
            session.gather.current_factory_id,
        )
        console.print(f"[dim]Saved preset '{created.name}' ({created.id})[/dim]")

    saved_path = save_to_file(
        question,
        session.scatter.rays,
        output_dir,
        fusion=fusion,
        council=council,
        model_name=generator.model_name,
        slug_override=slug_override,
    )
    session.terminate_keeping_settings()
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")
    return saved_path


@click.command()
@click.argument("question", required=False)
@click.option("--file", "conversation_file", type=click.Path(exists=True),
              help="Read the conversation from a .md file ('## user' / '## assistant' sections)")
@click.option("--rays", default=None, type=int, help="Number of rays (default: from preferences or config)")
@click.option("--models", default=None, help="Comma-separated ray models, one ray per entry")
@click.option("--factory", default=None, type=click.Choice([f.factory_id for f in FUSION_FACTORIES]),
              help="Merge strategy (default: from config)")
@click.option("--gather-model", default=None, help="Model that runs the merge (default: from config)")
@click.option("--council", "use_council", is_flag=True, default=False,
              help="Rank the rays by peer vote and let a chairman synthesize instead of merging")
@click.option("--chairman", default=None, help="Council chairman model (default: from config)")
@click.option("--preset", default=None, help="Load a saved preset by name or id")
@click.option("--save-preset", default=None, help="Save the ray and merge models as a named preset")
@click.option("--auto-merge/--no-auto-merge", default=None,
              help="Merge right after scattering without asking (remembered for later runs)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def main(
    question: str | None,
    conversation_file: str | None,
    rays: int | None,
    models: str | None,
    factory: str | None,
    gather_model: str | None,
    use_council: bool,
    chairman: str | None,
    preset: str | None,
    save_preset: str | None,
    auto_merge: bool | None,
    output_path: str | None,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Beam -- ask several models at once, then merge the answers.

    \b
    Examples:
      python -m beam.cli "Should we use REST or GraphQL?"
      python -m beam.cli "Monorepo vs polyrepo?" --models claude,gemini,openai
      python -m beam.cli "SQL or NoSQL?" --factory guided
      python -m beam.cli "Tabs or spaces?" --auto-merge
      python -m beam.cli --file conversation.md --council --chairman claude
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    meta: dict = {}
    slug_override = None
    if conversation_file:
        conversation = load_conversation(Path(conversation_file))
        messages = conversation.messages
        meta = conversation.metadata
        slug_override = Path(conversation_file).stem
    elif question:
        messages = [create_text_message("user", question)]
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument or --file.")
        sys.exit(1)

    # CLI flags always win; frontmatter only fills in when the CLI flag is not set
    effective_rays = rays if rays is not None else int(meta["rays"]) if "rays" in meta else None
    effective_models = _parse_models(models if models is not None else meta.get("models"))
    effective_factory = factory or str(meta.get("factory") or config.defaults.factory)
    effective_gather = gather_model or str(meta.get("gather_model") or config.defaults.gather_model or "")
    effective_council = use_council or bool(meta.get("council", False))
    effective_chairman = chairman or config.defaults.chairman or effective_gather
    effective_output = Path(output_path) if output_path else config.defaults.output_dir

    all_providers = _build_all_providers(config)

    if not all_providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    if not skip_health_check:
        all_providers = _check_and_filter_providers(all_providers)

    prefs_store = PreferencesStore(config.defaults.preferences_path)
    prefs_store.load()

    asyncio.run(
        _run_beam(
            config=config,
            all_providers=all_providers,
            prefs_store=prefs_store,
            messages=messages,
            rays=effective_rays,
            models=effective_models,
            factory=effective_factory,
            gather_model=effective_gather,
            use_council=effective_council,
            chairman=effective_chairman,
            preset=preset,
            save_preset=save_preset,
            output_dir=effective_output,
            slug_override=slug_override,
            auto_merge=auto_merge,
        )
    )


if __name__ == "__main__":
    main()
