"""Click CLI: loads config and a question file, runs multi-model consensus, prints and saves the audit."""

import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import (
    AppConfig,
    ConsensusConfigError,
    ConsensusSettings,
    ModelReference,
    load_config,
    validate_consensus_settings,
)
from consensus.cache import ConsensusCache
from consensus.coordinator import ConsensusCoordinator
from consensus.inputs import QuestionFile, parse_file
from consensus.models import ConsensusProgress, ConsensusResult, ModelErrorCallback, PartialConsensusResult
from consensus.output import print_summary, print_unit_result, save_to_file
from consensus.participant import LLMParticipant, ParticipantAdapter
from consensus.rate_limit import ModelRateLimiter, RateLimitedParticipant
from consensus.providers.base import ProviderError
from consensus.providers.factory import build_provider

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _parse_models(models: object) -> list[str]:
    if isinstance(models, list):
        return [str(m).strip() for m in models if str(m).strip()]
    return [m.strip() for m in str(models).split(",") if m.strip()]


def _effective_settings(
    base: ConsensusSettings,
    question_file: QuestionFile,
    threshold: float | None,
    max_iterations: int | None,
    models: str | None,
    no_source_validation: bool,
) -> ConsensusSettings:
    """Precedence for per-run settings: CLI flag > front matter > settings.yaml."""
    overrides = question_file.overrides
    settings = base

    effective_threshold = threshold if threshold is not None else overrides.get("threshold")
    if effective_threshold is not None:
        settings = replace(settings, consensus_threshold=float(effective_threshold))

    effective_iterations = max_iterations if max_iterations is not None else overrides.get("max_iterations")
    if effective_iterations is not None:
        settings = replace(settings, max_iterations=int(effective_iterations))

    effective_models = models if models is not None else overrides.get("models")
    if effective_models is not None:
        configured = {ref.model_id: ref for ref in base.models}
        settings = replace(
            settings,
            models=[
                replace(configured[m], enabled=True) if m in configured else ModelReference(model_id=m)
                for m in _parse_models(effective_models)
            ],
        )

    if no_source_validation:
        settings = replace(settings, enable_source_validation=False)
    return settings


def _build_participants(
    config: AppConfig,
    settings: ConsensusSettings,
    on_model_error: ModelErrorCallback,
) -> list[ParticipantAdapter]:
    """Build one rate-limited participant per enabled model reference; unusable providers are skipped."""
    limiter = ModelRateLimiter(settings.rate_limit)
    participants: list[ParticipantAdapter] = []
    for ref in settings.models:
        if not ref.enabled:
            continue
        if ref.model_id not in config.available_providers:
            logger.warning("Model '%s' unavailable (missing API key), skipping", ref.model_id)
            continue
        try:
            provider = build_provider(config.models[ref.model_id])
        except ProviderError as exc:
            logger.warning("Failed to instantiate provider '%s': %s", ref.model_id, exc)
            continue
        participant = LLMParticipant(
            ref, provider, config.prompts, on_model_error=on_model_error, retry=settings.retry,
        )
        participants.append(RateLimitedParticipant(participant, limiter))
    return participants


async def _run(
    config: AppConfig,
    settings: ConsensusSettings,
    question_file: QuestionFile,
) -> ConsensusResult:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting consensus run...", total=None)

        def on_progress(event: ConsensusProgress) -> None:
            progress.update(task, description=f"[{event.overall_progress:.0%}] {event.status_message}")

        def on_partial_result(partial: PartialConsensusResult) -> None:
            print_unit_result(partial)

        def on_model_error(model_id: str, message: str, severity: str, retry: bool) -> None:
            colour = "yellow" if severity == "warning" else "red"
            suffix = " (retrying)" if retry else ""
            progress.print(f"[{colour}]{severity.upper()}[/{colour}] {model_id}: {message}{suffix}")

        participants = _build_participants(config, settings, on_model_error)
        cache = None
        if settings.enable_caching:
            cache = ConsensusCache(ttl_sec=settings.cache_ttl_sec, path=config.defaults.cache_file)
        coordinator = ConsensusCoordinator(
            settings,
            participants,
            on_progress=on_progress,
            on_partial_result=on_partial_result,
            on_model_error=on_model_error,
            cache=cache,
        )
        return await coordinator.run(question_file.units, question_file.source_text)


@click.command()
@click.argument("question_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--threshold", type=float, default=None, help="Agreement threshold 0.0-1.0 (default: from config)")
@click.option("--max-iterations", type=int, default=None, help="Maximum consensus rounds per question")
@click.option("--models", default=None, help="Comma-separated model ids, overrides consensus.models")
@click.option("--no-source-validation", is_flag=True, help="Skip cross-checking the source material")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def main(
    question_path: Path,
    threshold: float | None,
    max_iterations: int | None,
    models: str | None,
    no_source_validation: bool,
    output_path: str | None,
    verbose: bool,
) -> None:
    """Quiz Consensus -- answer quiz questions with several models until they agree.

    \b
    Examples:
      quiz-consensus questions.md
      quiz-consensus questions.md --threshold 0.75 --max-iterations 4
      quiz-consensus questions.md --models claude,openai,gemini --no-source-validation
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

    try:
        question_file = parse_file(question_path)
        settings = _effective_settings(
            config.consensus, question_file, threshold, max_iterations, models, no_source_validation,
        )
    except ValueError as exc:
        console.print(f"[bold red]Question file error:[/bold red] {exc}")
        sys.exit(1)

    try:
        validate_consensus_settings(settings, config.models)
    except ConsensusConfigError as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        sys.exit(1)

    if not settings.privacy.privacy_warning_acknowledged:
        console.print(
            "[yellow]Note:[/yellow] the question file is sent to every enabled model provider. "
            "Set consensus.privacy.privacy_warning_acknowledged to hide this notice."
        )

    effective_output = Path(output_path) if output_path else config.defaults.output_dir
    enabled = [ref.model_id for ref in settings.models if ref.enabled]
    console.print(
        f"\n[bold cyan]Quiz Consensus[/bold cyan] — {len(question_file.units)} questions, "
        f"{len(enabled)} models, threshold {settings.consensus_threshold:.0%}"
    )
    console.print(f"Models: {', '.join(enabled)}\n")

    try:
        result = asyncio.run(_run(config, settings, question_file))
    except ConsensusConfigError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}. Check API keys in .env or adjust --models.")
        sys.exit(1)

    print_summary(result)
    saved_path = save_to_file(result, effective_output, question_path.stem, slug_override=question_path.stem)
    console.print(f"\n[dim]Saved to: {saved_path}[/dim]")

    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
