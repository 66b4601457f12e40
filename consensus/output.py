"""Rich console output and markdown audit report for consensus results."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from consensus.answers import format_answer
from consensus.models import (
    ConsensusResult,
    PartialConsensusResult,
    QuestionConsensusTrail,
    SourceValidationResult,
)

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _answer_text(trail: QuestionConsensusTrail) -> str:
    if trail.question.answer is None:
        return "(no answer)"
    return format_answer(trail.question.answer)


def _status(trail: QuestionConsensusTrail) -> str:
    if trail.consensus_reached:
        return "consensus"
    if trail.fallback_applied:
        return f"fallback ({trail.fallback_model})"
    reason = trail.termination_reason.value if trail.termination_reason else "no consensus"
    return reason.replace("_", " ")


def print_unit_result(partial: PartialConsensusResult) -> None:
    """Print one finished question as soon as it terminates."""
    trail = partial.trail
    border = "green" if trail.consensus_reached else "yellow"
    body = Text()
    body.append(f"{trail.question.text}\n", style="italic")
    body.append("Answer: ", style="bold")
    body.append(f"{_answer_text(trail)}\n")
    body.append(
        f"Agreement {trail.agreement_percentage:.0%} after {trail.rounds_required} "
        f"round{'s' if trail.rounds_required != 1 else ''}",
        style="dim",
    )
    console.print(
        Panel(
            body,
            title=f"[bold]{partial.unit_index + 1}/{partial.total_units}[/bold] {trail.question.unit_id}",
            subtitle=_status(trail),
            border_style=border,
        )
    )


def _print_source_validation(validation: SourceValidationResult) -> None:
    facts = validation.fact_consensus
    console.print(
        Text(
            f"Source validation: confidence {validation.validation_confidence:.0%} | "
            f"{len(facts.agreed)} agreed, {len(facts.partial)} partial, {len(facts.disagreed)} disputed facts | "
            f"{len(validation.discrepancies)} discrepancies",
            style="dim",
        )
    )
    for discrepancy in validation.discrepancies:
        console.print(f"  [yellow]![/yellow] {discrepancy.source_section[:80]} ({', '.join(discrepancy.models)})")


def print_summary(result: ConsensusResult) -> None:
    """Print the run summary table to the console."""
    audit = result.audit_trail
    title = "[bold green]Consensus Summary[/bold green]" if result.success else "[bold red]Consensus Failed[/bold red]"
    console.print(Rule(title))
    console.print(
        Text(
            f"Duration: {audit.total_duration_sec:.1f}s | "
            f"Models: {', '.join(audit.participating_models) or 'none'}"
            + (f" | Failed: {', '.join(audit.failed_models)}" if audit.failed_models else "")
            + (" | cached" if result.from_cache else ""),
            style="dim",
        )
    )

    if audit.source_validation is not None:
        _print_source_validation(audit.source_validation)

    if audit.question_trails:
        table = Table(show_lines=False)
        table.add_column("Question")
        table.add_column("Answer")
        table.add_column("Agreement", justify="right")
        table.add_column("Rounds", justify="right")
        table.add_column("Status")
        for trail in audit.question_trails:
            table.add_row(
                trail.question.unit_id,
                _answer_text(trail),
                f"{trail.agreement_percentage:.0%}",
                str(trail.rounds_required),
                _status(trail),
            )
        console.print(table)

    for warning in audit.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if not result.success and result.failure_reason is not None:
        console.print(f"[bold red]{result.failure_reason.value}[/bold red]: {result.failure_detail or ''}")


def _trail_lines(index: int, trail: QuestionConsensusTrail) -> list[str]:
    lines = [
        f"## {index}. {trail.question.text}",
        "",
        f"**Answer:** {_answer_text(trail)}",
        f"**Status:** {_status(trail)}",
        f"**Agreement:** {trail.agreement_percentage:.1%}",
        f"**Agreeing models:** {', '.join(trail.agreeing_models) or 'none'}",
        f"**Disagreeing models:** {', '.join(trail.disagreeing_models) or 'none'}",
        "",
    ]
    if trail.question.options:
        lines += ["Options: " + ", ".join(trail.question.options), ""]

    for rnd in trail.rounds:
        round_label = "Initial Answers" if rnd.round_number == 1 else "Re-evaluation"
        lines.append(f"### Round {rnd.round_number}: {round_label}")
        lines.append("")
        lines.append(
            f"*Agreement: {rnd.agreement_fraction:.1%} | Duration: {rnd.duration_sec:.2f}s"
            + (f" | Failed: {', '.join(rnd.failed_models)}" if rnd.failed_models else "")
            + "*"
        )
        lines.append("")
        for resp in rnd.responses:
            changed = " (changed)" if resp.changed else ""
            lines.append(f"- **{resp.model_id}**{changed}: {format_answer(resp.answer)} "
                         f"(confidence {resp.confidence:.2f})")
            if resp.reasoning:
                lines.append(f"  - {resp.reasoning}")
        lines.append("")
    return lines


def save_to_file(
    result: ConsensusResult,
    output_dir: Path,
    title: str,
    slug_override: str | None = None,
) -> Path:
    """Save the full audit trail as a markdown file.

    Args:
        result: The completed ConsensusResult.
        output_dir: Directory to save the file in.
        title: Report title, usually the question file name.
        slug_override: If provided, use this as the filename stem instead of
            deriving one from the title.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = slug_override if slug_override is not None else _slug(title)
    filepath = output_dir / f"{timestamp}_{slug}.md"

    audit = result.audit_trail
    lines: list[str] = [
        f"# Consensus Report: {title[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Result:** {'success' if result.success else 'failed'}",
        f"**Participating models:** {', '.join(audit.participating_models) or 'none'}",
        f"**Failed models:** {', '.join(audit.failed_models) or 'none'}",
        f"**Duration:** {audit.total_duration_sec:.1f}s",
    ]
    if result.failure_reason is not None:
        lines.append(f"**Failure reason:** {result.failure_reason.value}")
        if result.failure_detail:
            lines.append(f"**Details:** {result.failure_detail}")
    if audit.fallback is not None:
        lines.append(
            f"**Fallback:** initial answers used for "
            f"{', '.join(f'{unit_id} ({model_id})' for unit_id, model_id in audit.fallback.unit_models)} "
            f"({audit.fallback.reason.value})"
        )
    lines += ["", "---", ""]

    if audit.source_validation is not None:
        validation = audit.source_validation
        lines += [
            "## Source Validation",
            "",
            f"**Confidence:** {validation.validation_confidence:.1%}",
            "",
        ]
        for fact in validation.fact_consensus.agreed + validation.fact_consensus.partial:
            lines.append(f"- [{fact.status.value}] {fact.fact} ({', '.join(fact.agreeing_models)})")
        for fact in validation.fact_consensus.disagreed:
            lines.append(f"- [disagreed] {fact.fact} (only {', '.join(fact.agreeing_models)})")
        for discrepancy in validation.discrepancies:
            lines.append(f"- **Discrepancy** in \"{discrepancy.source_section}\": "
                         + "; ".join(discrepancy.interpretations))
        lines.append("")

    for index, trail in enumerate(audit.question_trails, start=1):
        lines += _trail_lines(index, trail)

    if audit.warnings:
        lines += ["## Warnings", ""] + [f"- {w}" for w in audit.warnings] + [""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Consensus report saved to: %s", filepath)
    return filepath
