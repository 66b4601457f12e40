"""Assemble the final audit trail and result from finished unit trails."""

from collections.abc import Iterable, Sequence
from dataclasses import replace

from consensus.answers import Answer
from consensus.models import (
    ConsensusAuditTrail,
    ConsensusFailureReason,
    ConsensusResult,
    FallbackRecord,
    QuestionConsensusTrail,
    Quiz,
    SourceValidationResult,
)


def apply_fallback(trail: QuestionConsensusTrail, answer: Answer, model_id: str) -> QuestionConsensusTrail:
    """Substitute a single model's answer; the trail keeps consensus_reached=False."""
    return replace(
        trail,
        question=replace(trail.question, answer=answer),
        fallback_applied=True,
        fallback_model=model_id,
    )


def partition_models(
    configured: Sequence[str],
    trails: Iterable[QuestionConsensusTrail],
    initial_successes: Iterable[str] = (),
) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Split configured models into (participating, failed).

    A model participates if it produced a usable answer anywhere in the run.
    """
    answered = set(initial_successes)
    for trail in trails:
        for consensus_round in trail.rounds:
            answered.update(r.model_id for r in consensus_round.responses)
    participating = tuple(m for m in configured if m in answered)
    failed = tuple(m for m in configured if m not in answered)
    return participating, failed


def build_audit_trail(
    total_duration_sec: float,
    trails: Sequence[QuestionConsensusTrail],
    source_validation: SourceValidationResult | None,
    configured_models: Sequence[str],
    initial_successes: Iterable[str] = (),
    fallback: FallbackRecord | None = None,
    warnings: Sequence[str] = (),
) -> ConsensusAuditTrail:
    participating, failed = partition_models(configured_models, trails, initial_successes)
    return ConsensusAuditTrail(
        total_duration_sec=total_duration_sec,
        question_trails=tuple(trails),
        source_validation=source_validation,
        participating_models=participating,
        failed_models=failed,
        fallback=fallback,
        warnings=tuple(warnings),
    )


def build_result(
    audit_trail: ConsensusAuditTrail,
    success: bool,
    failure_reason: ConsensusFailureReason | None = None,
    failure_detail: str | None = None,
) -> ConsensusResult:
    """Build the result; the quiz lists the questions in unit order.

    Raises:
        ValueError: If failure_reason is set on success or missing on failure.
    """
    if success == (failure_reason is not None):
        raise ValueError("failure_reason must be set exactly when success is False")
    quiz = Quiz(questions=tuple(t.question for t in audit_trail.question_trails))
    return ConsensusResult(
        quiz=quiz,
        audit_trail=audit_trail,
        success=success,
        failure_reason=failure_reason,
        failure_detail=failure_detail,
    )
