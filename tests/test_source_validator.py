"""Tests for consensus/source_validator.py."""

import pytest

from consensus.errors import SourceValidationError
from consensus.models import FactStatus, FlaggedConflict
from consensus.providers.base import ProviderError
from consensus.source_validator import SourceValidator
from tests.conftest import ScriptedParticipant

SOURCE = "Paris is the capital of France. The Eiffel Tower was completed in 1889."


def _extractor(model_id: str, *facts: str, conflicts=(), weight: float = 1.0) -> ScriptedParticipant:
    return ScriptedParticipant(model_id, {}, weight=weight, facts=facts, conflicts=conflicts)


async def test_facts_are_classified_by_how_many_models_report_them():
    participants = [
        _extractor("claude", "Paris is the capital of France", "The Eiffel Tower was completed in 1889",
                   "Paris has two airports"),
        _extractor("gemini", "The capital of France is Paris", "The Eiffel Tower was completed in 1889"),
        _extractor("openai", "Paris is the capital of France."),
    ]

    result = await SourceValidator().validate(SOURCE, participants)

    consensus = result.fact_consensus
    assert [f.fact for f in consensus.agreed] == ["Paris is the capital of France"]
    assert consensus.agreed[0].agreeing_models == ("claude", "gemini", "openai")
    assert [f.fact for f in consensus.partial] == ["The Eiffel Tower was completed in 1889"]
    assert consensus.partial[0].disagreeing_models == ("openai",)
    assert consensus.partial[0].status is FactStatus.PARTIAL
    assert [f.fact for f in consensus.disagreed] == ["Paris has two airports"]
    assert consensus.disagreed[0].agreement_fraction == pytest.approx(1 / 3)


async def test_confidence_is_agreed_weight_over_all_fact_weight():
    participants = [
        _extractor("claude", "Paris is the capital of France", "The Eiffel Tower was completed in 1889"),
        _extractor("openai", "Paris is the capital of France"),
    ]

    result = await SourceValidator().validate(SOURCE, participants)

    # agreed cluster weight 2, lone fact weight 1
    assert result.validation_confidence == pytest.approx(2 / 3)


async def test_different_numbers_are_different_facts():
    participants = [
        _extractor("claude", "The Eiffel Tower was completed in 1889"),
        _extractor("openai", "The Eiffel Tower was completed in 1887"),
    ]

    result = await SourceValidator().validate(SOURCE, participants)

    assert not result.fact_consensus.agreed
    assert len(result.fact_consensus.disagreed) == 2
    assert result.validation_confidence == 0.0


async def test_repeated_fact_from_one_model_counts_once():
    participants = [
        _extractor("claude", "Paris is the capital of France", "Paris is the capital of France."),
        _extractor("openai", "Paris is the capital of France"),
    ]

    result = await SourceValidator().validate(SOURCE, participants)

    assert len(result.fact_consensus.agreed) == 1
    assert result.fact_consensus.agreed[0].agreement_fraction == pytest.approx(1.0)


async def test_discrepancy_needs_two_models():
    shared = "The tower was finished in 1889 or 1887"
    participants = [
        _extractor("claude", "x", conflicts=(FlaggedConflict(shared, "date unclear"),)),
        _extractor("gemini", "x", conflicts=(FlaggedConflict(shared.upper(), "two dates"),)),
        _extractor("openai", "x", conflicts=(FlaggedConflict("Paris has two airports", "count unclear"),)),
    ]

    result = await SourceValidator().validate(SOURCE, participants)

    assert len(result.discrepancies) == 1
    discrepancy = result.discrepancies[0]
    assert discrepancy.models == ("claude", "gemini")
    assert discrepancy.source_section == shared
    assert discrepancy.interpretations == ("date unclear", "two dates")


async def test_failed_extractor_is_skipped_and_reported():
    errors = []
    participants = [
        _extractor("claude", "Paris is the capital of France"),
        ScriptedParticipant("gemini", {}, extract_error=ProviderError("gemini", "Connection reset")),
        _extractor("openai", "Paris is the capital of France"),
    ]

    result = await SourceValidator(on_model_error=lambda *args: errors.append(args)).validate(SOURCE, participants)

    assert [e.model_id for e in result.extractions] == ["claude", "openai"]
    assert result.fact_consensus.agreed[0].agreeing_models == ("claude", "openai")
    assert errors[0][0] == "gemini"
    assert errors[0][2] == "error"


async def test_all_extractors_failing_raises():
    participants = [
        ScriptedParticipant(m, {}, extract_error=ProviderError(m, "Service unavailable (503)"))
        for m in ("claude", "openai")
    ]

    with pytest.raises(SourceValidationError, match="All 2 participants"):
        await SourceValidator().validate(SOURCE, participants)


async def test_result_does_not_depend_on_participant_order():
    participants = [
        _extractor("claude", "Paris is the capital of France"),
        _extractor("openai", "The capital of France is Paris", "Paris has two airports"),
    ]

    forward = await SourceValidator().validate(SOURCE, participants)
    backward = await SourceValidator().validate(SOURCE, list(reversed(participants)))

    assert forward == backward
