"""Shared pytest fixtures."""

import asyncio
from dataclasses import replace
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    ConsensusSettings,
    DefaultsConfig,
    ModelConfig,
    ModelReference,
    PromptsConfig,
)
from consensus.answers import AnswerKind, answer_key, parse_answer
from consensus.models import (
    Candidate,
    FactExtraction,
    FlaggedConflict,
    OutputUnit,
    ProviderReply,
    ReEvaluationRequest,
    ReEvaluationResponse,
)
from consensus.participant import ParticipantAdapter
from consensus.providers.base import AIProvider, ProviderError

# script entries understood by ScriptedParticipant
FAIL = object()   # raise ProviderError / return success=False
HANG = object()   # never answer (exceeds any call timeout)


def make_settings(*model_ids: str, **overrides) -> ConsensusSettings:
    """Consensus settings for fast offline runs."""
    settings = ConsensusSettings(
        models=[ModelReference(m) for m in model_ids],
        enable_source_validation=False,
        enable_caching=False,
        call_timeout_sec=0.2,
    )
    return replace(settings, **overrides)


class ScriptedParticipant(ParticipantAdapter):
    """Participant double whose answers follow a per-unit script.

    Entry i of a unit's script answers the i-th round for that unit: entry 0
    is the initial generation, entry 1 the round-2 re-evaluation and so on.
    The last entry repeats once the script runs out. The "*" script applies
    to every unit without its own.
    """

    def __init__(
        self,
        model_id: str,
        scripts: dict[str, list],
        weight: float = 1.0,
        confidence: float = 0.8,
        facts: tuple[str, ...] = (),
        conflicts: tuple[FlaggedConflict, ...] = (),
        extract_error: Exception | None = None,
    ) -> None:
        super().__init__(ModelReference(model_id, weight=weight))
        self._scripts = scripts
        self._confidence = confidence
        self._facts = facts
        self._conflicts = conflicts
        self._extract_error = extract_error
        self._generate_counts: dict[str, int] = {}
        self.generate_calls: list[OutputUnit] = []
        self.requests: list[ReEvaluationRequest] = []
        self.extract_calls = 0

    def _entry(self, unit_id: str, index: int):
        script = self._scripts.get(unit_id, self._scripts.get("*"))
        if not script:
            return FAIL
        return script[min(index, len(script) - 1)]

    async def generate(self, unit: OutputUnit, source_text: str | None = None) -> Candidate:
        self.generate_calls.append(unit)
        index = self._generate_counts.get(unit.unit_id, 0)
        self._generate_counts[unit.unit_id] = index + 1
        entry = self._entry(unit.unit_id, index)
        if entry is HANG:
            await asyncio.sleep(3600)
        if entry is FAIL:
            raise ProviderError(self.model_id, "scripted failure")
        return Candidate(parse_answer(unit.kind, entry), f"{self.model_id} thinks {entry}", self._confidence)

    async def extract_facts(self, source_text: str) -> FactExtraction:
        self.extract_calls += 1
        if self._extract_error is not None:
            raise self._extract_error
        return FactExtraction(
            model_id=self.model_id,
            facts=self._facts,
            confidence=0.9,
            conflicts=self._conflicts,
        )

    async def re_evaluate(self, request: ReEvaluationRequest) -> ReEvaluationResponse:
        self.requests.append(request)
        entry = self._entry(request.unit.unit_id, request.round_number - 1)
        if entry is HANG:
            await asyncio.sleep(3600)
        if entry is FAIL:
            return ReEvaluationResponse(
                model_id=self.model_id,
                answer=request.original_answer,
                reasoning="",
                confidence=0.0,
                changed=False,
                previous_answer=request.original_answer,
                success=False,
                error="scripted failure",
            )
        answer = parse_answer(request.unit.kind, entry)
        return ReEvaluationResponse(
            model_id=self.model_id,
            answer=answer,
            reasoning=f"{self.model_id} now thinks {entry}",
            confidence=self._confidence,
            changed=answer_key(answer) != answer_key(request.original_answer),
            previous_answer=request.original_answer,
        )


@pytest.fixture
def capital_unit() -> OutputUnit:
    return OutputUnit(unit_id="capital", text="What is the capital of France?")


@pytest.fixture
def rivers_unit() -> OutputUnit:
    return OutputUnit(
        unit_id="rivers",
        text="Which rivers flow through Paris?",
        kind=AnswerKind.MULTI_SELECT,
        options=("Seine", "Loire", "Bievre"),
    )


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="test",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        generate="Q ({kind}): {question}\n{options}\nSource: {source}\nReply as JSON.",
        re_evaluate=(
            "Round {round}. Q ({kind}): {question}\n{options}\n"
            "Yours: {original_answer}\nOthers:\n{alternatives}\nReply as JSON."
        ),
        extract_facts="Extract facts as JSON from: {source}",
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(output_dir=tmp_path / "output", cache_file=tmp_path / "cache.pkl")


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    models = {
        "claude": ModelConfig(
            name="claude",
            sdk="anthropic",
            model="claude-sonnet-4-5",
            api_key_env="ANTHROPIC_API_KEY",
            timeout_sec=60,
            max_tokens=2048,
        ),
        "openai": ModelConfig(
            name="openai",
            sdk="openai",
            model="gpt-4.1",
            api_key_env="OPENAI_API_KEY",
            timeout_sec=60,
            max_tokens=2048,
        ),
    }
    return AppConfig(
        defaults=sample_defaults_config,
        models=models,
        consensus=ConsensusSettings(models=[ModelReference("claude"), ModelReference("openai", weight=2.0)]),
        prompts=sample_prompts_config,
        available_providers={"claude", "openai"},
    )


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(
        self,
        provider_name: str = "mock",
        response_content: str = '{"answer": "Paris"}',
        timeout_sec: float = 30,
    ) -> None:
        super().__init__(
            ModelConfig(
                name=provider_name,
                sdk="mock",
                model="mock-model",
                api_key_env="",
                timeout_sec=timeout_sec,
                max_tokens=1024,
            )
        )
        self._response_content = response_content
        # Shadow the class method with an AsyncMock at the instance level.
        self.generate = AsyncMock(  # type: ignore[assignment]
            return_value=ProviderReply(
                provider=provider_name,
                model="mock-model",
                content=response_content,
                latency_sec=0.1,
                token_count=10,
            )
        )

    async def _complete(self, prompt: str) -> tuple[str, int | None]:
        return self._response_content, 10


def reply(content: str, provider: str = "mock") -> ProviderReply:
    return ProviderReply(provider=provider, model="mock-model", content=content, latency_sec=0.1, token_count=10)


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()
