"""Pure dataclasses for the consensus pipeline. No logic, no deps.

Records are frozen: a round or trail is built once and never mutated after
it has been handed to another component.
"""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from consensus.answers import Answer, AnswerKind


class ConsensusPhase(str, Enum):
    SOURCE_VALIDATION = "source_validation"
    INITIAL_GENERATION = "initial_generation"
    CONSENSUS_BUILDING = "consensus_building"
    FINALIZATION = "finalization"


class ConsensusFailureReason(str, Enum):
    INSUFFICIENT_MODELS = "insufficient_models"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    CIRCULAR_REASONING = "circular_reasoning"
    ALL_MODELS_FAILED = "all_models_failed"
    VALIDATION_FAILURE = "validation_failure"


class FactStatus(str, Enum):
    AGREED = "agreed"
    PARTIAL = "partial"
    DISAGREED = "disagreed"


@dataclass(frozen=True)
class ProviderReply:
    provider: str          # registry name, e.g. "claude"
    model: str             # actual model string used
    content: str
    latency_sec: float
    token_count: int | None


@dataclass(frozen=True)
class OutputUnit:
    unit_id: str
    text: str
    kind: AnswerKind = AnswerKind.SCALAR
    options: tuple[str, ...] = ()


@dataclass(frozen=True)
class Question:
    unit_id: str
    text: str
    kind: AnswerKind
    options: tuple[str, ...]
    answer: Answer | None   # None only when no participant ever answered


@dataclass(frozen=True)
class Candidate:
    answer: Answer
    reasoning: str
    confidence: float


@dataclass(frozen=True)
class ModelConsensusResponse:
    model_id: str
    answer: Answer
    reasoning: str
    confidence: float
    changed: bool
    previous_answer: Answer | None = None


@dataclass(frozen=True)
class ConsensusRound:
    round_number: int
    responses: tuple[ModelConsensusResponse, ...]
    consensus_reached: bool
    duration_sec: float
    agreement_fraction: float = 0.0
    failed_models: tuple[str, ...] = ()


@dataclass(frozen=True)
class QuestionConsensusTrail:
    question: Question
    rounds_required: int
    rounds: tuple[ConsensusRound, ...]
    consensus_reached: bool
    agreement_percentage: float    # weighted fraction in [0, 1]
    agreeing_models: tuple[str, ...]
    disagreeing_models: tuple[str, ...]
    termination_reason: ConsensusFailureReason | None = None
    fallback_applied: bool = False
    fallback_model: str | None = None


@dataclass(frozen=True)
class AnonymizedAnswer:
    answer_id: str
    answer: Answer
    reasoning: str
    confidence: float


@dataclass(frozen=True)
class ReEvaluationRequest:
    unit: OutputUnit
    original_answer: Answer
    alternative_answers: tuple[AnonymizedAnswer, ...]
    round_number: int


@dataclass(frozen=True)
class ReEvaluationResponse:
    model_id: str
    answer: Answer
    reasoning: str
    confidence: float
    changed: bool
    previous_answer: Answer
    success: bool = True
    error: str | None = None
    raw_response: str = ""


@dataclass(frozen=True)
class Citation:
    start: int             # inclusive
    end: int               # exclusive
    text: str
    supports_fact: str = ""


@dataclass(frozen=True)
class FlaggedConflict:
    source_section: str
    interpretation: str


@dataclass(frozen=True)
class FactExtraction:
    model_id: str
    facts: tuple[str, ...]
    citations: tuple[Citation, ...] = ()
    confidence: float = 0.5
    conflicts: tuple[FlaggedConflict, ...] = ()


@dataclass(frozen=True)
class ConsensusFact:
    fact: str
    status: FactStatus
    agreeing_models: tuple[str, ...]
    disagreeing_models: tuple[str, ...]
    agreement_fraction: float


@dataclass(frozen=True)
class FactConsensus:
    agreed: tuple[ConsensusFact, ...] = ()
    partial: tuple[ConsensusFact, ...] = ()
    disagreed: tuple[ConsensusFact, ...] = ()


@dataclass(frozen=True)
class SourceDiscrepancy:
    source_section: str
    models: tuple[str, ...]
    interpretations: tuple[str, ...]


@dataclass(frozen=True)
class SourceValidationResult:
    source_content: str
    extractions: tuple[FactExtraction, ...]
    fact_consensus: FactConsensus
    discrepancies: tuple[SourceDiscrepancy, ...]
    validation_confidence: float


@dataclass(frozen=True)
class FallbackRecord:
    """Which model's initial answer replaced each unresolved unit."""

    reason: ConsensusFailureReason
    # (unit_id, model_id) in unit order
    unit_models: tuple[tuple[str, str], ...]

    @property
    def unit_ids(self) -> tuple[str, ...]:
        return tuple(unit_id for unit_id, _ in self.unit_models)

    @property
    def model_ids(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(model_id for _, model_id in self.unit_models))


@dataclass(frozen=True)
class ConsensusAuditTrail:
    total_duration_sec: float
    question_trails: tuple[QuestionConsensusTrail, ...]
    source_validation: SourceValidationResult | None
    participating_models: tuple[str, ...]
    failed_models: tuple[str, ...]
    fallback: FallbackRecord | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class Quiz:
    questions: tuple[Question, ...] = ()


@dataclass(frozen=True)
class ConsensusResult:
    quiz: Quiz
    audit_trail: ConsensusAuditTrail
    success: bool
    failure_reason: ConsensusFailureReason | None = None
    failure_detail: str | None = None
    from_cache: bool = False


@dataclass(frozen=True)
class ConsensusProgress:
    phase: ConsensusPhase
    phase_progress: float
    overall_progress: float
    status_message: str
    current_round: int | None = None
    units_completed: int = 0
    total_units: int = 0


@dataclass(frozen=True)
class PartialConsensusResult:
    trail: QuestionConsensusTrail
    unit_index: int
    total_units: int


ProgressCallback = Callable[[ConsensusProgress], None]
PartialResultCallback = Callable[[PartialConsensusResult], None]
# (model_id, message, severity, retry); severity is "warning" or "error"
ModelErrorCallback = Callable[[str, str, str, bool], None]
