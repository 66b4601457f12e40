"""Per-unit consensus rounds: evaluate, anonymize, redistribute, re-evaluate."""

import asyncio
import logging
import random
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from enum import Enum

from config.config_loader import ConsensusSettings
from consensus.agreement import AgreementOutcome, evaluate
from consensus.answers import Answer, answer_key
from consensus.cancellation import CancellationToken
from consensus.models import (
    AnonymizedAnswer,
    Candidate,
    ConsensusFailureReason,
    ConsensusRound,
    ModelConsensusResponse,
    ModelErrorCallback,
    OutputUnit,
    Question,
    QuestionConsensusTrail,
    ReEvaluationRequest,
)
from consensus.participant import ParticipantAdapter
from consensus.similarity import SimilarityStrategy

logger = logging.getLogger(__name__)

RoundCallback = Callable[[OutputUnit, ConsensusRound], None]


class UnitState(str, Enum):
    AWAITING_INITIAL = "awaiting_initial"
    EVALUATING = "evaluating"
    ITERATING = "iterating"
    REACHED = "reached"
    EXHAUSTED = "exhausted"


class AnswerTokenIssuer:
    """Issues opaque answer tokens that are never repeated within a run."""

    def __init__(self) -> None:
        self._used: set[str] = set()

    def issue(self) -> str:
        while True:
            token = uuid.uuid4().hex[:12]
            if token not in self._used:
                self._used.add(token)
                return token


def _answer_state(responses: Sequence[ModelConsensusResponse]) -> frozenset:
    return frozenset((r.model_id, answer_key(r.answer)) for r in responses)


class RoundOrchestrator:
    """Drives one output unit from its initial answers to a terminal trail.

    The orchestrator owns its unit's rounds exclusively and returns a frozen
    QuestionConsensusTrail; nothing else writes to it.
    """

    def __init__(
        self,
        unit: OutputUnit,
        participants: Sequence[ParticipantAdapter],
        initial_answers: Mapping[str, Candidate],
        settings: ConsensusSettings,
        tokens: AnswerTokenIssuer,
        similarity: SimilarityStrategy | None = None,
        source_text: str | None = None,
        cancel: CancellationToken | None = None,
        on_model_error: ModelErrorCallback | None = None,
        on_round: RoundCallback | None = None,
    ) -> None:
        self.unit = unit
        self.state = UnitState.AWAITING_INITIAL
        self._participants = sorted(participants, key=lambda p: p.model_id)
        self._initial_answers = dict(initial_answers)
        self._settings = settings
        self._tokens = tokens
        self._similarity = similarity
        self._source_text = source_text
        self._cancel = cancel or CancellationToken()
        self._on_model_error = on_model_error
        self._on_round = on_round
        self._weights = {p.model_id: p.weight for p in self._participants}
        self._rounds: list[ConsensusRound] = []
        self._latest: dict[str, ModelConsensusResponse] = {}

    async def run(self) -> QuestionConsensusTrail:
        """Run rounds until consensus is reached or the unit is exhausted.

        Raises:
            ConsensusCancelled: If the run's cancellation token fires.
        """
        round_number = 1
        round_start = time.monotonic()
        responses = [
            ModelConsensusResponse(
                model_id=p.model_id,
                answer=self._initial_answers[p.model_id].answer,
                reasoning=self._initial_answers[p.model_id].reasoning,
                confidence=self._initial_answers[p.model_id].confidence,
                changed=False,
            )
            for p in self._participants
            if p.model_id in self._initial_answers
        ]
        failed = [p.model_id for p in self._participants if p.model_id not in self._initial_answers]
        history: list[frozenset] = []
        last_answer: Answer | None = None

        while True:
            self.state = UnitState.EVALUATING
            outcome = evaluate(responses, self._weights, self._settings.consensus_threshold, self._similarity)
            if outcome.dominant_answer is not None:
                last_answer = outcome.dominant_answer
            for response in responses:
                self._latest[response.model_id] = response

            consensus_round = ConsensusRound(
                round_number=round_number,
                responses=tuple(responses),
                consensus_reached=outcome.reached,
                duration_sec=time.monotonic() - round_start,
                agreement_fraction=outcome.agreement_fraction,
                failed_models=tuple(failed),
            )
            self._rounds.append(consensus_round)
            logger.info(
                "Unit %s round %d: %d answers, agreement %.2f (%s)",
                self.unit.unit_id, round_number, len(responses), outcome.agreement_fraction,
                "reached" if outcome.reached else "not reached",
            )
            if self._on_round is not None:
                self._on_round(self.unit, consensus_round)

            reason = self._termination_reason(outcome, responses, history, round_number)
            if outcome.reached or reason is not None:
                self.state = UnitState.REACHED if outcome.reached else UnitState.EXHAUSTED
                return self._build_trail(outcome, last_answer, reason)

            self._cancel.raise_if_cancelled()
            self.state = UnitState.ITERATING
            round_number += 1
            round_start = time.monotonic()
            responses, failed = await self._run_round(round_number, responses)

    def _termination_reason(
        self,
        outcome: AgreementOutcome,
        responses: list[ModelConsensusResponse],
        history: list[frozenset],
        round_number: int,
    ) -> ConsensusFailureReason | None:
        if outcome.reached:
            return None
        if outcome.no_usable_answers and round_number == 1:
            return ConsensusFailureReason.ALL_MODELS_FAILED

        if responses:
            state = _answer_state(responses)
            stagnant = bool(history) and state == history[-1]
            oscillating = len(history) >= 2 and state == history[-2] and state != history[-1]
            history.append(state)
            if stagnant or oscillating:
                logger.info(
                    "Unit %s: circular reasoning detected in round %d (%s)",
                    self.unit.unit_id, round_number, "no answer changed" if stagnant else "answers oscillate",
                )
                return ConsensusFailureReason.CIRCULAR_REASONING
        else:
            history.append(frozenset())

        if round_number >= self._settings.max_iterations:
            return ConsensusFailureReason.MAX_ITERATIONS_EXCEEDED
        return None

    def _build_request(self, participant: ParticipantAdapter, round_number: int) -> ReEvaluationRequest:
        own = self._latest[participant.model_id]
        others = [r for model_id, r in sorted(self._latest.items()) if model_id != participant.model_id]
        random.shuffle(others)
        token_map: dict[str, str] = {}
        alternatives: list[AnonymizedAnswer] = []
        for response in others:
            token = self._tokens.issue()
            token_map[token] = response.model_id
            alternatives.append(
                AnonymizedAnswer(
                    answer_id=token,
                    answer=response.answer,
                    reasoning=response.reasoning,
                    confidence=response.confidence,
                )
            )
        logger.debug(
            "Unit %s round %d anonymization map for %s: %s",
            self.unit.unit_id, round_number, participant.model_id, token_map,
        )
        return ReEvaluationRequest(
            unit=self.unit,
            original_answer=own.answer,
            alternative_answers=tuple(alternatives),
            round_number=round_number,
        )

    def _report_failure(self, model_id: str, message: str) -> None:
        logger.warning("Participant %s dropped from unit %s this round: %s", model_id, self.unit.unit_id, message)
        if self._on_model_error is not None:
            self._on_model_error(model_id, message, "error", False)

    async def _ask(
        self,
        participant: ParticipantAdapter,
        round_number: int,
        previous: Mapping[str, Answer],
    ) -> ModelConsensusResponse | None:
        timeout = self._settings.call_timeout_sec
        try:
            if participant.model_id not in self._latest:
                # never answered this unit: give it another chance at a first answer
                candidate = await asyncio.wait_for(
                    participant.generate(self.unit, self._source_text), timeout=timeout
                )
                return ModelConsensusResponse(
                    model_id=participant.model_id,
                    answer=candidate.answer,
                    reasoning=candidate.reasoning,
                    confidence=candidate.confidence,
                    changed=False,
                )
            request = self._build_request(participant, round_number)
            response = await asyncio.wait_for(participant.re_evaluate(request), timeout=timeout)
        except TimeoutError:
            self._report_failure(participant.model_id, f"Call timed out after {timeout}s")
            return None
        except Exception as exc:
            self._report_failure(participant.model_id, str(exc))
            return None

        if not response.success:
            self._report_failure(participant.model_id, response.error or "Re-evaluation failed")
            return None

        prior = previous.get(participant.model_id)
        return ModelConsensusResponse(
            model_id=participant.model_id,
            answer=response.answer,
            reasoning=response.reasoning,
            confidence=response.confidence,
            changed=prior is not None and answer_key(prior) != answer_key(response.answer),
            previous_answer=prior,
        )

    async def _run_round(
        self,
        round_number: int,
        previous_responses: list[ModelConsensusResponse],
    ) -> tuple[list[ModelConsensusResponse], list[str]]:
        previous = {r.model_id: r.answer for r in previous_responses}
        logger.info(
            "Unit %s: starting round %d with %d participants",
            self.unit.unit_id, round_number, len(self._participants),
        )
        results = await self._cancel.guard(
            asyncio.gather(*(self._ask(p, round_number, previous) for p in self._participants))
        )
        responses = [r for r in results if r is not None]
        answered = {r.model_id for r in responses}
        failed = [p.model_id for p in self._participants if p.model_id not in answered]
        return responses, failed

    def _build_trail(
        self,
        outcome: AgreementOutcome,
        answer: Answer | None,
        reason: ConsensusFailureReason | None,
    ) -> QuestionConsensusTrail:
        question = Question(
            unit_id=self.unit.unit_id,
            text=self.unit.text,
            kind=self.unit.kind,
            options=self.unit.options,
            answer=answer,
        )
        return QuestionConsensusTrail(
            question=question,
            rounds_required=len(self._rounds),
            rounds=tuple(self._rounds),
            consensus_reached=outcome.reached,
            agreement_percentage=outcome.agreement_fraction,
            agreeing_models=outcome.agreeing_ids,
            disagreeing_models=outcome.disagreeing_ids,
            termination_reason=reason,
        )
