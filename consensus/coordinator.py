"""Consensus run sequencing: source validation, initial generation, per-unit rounds, finalization."""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextvars import ContextVar
from dataclasses import replace

from config.config_loader import (
    ConfigErrorKind,
    ConsensusConfigError,
    ConsensusSettings,
    validate_consensus_settings,
)
from consensus.audit import apply_fallback, build_audit_trail, build_result
from consensus.cache import ConsensusCache
from consensus.cancellation import CancellationToken
from consensus.errors import SourceValidationError
from consensus.models import (
    Candidate,
    ConsensusFailureReason,
    ConsensusPhase,
    ConsensusProgress,
    ConsensusResult,
    ConsensusRound,
    FallbackRecord,
    ModelErrorCallback,
    OutputUnit,
    PartialConsensusResult,
    PartialResultCallback,
    ProgressCallback,
    QuestionConsensusTrail,
    SourceValidationResult,
)
from consensus.participant import ParticipantAdapter
from consensus.rounds import AnswerTokenIssuer, RoundOrchestrator
from consensus.similarity import FactOverlapSimilarity, SequenceSimilarity, SimilarityStrategy
from consensus.source_validator import SourceValidator

logger = logging.getLogger(__name__)

# each phase owns a quarter of overall progress
_PHASE_BANDS: dict[ConsensusPhase, float] = {
    ConsensusPhase.SOURCE_VALIDATION: 0.0,
    ConsensusPhase.INITIAL_GENERATION: 0.25,
    ConsensusPhase.CONSENSUS_BUILDING: 0.5,
    ConsensusPhase.FINALIZATION: 0.75,
}
_PHASE_WIDTH = 0.25
_EPSILON = 1e-9

StreamEvent = ConsensusProgress | PartialConsensusResult | ConsensusResult

_STREAM_DONE = object()

# set per stream() call; the run task copies the context it was created in
_stream_listener: ContextVar[Callable[[StreamEvent], None] | None] = ContextVar("stream_listener", default=None)


class ConsensusCoordinator:
    """Runs multi-model consensus over a list of output units.

    Args:
        settings: Consensus settings; validated against the participants' references.
        participants: One adapter per configured model. Disabled adapters are skipped.
        on_progress: Called on every phase and round transition.
        on_partial_result: Called once per unit, as soon as that unit terminates.
        on_model_error: Called on every participant-level failure.
        cache: Optional result cache, consulted when settings.enable_caching is set.
        answer_similarity: Clustering strategy for free-text answers.
        fact_similarity: Clustering strategy for extracted facts.

    Raises:
        ConsensusConfigError: If consensus is disabled or the settings are invalid.
    """

    def __init__(
        self,
        settings: ConsensusSettings,
        participants: Sequence[ParticipantAdapter],
        on_progress: ProgressCallback | None = None,
        on_partial_result: PartialResultCallback | None = None,
        on_model_error: ModelErrorCallback | None = None,
        cache: ConsensusCache | None = None,
        answer_similarity: SimilarityStrategy | None = None,
        fact_similarity: SimilarityStrategy | None = None,
    ) -> None:
        if not settings.enabled:
            raise ConsensusConfigError(
                ConfigErrorKind.CONSENSUS_DISABLED,
                "Consensus mode is disabled. Set consensus.enabled to true to run multi-model consensus.",
            )
        validate_consensus_settings(replace(settings, models=[p.reference for p in participants]))
        self._settings = settings
        self._participants = tuple(participants)
        self._on_progress = on_progress
        self._on_partial_result = on_partial_result
        self._on_model_error = on_model_error
        self._cache = cache
        self._answer_similarity = answer_similarity or SequenceSimilarity()
        self._fact_similarity = fact_similarity or FactOverlapSimilarity()

    # --- event emission -------------------------------------------------

    def _emit(self, event: StreamEvent) -> None:
        listener = _stream_listener.get()
        if listener is not None:
            listener(event)

    def _progress(
        self,
        phase: ConsensusPhase,
        phase_progress: float,
        message: str,
        current_round: int | None = None,
        units_completed: int = 0,
        total_units: int = 0,
    ) -> None:
        phase_progress = min(1.0, max(0.0, phase_progress))
        progress = ConsensusProgress(
            phase=phase,
            phase_progress=phase_progress,
            overall_progress=_PHASE_BANDS[phase] + phase_progress * _PHASE_WIDTH,
            status_message=message,
            current_round=current_round,
            units_completed=units_completed,
            total_units=total_units,
        )
        if self._on_progress is not None:
            self._on_progress(progress)
        self._emit(progress)

    def _partial(self, partial: PartialConsensusResult) -> None:
        if self._on_partial_result is not None:
            self._on_partial_result(partial)
        self._emit(partial)

    def _model_error(self, model_id: str, message: str, severity: str, retry: bool) -> None:
        if self._on_model_error is not None:
            self._on_model_error(model_id, message, severity, retry)

    # --- public API -----------------------------------------------------

    async def run(
        self,
        units: Sequence[OutputUnit],
        source_text: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> ConsensusResult:
        """Run all four phases and return the final result.

        Raises:
            ValueError: If ``units`` is empty.
            ConsensusCancelled: If ``cancel`` fires; no partial result is returned.
        """
        units = tuple(units)
        if not units:
            raise ValueError("At least one output unit is required")
        cancel = cancel or CancellationToken()
        # participant set is fixed for the whole run
        participants = tuple(sorted((p for p in self._participants if p.enabled), key=lambda p: p.model_id))
        configured = [p.model_id for p in participants]
        start = time.monotonic()
        total_units = len(units)

        cache_key: str | None = None
        if self._cache is not None and self._settings.enable_caching:
            cache_key = self._cache.make_key(units, source_text, self._settings, [p.reference for p in participants])
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.info("Consensus result served from cache")
                self._progress(ConsensusPhase.FINALIZATION, 1.0, "Loaded cached consensus result",
                               units_completed=total_units, total_units=total_units)
                return replace(cached, from_cache=True)

        warnings: list[str] = []

        # Phase 1: source validation
        source_validation: SourceValidationResult | None = None
        if self._settings.enable_source_validation and source_text:
            cancel.raise_if_cancelled()
            self._progress(ConsensusPhase.SOURCE_VALIDATION, 0.0,
                           f"Validating source material with {len(participants)} models...", total_units=total_units)
            validator = SourceValidator(
                similarity=self._fact_similarity,
                call_timeout_sec=self._settings.call_timeout_sec,
                on_model_error=self._model_error,
            )
            try:
                source_validation = await validator.validate(source_text, participants, cancel)
            except SourceValidationError as exc:
                if self._settings.require_source_validation:
                    logger.error("Source validation failed and is required: %s", exc)
                    return self._aborted(
                        start, configured, (), ConsensusFailureReason.VALIDATION_FAILURE,
                        f"Source validation phase: {exc}", warnings,
                    )
                message = f"Source validation failed, continuing with generation: {exc}"
                logger.warning("%s", message)
                warnings.append(message)
            self._progress(ConsensusPhase.SOURCE_VALIDATION, 1.0, "Source validation complete", total_units=total_units)

        # Phase 2: initial generation
        cancel.raise_if_cancelled()
        initial = await self._initial_generation(units, participants, source_text, cancel)
        succeeded = [m for m in configured if any(m in answers for answers in initial.values())]
        if len(succeeded) < self._settings.min_models_required:
            failed = [m for m in configured if m not in succeeded]
            reason = (
                ConsensusFailureReason.ALL_MODELS_FAILED if not succeeded
                else ConsensusFailureReason.INSUFFICIENT_MODELS
            )
            detail = (
                f"Initial generation phase: {len(succeeded)} of {len(configured)} models succeeded, "
                f"{self._settings.min_models_required} required. Failed models: {', '.join(failed) or 'none'}"
            )
            logger.error("%s", detail)
            return self._aborted(start, configured, succeeded, reason, detail, warnings, source_validation)

        # Phase 3: consensus building
        cancel.raise_if_cancelled()
        trails = await self._build_consensus(units, participants, initial, source_text, cancel)

        # Phase 4: finalization
        cancel.raise_if_cancelled()
        return self._finalize(
            start, units, trails, participants, initial, succeeded, source_validation, warnings, cache_key,
        )

    async def stream(
        self,
        units: Sequence[OutputUnit],
        source_text: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Yield progress and partial-result events as they happen, then the final result.

        The sequence is finite and not restartable. Errors from the run
        (including ConsensusCancelled) are raised from the iterator.
        """
        queue: asyncio.Queue = asyncio.Queue()
        token = _stream_listener.set(queue.put_nowait)
        try:
            task = asyncio.ensure_future(self.run(units, source_text, cancel))
        finally:
            _stream_listener.reset(token)
        task.add_done_callback(lambda _: queue.put_nowait(_STREAM_DONE))
        try:
            while True:
                event = await queue.get()
                if event is _STREAM_DONE:
                    break
                yield event
            yield task.result()
        finally:
            if not task.done():
                task.cancel()

    # --- phases ---------------------------------------------------------

    async def _initial_generation(
        self,
        units: tuple[OutputUnit, ...],
        participants: tuple[ParticipantAdapter, ...],
        source_text: str | None,
        cancel: CancellationToken,
    ) -> dict[str, dict[str, Candidate]]:
        total_calls = len(units) * len(participants)
        finished = 0
        self._progress(ConsensusPhase.INITIAL_GENERATION, 0.0,
                       f"Generating initial answers with {len(participants)} models...", total_units=len(units))

        async def call(unit: OutputUnit, participant: ParticipantAdapter) -> tuple[str, str, Candidate | None]:
            nonlocal finished
            timeout = self._settings.call_timeout_sec
            candidate: Candidate | None = None
            try:
                candidate = await asyncio.wait_for(participant.generate(unit, source_text), timeout=timeout)
            except TimeoutError:
                message = f"Initial generation for {unit.unit_id} timed out after {timeout}s"
                logger.warning("Participant %s: %s", participant.model_id, message)
                self._model_error(participant.model_id, message, "error", False)
            except Exception as exc:
                message = f"Initial generation for {unit.unit_id} failed: {exc}"
                logger.warning("Participant %s: %s", participant.model_id, message)
                self._model_error(participant.model_id, message, "error", False)
            finished += 1
            self._progress(ConsensusPhase.INITIAL_GENERATION, finished / total_calls,
                           f"Initial answers: {finished}/{total_calls} calls settled", total_units=len(units))
            return unit.unit_id, participant.model_id, candidate

        results = await cancel.guard(
            asyncio.gather(*(call(u, p) for u in units for p in participants))
        )
        initial: dict[str, dict[str, Candidate]] = {u.unit_id: {} for u in units}
        for unit_id, model_id, candidate in results:
            if candidate is not None:
                initial[unit_id][model_id] = candidate
        return initial

    async def _build_consensus(
        self,
        units: tuple[OutputUnit, ...],
        participants: tuple[ParticipantAdapter, ...],
        initial: dict[str, dict[str, Candidate]],
        source_text: str | None,
        cancel: CancellationToken,
    ) -> list[QuestionConsensusTrail]:
        total = len(units)
        semaphore = asyncio.Semaphore(max(1, self._settings.max_concurrent_units))
        tokens = AnswerTokenIssuer()
        completed: dict[int, QuestionConsensusTrail] = {}
        self._progress(ConsensusPhase.CONSENSUS_BUILDING, 0.0,
                       f"Building consensus on {total} questions...", total_units=total)

        def on_round(unit: OutputUnit, consensus_round: ConsensusRound) -> None:
            status = "consensus reached" if consensus_round.consensus_reached else (
                f"agreement {consensus_round.agreement_fraction:.0%}"
            )
            self._progress(
                ConsensusPhase.CONSENSUS_BUILDING,
                len(completed) / total,
                f"Question {unit.unit_id}: round {consensus_round.round_number} complete, {status}",
                current_round=consensus_round.round_number,
                units_completed=len(completed),
                total_units=total,
            )

        async def run_unit(index: int, unit: OutputUnit) -> tuple[int, QuestionConsensusTrail]:
            async with semaphore:
                cancel.raise_if_cancelled()
                orchestrator = RoundOrchestrator(
                    unit=unit,
                    participants=participants,
                    initial_answers=initial[unit.unit_id],
                    settings=self._settings,
                    tokens=tokens,
                    similarity=self._answer_similarity,
                    source_text=source_text,
                    cancel=cancel,
                    on_model_error=self._model_error,
                    on_round=on_round,
                )
                return index, await orchestrator.run()

        tasks = [asyncio.ensure_future(run_unit(i, u)) for i, u in enumerate(units)]
        try:
            for next_finished in asyncio.as_completed(tasks):
                index, trail = await next_finished
                completed[index] = trail
                self._partial(PartialConsensusResult(trail=trail, unit_index=index, total_units=total))
                self._progress(
                    ConsensusPhase.CONSENSUS_BUILDING,
                    len(completed) / total,
                    f"Consensus finished for {len(completed)}/{total} questions",
                    units_completed=len(completed),
                    total_units=total,
                )
        finally:
            pending = [t for t in tasks if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        return [completed[i] for i in range(total)]

    def _finalize(
        self,
        start: float,
        units: tuple[OutputUnit, ...],
        trails: list[QuestionConsensusTrail],
        participants: tuple[ParticipantAdapter, ...],
        initial: dict[str, dict[str, Candidate]],
        succeeded: list[str],
        source_validation: SourceValidationResult | None,
        warnings: list[str],
        cache_key: str | None,
    ) -> ConsensusResult:
        total = len(units)
        self._progress(ConsensusPhase.FINALIZATION, 0.0, "Finalizing consensus results...",
                       units_completed=total, total_units=total)

        reached = sum(1 for t in trails if t.consensus_reached)
        success = reached / total + _EPSILON >= self._settings.min_consensus_fraction
        failure_reason: ConsensusFailureReason | None = None
        failure_detail: str | None = None
        fallback: FallbackRecord | None = None

        if not success:
            reason = self._failure_reason(trails)
            unreached = [t.question.unit_id for t in trails if not t.consensus_reached]
            if self._settings.fallback_to_single_model:
                trails, fallback, uncovered = self._apply_fallback(trails, initial, participants, reason)
                if fallback is not None:
                    warnings.append(
                        f"Consensus not reached on {len(fallback.unit_ids)} of {total} questions; "
                        f"used initial answers from {', '.join(fallback.model_ids)} as fallback ({reason.value})"
                    )
                success = not uncovered
                unreached = uncovered
            if not success:
                failure_reason = reason
                failure_detail = (
                    f"Consensus building phase: {reached} of {total} questions reached consensus "
                    f"(required fraction {self._settings.min_consensus_fraction:.0%}). "
                    f"Unresolved: {', '.join(unreached)}"
                )
                logger.warning("%s", failure_detail)

        audit_trail = build_audit_trail(
            total_duration_sec=time.monotonic() - start,
            trails=trails,
            source_validation=source_validation,
            configured_models=[p.model_id for p in participants],
            initial_successes=succeeded,
            fallback=fallback,
            warnings=warnings,
        )
        result = build_result(audit_trail, success, failure_reason, failure_detail)
        logger.info(
            "Consensus run finished in %.1fs: %d/%d questions reached consensus, success=%s",
            audit_trail.total_duration_sec, reached, total, success,
        )
        self._progress(ConsensusPhase.FINALIZATION, 1.0, "Consensus complete",
                       units_completed=total, total_units=total)

        if cache_key is not None and self._cache is not None:
            self._cache.put(cache_key, result)
        return result

    # --- helpers --------------------------------------------------------

    @staticmethod
    def _failure_reason(trails: list[QuestionConsensusTrail]) -> ConsensusFailureReason:
        reasons = {t.termination_reason for t in trails if not t.consensus_reached}
        if reasons == {ConsensusFailureReason.ALL_MODELS_FAILED}:
            return ConsensusFailureReason.ALL_MODELS_FAILED
        if ConsensusFailureReason.MAX_ITERATIONS_EXCEEDED in reasons:
            return ConsensusFailureReason.MAX_ITERATIONS_EXCEEDED
        if ConsensusFailureReason.CIRCULAR_REASONING in reasons:
            return ConsensusFailureReason.CIRCULAR_REASONING
        return ConsensusFailureReason.ALL_MODELS_FAILED

    @staticmethod
    def _apply_fallback(
        trails: list[QuestionConsensusTrail],
        initial: dict[str, dict[str, Candidate]],
        participants: tuple[ParticipantAdapter, ...],
        reason: ConsensusFailureReason,
    ) -> tuple[list[QuestionConsensusTrail], FallbackRecord | None, list[str]]:
        """Replace each unreached unit with the highest-weight initial answer available for it.

        Returns (trails, fallback record, unit ids no model could cover).
        """
        ranked = sorted(participants, key=lambda p: (-p.weight, p.model_id))
        patched: list[QuestionConsensusTrail] = []
        covered: list[tuple[str, str]] = []
        uncovered: list[str] = []
        for trail in trails:
            if trail.consensus_reached:
                patched.append(trail)
                continue
            answers = initial.get(trail.question.unit_id, {})
            chosen = next((p for p in ranked if p.model_id in answers), None)
            if chosen is None:
                uncovered.append(trail.question.unit_id)
                patched.append(trail)
                continue
            logger.info("Fallback for %s: using %s's initial answer", trail.question.unit_id, chosen.model_id)
            patched.append(apply_fallback(trail, answers[chosen.model_id].answer, chosen.model_id))
            covered.append((trail.question.unit_id, chosen.model_id))

        if not covered:
            return patched, None, uncovered
        return patched, FallbackRecord(reason=reason, unit_models=tuple(covered)), uncovered

    def _aborted(
        self,
        start: float,
        configured: list[str],
        succeeded: Sequence[str],
        reason: ConsensusFailureReason,
        detail: str,
        warnings: list[str],
        source_validation: SourceValidationResult | None = None,
    ) -> ConsensusResult:
        audit_trail = build_audit_trail(
            total_duration_sec=time.monotonic() - start,
            trails=(),
            source_validation=source_validation,
            configured_models=configured,
            initial_successes=succeeded,
            warnings=warnings,
        )
        self._progress(ConsensusPhase.FINALIZATION, 1.0, f"Consensus failed: {reason.value}")
        return build_result(audit_trail, False, reason, detail)
