"""Participant adapters: one configured model taking part in a consensus run."""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

from config.config_loader import TIMEOUT_RETRY_FACTOR, ModelReference, PromptsConfig, RetryPolicy
from consensus.answers import answer_key, format_answer, parse_answer
from consensus.errors import ErrorCategory
from consensus.models import (
    AnonymizedAnswer,
    Candidate,
    Citation,
    FactExtraction,
    FlaggedConflict,
    ModelErrorCallback,
    OutputUnit,
    ProviderReply,
    ReEvaluationRequest,
    ReEvaluationResponse,
)
from consensus.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_DEFAULT_CONFIDENCE = 0.5


class ParticipantAdapter(ABC):
    """One model endpoint, identified by its model reference.

    Implementations raise on failure from generate/extract_facts and return
    ``success=False`` from re_evaluate; callers handle both forms.
    """

    def __init__(self, reference: ModelReference) -> None:
        self.reference = reference

    @property
    def model_id(self) -> str:
        return self.reference.model_id

    @property
    def weight(self) -> float:
        return self.reference.weight

    @property
    def enabled(self) -> bool:
        return self.reference.enabled

    @abstractmethod
    async def generate(self, unit: OutputUnit, source_text: str | None = None) -> Candidate:
        ...

    @abstractmethod
    async def extract_facts(self, source_text: str) -> FactExtraction:
        ...

    @abstractmethod
    async def re_evaluate(self, request: ReEvaluationRequest) -> ReEvaluationResponse:
        ...


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull a JSON object out of a model reply.

    Accepts a bare object, a fenced ```json block, or the outermost {...} span.

    Raises:
        ValueError: If no candidate decodes to a JSON object.
    """
    candidates = [text.strip()]
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("No JSON object found in response")


def clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return _DEFAULT_CONFIDENCE
    if confidence != confidence:  # NaN
        return _DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, confidence))


def _format_options(unit: OutputUnit) -> str:
    if not unit.options:
        return ""
    return "OPTIONS:\n" + "\n".join(f"- {option}" for option in unit.options)


def _format_alternatives(alternatives: tuple[AnonymizedAnswer, ...]) -> str:
    if not alternatives:
        return "(no other model produced an answer this round)"
    parts = [
        f"--- Answer {alt.answer_id} ---\n"
        f"Answer: {format_answer(alt.answer)}\n"
        f"Reasoning: {alt.reasoning or '(none given)'}\n"
        f"Confidence: {alt.confidence:.2f}"
        for alt in alternatives
    ]
    return "\n\n".join(parts)


def _parse_citations(raw: Any, source_text: str) -> tuple[Citation, ...]:
    if not isinstance(raw, list):
        return ()
    citations: list[Citation] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            start, end = int(item["start"]), int(item["end"])
        except (KeyError, TypeError, ValueError):
            continue
        if not 0 <= start < end <= len(source_text):
            logger.debug("Dropping out-of-range citation [%s, %s)", start, end)
            continue
        citations.append(
            Citation(
                start=start,
                end=end,
                text=source_text[start:end],
                supports_fact=str(item.get("supports_fact", "")),
            )
        )
    return tuple(citations)


def _parse_conflicts(raw: Any) -> tuple[FlaggedConflict, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(
        FlaggedConflict(
            source_section=str(item["source_section"]).strip(),
            interpretation=str(item.get("interpretation", "")).strip(),
        )
        for item in raw
        if isinstance(item, dict) and str(item.get("source_section", "")).strip()
    )


class LLMParticipant(ParticipantAdapter):
    """Participant backed by an AIProvider and the prompt templates from settings.yaml."""

    def __init__(
        self,
        reference: ModelReference,
        provider: AIProvider,
        prompts: PromptsConfig,
        on_model_error: ModelErrorCallback | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(reference)
        self._provider = provider
        self._prompts = prompts
        self._on_model_error = on_model_error
        self._retry = retry or RetryPolicy()

    def _notify_retry(self, exc: ProviderError) -> None:
        if self._on_model_error is not None:
            self._on_model_error(self.model_id, str(exc), "warning", True)

    async def _call_provider(self, prompt: str, label: str) -> ProviderReply:
        """Call the provider with the retry policy.

        A timeout is retried once with 1.5x the timeout. Network, rate-limit
        and service-unavailable errors are retried with exponential backoff
        up to ``retry.max_retries`` times. Every retry is reported to the
        model-error callback as a warning.

        Raises:
            ProviderError: On permanent failure, including the last retry failing.
        """
        timeout = self._provider.timeout_sec()
        timeout_retried = False
        attempt = 0
        while True:
            try:
                return await self._provider.generate(prompt, label, timeout_sec=timeout)
            except ProviderError as exc:
                if exc.category is ErrorCategory.TIMEOUT:
                    if timeout_retried:
                        raise
                    timeout_retried = True
                    timeout = timeout * TIMEOUT_RETRY_FACTOR
                    logger.warning(
                        "Participant %s timed out (%s), retrying with %.1fs", self.model_id, label, timeout,
                    )
                    self._notify_retry(exc)
                    continue
                if not exc.retryable or attempt >= self._retry.max_retries:
                    raise
                delay = self._retry.delay(attempt)
                attempt += 1
                logger.warning(
                    "Participant %s: %s error (%s), retry %d/%d in %.1fs",
                    self.model_id, exc.category.value, label, attempt, self._retry.max_retries, delay,
                )
                self._notify_retry(exc)
                await asyncio.sleep(delay)
            except Exception as exc:
                raise ProviderError(self.model_id, f"Unexpected error: {exc}") from exc

    async def generate(self, unit: OutputUnit, source_text: str | None = None) -> Candidate:
        prompt = self._prompts.generate.format(
            source=source_text or "(no source material provided)",
            kind=unit.kind.value,
            question=unit.text,
            options=_format_options(unit),
        )
        reply = await self._call_provider(prompt, f"generate {unit.unit_id}")
        try:
            data = extract_json_object(reply.content)
            answer = parse_answer(unit.kind, data.get("answer"))
        except ValueError as exc:
            raise ProviderError(
                self.model_id, f"Malformed generation response: {exc}", ErrorCategory.PARSE_ERROR
            ) from exc
        return Candidate(
            answer=answer,
            reasoning=str(data.get("reasoning", "")),
            confidence=clamp_confidence(data.get("confidence")),
        )

    async def extract_facts(self, source_text: str) -> FactExtraction:
        prompt = self._prompts.extract_facts.format(source=source_text)
        reply = await self._call_provider(prompt, "extract facts")
        try:
            data = extract_json_object(reply.content)
        except ValueError as exc:
            raise ProviderError(
                self.model_id, f"Malformed extraction response: {exc}", ErrorCategory.PARSE_ERROR
            ) from exc
        raw_facts = data.get("facts")
        if not isinstance(raw_facts, list):
            raise ProviderError(self.model_id, "Extraction response has no facts list", ErrorCategory.PARSE_ERROR)

        facts = tuple(str(f).strip() for f in raw_facts if str(f).strip())
        return FactExtraction(
            model_id=self.model_id,
            facts=facts,
            citations=_parse_citations(data.get("citations"), source_text),
            confidence=clamp_confidence(data.get("confidence")),
            conflicts=_parse_conflicts(data.get("conflicts")),
        )

    async def re_evaluate(self, request: ReEvaluationRequest) -> ReEvaluationResponse:
        unit = request.unit
        prompt = self._prompts.re_evaluate.format(
            round=request.round_number,
            kind=unit.kind.value,
            question=unit.text,
            options=_format_options(unit),
            original_answer=format_answer(request.original_answer),
            alternatives=_format_alternatives(request.alternative_answers),
        )
        label = f"re-evaluate {unit.unit_id} round {request.round_number}"
        raw_response = ""
        try:
            reply = await self._call_provider(prompt, label)
            raw_response = reply.content
            data = extract_json_object(reply.content)
            answer = parse_answer(unit.kind, data.get("answer"))
        except (ProviderError, ValueError) as exc:
            logger.warning("Participant %s failed to re-evaluate %s: %s", self.model_id, unit.unit_id, exc)
            return ReEvaluationResponse(
                model_id=self.model_id,
                answer=request.original_answer,
                reasoning="",
                confidence=0.0,
                changed=False,
                previous_answer=request.original_answer,
                success=False,
                error=str(exc),
                raw_response=raw_response,
            )

        return ReEvaluationResponse(
            model_id=self.model_id,
            answer=answer,
            reasoning=str(data.get("reasoning", "")),
            confidence=clamp_confidence(data.get("confidence")),
            changed=answer_key(answer) != answer_key(request.original_answer),
            previous_answer=request.original_answer,
            raw_response=raw_response,
        )
