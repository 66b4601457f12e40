"""Cross-check source material by comparing independent fact extractions."""

import asyncio
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field

from consensus.cancellation import CancellationToken
from consensus.errors import SourceValidationError
from consensus.models import (
    ConsensusFact,
    FactConsensus,
    FactExtraction,
    FactStatus,
    ModelErrorCallback,
    SourceDiscrepancy,
    SourceValidationResult,
)
from consensus.participant import ParticipantAdapter
from consensus.similarity import FactOverlapSimilarity, SimilarityStrategy, normalize_text

logger = logging.getLogger(__name__)


@dataclass
class _FactCluster:
    representative: str
    reported_by: dict[str, str] = field(default_factory=dict)   # model_id -> fact as worded by that model


class SourceValidator:
    """Runs fact extraction on every participant and aggregates the results."""

    def __init__(
        self,
        similarity: SimilarityStrategy | None = None,
        call_timeout_sec: float | None = None,
        on_model_error: ModelErrorCallback | None = None,
    ) -> None:
        self._similarity = similarity or FactOverlapSimilarity()
        self._call_timeout_sec = call_timeout_sec
        self._on_model_error = on_model_error

    async def _extract(self, participant: ParticipantAdapter, source_text: str) -> FactExtraction | None:
        try:
            if self._call_timeout_sec is None:
                return await participant.extract_facts(source_text)
            return await asyncio.wait_for(participant.extract_facts(source_text), timeout=self._call_timeout_sec)
        except TimeoutError:
            message = f"Fact extraction timed out after {self._call_timeout_sec}s"
        except Exception as exc:
            message = f"Fact extraction failed: {exc}"
        logger.warning("Participant %s: %s", participant.model_id, message)
        if self._on_model_error is not None:
            self._on_model_error(participant.model_id, message, "error", False)
        return None

    async def validate(
        self,
        source_text: str,
        participants: Sequence[ParticipantAdapter],
        cancel: CancellationToken | None = None,
    ) -> SourceValidationResult:
        """Extract facts with every participant concurrently and score their agreement.

        Raises:
            SourceValidationError: If every participant failed to extract facts.
            ConsensusCancelled: If ``cancel`` fires while extractions are in flight.
        """
        calls = asyncio.gather(*(self._extract(p, source_text) for p in participants))
        results = await cancel.guard(calls) if cancel is not None else await calls

        extractions = sorted((e for e in results if e is not None), key=lambda e: e.model_id)
        if not extractions:
            raise SourceValidationError(
                f"All {len(participants)} participants failed to extract facts from the source"
            )

        weights = {p.model_id: p.weight for p in participants}
        extractor_ids = [e.model_id for e in extractions]
        total_weight = math.fsum(weights.get(m, 1.0) for m in extractor_ids)

        clusters = self._cluster_facts(extractions)
        agreed: list[ConsensusFact] = []
        partial: list[ConsensusFact] = []
        disagreed: list[ConsensusFact] = []
        agreed_weight = 0.0
        all_weight = 0.0

        for cluster in clusters:
            agreeing = tuple(sorted(cluster.reported_by))
            disagreeing = tuple(m for m in extractor_ids if m not in cluster.reported_by)
            cluster_weight = math.fsum(weights.get(m, 1.0) for m in agreeing)
            all_weight += cluster_weight

            if not disagreeing:
                status, bucket = FactStatus.AGREED, agreed
                agreed_weight += cluster_weight
            elif len(agreeing) == 1:
                status, bucket = FactStatus.DISAGREED, disagreed
            else:
                status, bucket = FactStatus.PARTIAL, partial

            bucket.append(
                ConsensusFact(
                    fact=cluster.representative,
                    status=status,
                    agreeing_models=agreeing,
                    disagreeing_models=disagreeing,
                    agreement_fraction=cluster_weight / total_weight if total_weight > 0 else 0.0,
                )
            )

        confidence = agreed_weight / all_weight if all_weight > 0 else 0.0
        discrepancies = self._collect_discrepancies(extractions)

        logger.info(
            "Source validation: %d extractors, %d agreed / %d partial / %d disagreed facts, "
            "%d discrepancies, confidence %.2f",
            len(extractions), len(agreed), len(partial), len(disagreed), len(discrepancies), confidence,
        )

        return SourceValidationResult(
            source_content=source_text,
            extractions=tuple(extractions),
            fact_consensus=FactConsensus(agreed=tuple(agreed), partial=tuple(partial), disagreed=tuple(disagreed)),
            discrepancies=discrepancies,
            validation_confidence=confidence,
        )

    def _cluster_facts(self, extractions: list[FactExtraction]) -> list[_FactCluster]:
        clusters: list[_FactCluster] = []
        for extraction in extractions:
            for fact in extraction.facts:
                match = next(
                    (c for c in clusters if self._similarity.matches(c.representative, fact)),
                    None,
                )
                if match is None:
                    clusters.append(_FactCluster(representative=fact, reported_by={extraction.model_id: fact}))
                else:
                    # a model restating its own fact does not count twice
                    match.reported_by.setdefault(extraction.model_id, fact)
        return clusters

    @staticmethod
    def _collect_discrepancies(extractions: list[FactExtraction]) -> tuple[SourceDiscrepancy, ...]:
        by_section: dict[str, list[tuple[str, str, str]]] = {}
        for extraction in extractions:
            for conflict in extraction.conflicts:
                key = normalize_text(conflict.source_section)
                by_section.setdefault(key, []).append(
                    (extraction.model_id, conflict.source_section, conflict.interpretation)
                )

        discrepancies: list[SourceDiscrepancy] = []
        for flags in by_section.values():
            models = tuple(sorted({model_id for model_id, _, _ in flags}))
            if len(models) < 2:
                continue
            discrepancies.append(
                SourceDiscrepancy(
                    source_section=flags[0][1],
                    models=models,
                    interpretations=tuple(interpretation for _, _, interpretation in flags),
                )
            )
        return tuple(discrepancies)
