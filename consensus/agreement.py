"""Weighted agreement scoring over one round of answers. Pure, no I/O."""

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from consensus.answers import Answer, FreeTextAnswer, answer_key
from consensus.models import ModelConsensusResponse
from consensus.similarity import SimilarityStrategy

# tolerance for float sums such as 0.1 + 0.2 compared with a threshold
_EPSILON = 1e-9


@dataclass(frozen=True)
class AgreementOutcome:
    dominant_answer: Answer | None
    agreement_fraction: float
    reached: bool
    agreeing_ids: tuple[str, ...]
    disagreeing_ids: tuple[str, ...]

    @property
    def no_usable_answers(self) -> bool:
        return self.dominant_answer is None


@dataclass
class _Group:
    representative: Answer
    members: list[ModelConsensusResponse] = field(default_factory=list)

    def weight(self, weights: Mapping[str, float]) -> float:
        return math.fsum(weights.get(r.model_id, 1.0) for r in self.members)

    def confidence(self) -> float:
        return math.fsum(r.confidence for r in self.members)

    def lowest_id(self) -> str:
        return min(r.model_id for r in self.members)


def _group_responses(
    responses: list[ModelConsensusResponse],
    similarity: SimilarityStrategy | None,
) -> list[_Group]:
    groups: list[_Group] = []
    by_key: dict[tuple, _Group] = {}
    for response in responses:
        key = answer_key(response.answer)
        group = by_key.get(key)
        if group is None and similarity is not None and isinstance(response.answer, FreeTextAnswer):
            group = next(
                (
                    g for g in groups
                    if isinstance(g.representative, FreeTextAnswer)
                    and similarity.matches(g.representative.text, response.answer.text)
                ),
                None,
            )
        if group is None:
            group = _Group(representative=response.answer)
            groups.append(group)
        by_key.setdefault(key, group)
        group.members.append(response)
    return groups


def evaluate(
    responses: Iterable[ModelConsensusResponse],
    weights: Mapping[str, float],
    threshold: float,
    similarity: SimilarityStrategy | None = None,
) -> AgreementOutcome:
    """Find the dominant answer group and whether it meets ``threshold``.

    Responses are grouped by normalized equality key; free-text answers are
    additionally clustered with ``similarity`` when one is given. The fraction
    is the group's weight over the weight of everyone who answered this round.
    Ties go to the higher confidence sum, then to the lexically lowest model id.

    The result depends only on the set of responses, never on their order:
    responses are processed sorted by model id.
    """
    ordered = sorted(responses, key=lambda r: r.model_id)
    if not ordered:
        return AgreementOutcome(
            dominant_answer=None,
            agreement_fraction=0.0,
            reached=False,
            agreeing_ids=(),
            disagreeing_ids=(),
        )

    total_weight = math.fsum(weights.get(r.model_id, 1.0) for r in ordered)
    groups = _group_responses(ordered, similarity)
    dominant = min(
        groups,
        key=lambda g: (-g.weight(weights), -g.confidence(), g.lowest_id()),
    )

    fraction = dominant.weight(weights) / total_weight if total_weight > 0 else 0.0
    agreeing = tuple(sorted(r.model_id for r in dominant.members))
    agreeing_set = set(agreeing)
    disagreeing = tuple(r.model_id for r in ordered if r.model_id not in agreeing_set)
    # first member in id order speaks for the group
    dominant_answer = dominant.members[0].answer

    return AgreementOutcome(
        dominant_answer=dominant_answer,
        agreement_fraction=fraction,
        reached=fraction + _EPSILON >= threshold,
        agreeing_ids=agreeing,
        disagreeing_ids=disagreeing,
    )
