"""Typed answer variants and their normalized equality keys.

Every question kind has its own answer shape. Agreement is computed on
``answer_key`` so that two answers that differ only in case, surrounding
whitespace or option order fall into the same group.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

_WHITESPACE = re.compile(r"\s+")


class AnswerKind(str, Enum):
    SCALAR = "scalar"
    MULTI_SELECT = "multi_select"
    ORDERED_PAIRS = "ordered_pairs"
    FREE_TEXT = "free_text"


@dataclass(frozen=True)
class ScalarAnswer:
    value: str | int | float | bool

    @property
    def kind(self) -> AnswerKind:
        return AnswerKind.SCALAR


@dataclass(frozen=True)
class MultiSelectAnswer:
    values: tuple[str, ...]

    @property
    def kind(self) -> AnswerKind:
        return AnswerKind.MULTI_SELECT


@dataclass(frozen=True)
class OrderedPairsAnswer:
    pairs: tuple[tuple[str, str], ...]

    @property
    def kind(self) -> AnswerKind:
        return AnswerKind.ORDERED_PAIRS


@dataclass(frozen=True)
class FreeTextAnswer:
    text: str

    @property
    def kind(self) -> AnswerKind:
        return AnswerKind.FREE_TEXT


Answer = ScalarAnswer | MultiSelectAnswer | OrderedPairsAnswer | FreeTextAnswer


def normalize_value(value: str) -> str:
    """Trim, case-fold and collapse inner whitespace."""
    return _WHITESPACE.sub(" ", value.strip()).casefold()


def answer_key(answer: Answer) -> tuple:
    """Return a hashable key; equal keys mean equal answers."""
    if isinstance(answer, ScalarAnswer):
        value = answer.value
        # bool first: True must not group with 1
        if isinstance(value, bool):
            return (AnswerKind.SCALAR, "bool", value)
        if isinstance(value, (int, float)):
            return (AnswerKind.SCALAR, "number", float(value))
        return (AnswerKind.SCALAR, "text", normalize_value(str(value)))
    if isinstance(answer, MultiSelectAnswer):
        return (AnswerKind.MULTI_SELECT, frozenset(normalize_value(v) for v in answer.values))
    if isinstance(answer, OrderedPairsAnswer):
        return (
            AnswerKind.ORDERED_PAIRS,
            frozenset((normalize_value(left), normalize_value(right)) for left, right in answer.pairs),
        )
    if isinstance(answer, FreeTextAnswer):
        return (AnswerKind.FREE_TEXT, normalize_value(answer.text))
    raise TypeError(f"Unsupported answer type: {type(answer).__name__}")


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


def _parse_pairs(raw: Any) -> tuple[tuple[str, str], ...]:
    if isinstance(raw, dict):
        return tuple((_scalar_text(k), _scalar_text(v)) for k, v in raw.items())
    if not isinstance(raw, list):
        raise ValueError(f"Expected a list of pairs, got {type(raw).__name__}")
    pairs: list[tuple[str, str]] = []
    for item in raw:
        if isinstance(item, dict) and "left" in item and "right" in item:
            pairs.append((_scalar_text(item["left"]), _scalar_text(item["right"])))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            pairs.append((_scalar_text(item[0]), _scalar_text(item[1])))
        else:
            raise ValueError(f"Malformed pair: {item!r}")
    return tuple(pairs)


def parse_answer(kind: AnswerKind, raw: Any) -> Answer:
    """Build the answer variant for ``kind`` from a decoded JSON value.

    Raises:
        ValueError: If ``raw`` does not fit the shape of ``kind``.
    """
    if raw is None:
        raise ValueError("Answer is missing")

    if kind is AnswerKind.SCALAR:
        if isinstance(raw, list) and len(raw) == 1:
            raw = raw[0]
        if isinstance(raw, str):
            if not raw.strip():
                raise ValueError("Answer is empty")
            return ScalarAnswer(raw.strip())
        if isinstance(raw, (bool, int, float)):
            return ScalarAnswer(raw)
        raise ValueError(f"Expected a single value, got {type(raw).__name__}")

    if kind is AnswerKind.MULTI_SELECT:
        if isinstance(raw, str):
            raw = [part for part in raw.split(",") if part.strip()]
        if not isinstance(raw, list):
            raise ValueError(f"Expected a list of options, got {type(raw).__name__}")
        if any(isinstance(v, (list, dict)) for v in raw):
            raise ValueError("Options must be plain values")
        return MultiSelectAnswer(tuple(_scalar_text(v) for v in raw))

    if kind is AnswerKind.ORDERED_PAIRS:
        return OrderedPairsAnswer(_parse_pairs(raw))

    if kind is AnswerKind.FREE_TEXT:
        if isinstance(raw, (list, dict)):
            raise ValueError(f"Expected text, got {type(raw).__name__}")
        text = _scalar_text(raw)
        if not text:
            raise ValueError("Answer is empty")
        return FreeTextAnswer(text)

    raise ValueError(f"Unknown answer kind: {kind}")


def format_answer(answer: Answer) -> str:
    """Human-readable rendering used in prompts and reports."""
    if isinstance(answer, ScalarAnswer):
        return _scalar_text(answer.value)
    if isinstance(answer, MultiSelectAnswer):
        return ", ".join(answer.values) if answer.values else "(none)"
    if isinstance(answer, OrderedPairsAnswer):
        if not answer.pairs:
            return "(none)"
        return "; ".join(f"{left} -> {right}" for left, right in answer.pairs)
    if isinstance(answer, FreeTextAnswer):
        return answer.text
    raise TypeError(f"Unsupported answer type: {type(answer).__name__}")


def answer_to_json(answer: Answer) -> Any:
    if isinstance(answer, ScalarAnswer):
        return answer.value
    if isinstance(answer, MultiSelectAnswer):
        return list(answer.values)
    if isinstance(answer, OrderedPairsAnswer):
        return [[left, right] for left, right in answer.pairs]
    if isinstance(answer, FreeTextAnswer):
        return answer.text
    raise TypeError(f"Unsupported answer type: {type(answer).__name__}")
