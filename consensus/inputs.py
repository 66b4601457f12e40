"""Question files: Markdown source material with the questions in YAML front matter.

Example::

    ---
    threshold: 0.75
    models: claude,openai,gemini
    questions:
      - id: capital
        text: What is the capital of France?
      - id: rivers
        text: Which rivers flow through Paris?
        kind: multi_select
        options: [Seine, Loire, Bievre, Rhone]
    ---
    Paris is the capital of France. The Seine ...
"""

from dataclasses import dataclass, field
from pathlib import Path

import frontmatter

from consensus.answers import AnswerKind
from consensus.models import OutputUnit

# front matter keys that override settings for one file
OVERRIDE_KEYS = ("threshold", "max_iterations", "models")


@dataclass
class QuestionFile:
    path: Path
    units: list[OutputUnit]
    source_text: str | None
    overrides: dict = field(default_factory=dict)


def _parse_unit(file_path: Path, index: int, raw: object) -> OutputUnit:
    if isinstance(raw, str):
        raw = {"text": raw}
    if not isinstance(raw, dict) or not str(raw.get("text", "")).strip():
        raise ValueError(f"{file_path}: question {index} has no text")

    kind_raw = str(raw.get("kind", AnswerKind.SCALAR.value))
    try:
        kind = AnswerKind(kind_raw)
    except ValueError:
        allowed = ", ".join(k.value for k in AnswerKind)
        raise ValueError(f"{file_path}: question {index} has unknown kind '{kind_raw}' (use one of: {allowed})") from None

    options = raw.get("options") or []
    if not isinstance(options, list):
        raise ValueError(f"{file_path}: options of question {index} must be a list")

    return OutputUnit(
        unit_id=str(raw.get("id", f"q{index}")),
        text=str(raw["text"]).strip(),
        kind=kind,
        options=tuple(str(o) for o in options),
    )


def parse_file(file_path: Path) -> QuestionFile:
    """Parse a question file.

    Returns:
        QuestionFile whose source_text is the Markdown body (None when empty)
        and whose overrides hold any of threshold/max_iterations/models set
        in the front matter.

    Raises:
        ValueError: If the front matter has no usable questions list, or
            question ids repeat.
    """
    post = frontmatter.load(str(file_path))
    metadata = dict(post.metadata)

    raw_questions = metadata.get("questions")
    if not isinstance(raw_questions, list) or not raw_questions:
        raise ValueError(f"{file_path}: front matter must contain a non-empty 'questions' list")

    units: list[OutputUnit] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_questions, start=1):
        unit = _parse_unit(file_path, index, raw)
        if unit.unit_id in seen:
            raise ValueError(f"{file_path}: duplicate question id '{unit.unit_id}'")
        seen.add(unit.unit_id)
        units.append(unit)

    content = post.content.strip()
    return QuestionFile(
        path=file_path,
        units=units,
        source_text=content or None,
        overrides={k: metadata[k] for k in OVERRIDE_KEYS if k in metadata},
    )
