"""
Content generation boundary.

The scheduler does not write questions itself. It asks a QuestionGenerator to
turn a stitch and a boundary level into N questions, each with one correct
answer and one distractor. FactPoolQuestionGenerator is the in-process
implementation backed by a fact pool keyed by concept code.
"""

from __future__ import annotations

import hashlib
import random
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol, TypeVar

from loguru import logger

from .errors import ErrorCode, InsufficientFactsError, PreparationError
from .models import MAX_BOUNDARY_LEVEL, MIN_BOUNDARY_LEVEL, ReadyQuestion, Stitch

T = TypeVar("T")


@dataclass(frozen=True)
class Fact:
    """
    A single fact a question can be built from.

    ``distractors`` are ordered from easiest to reject (boundary level 1) to
    hardest (boundary level 5).
    """

    id: str
    concept_code: str
    prompt: str
    answer: str
    distractors: tuple[str, ...] = field(default_factory=tuple)


class QuestionGenerator(Protocol):
    """Turns a stitch specification into ready questions."""

    def ensure_facts(self, stitch: Stitch, count: int) -> int:
        """Number of facts available; raises InsufficientFactsError when too few."""
        ...

    def generate(self, stitch: Stitch, boundary_level: int, count: int) -> list[ReadyQuestion]:
        ...


def seeded_shuffle(items: Sequence[T], seed_key: str) -> list[T]:
    """Fisher-Yates shuffle that is reproducible for the same seed key."""
    digest = hashlib.sha256(seed_key.encode("utf-8")).digest()
    rng = random.Random(int.from_bytes(digest[:8], "big"))
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


class FactPoolQuestionGenerator:
    """QuestionGenerator over an in-memory fact pool."""

    def __init__(self, facts: Iterable[Fact], min_facts: int = 20):
        self.min_facts = min_facts
        self._pool: dict[str, list[Fact]] = {}
        for fact in facts:
            self._pool.setdefault(fact.concept_code, []).append(fact)

    @property
    def concept_codes(self) -> list[str]:
        return sorted(self._pool)

    def facts_for(self, concept_code: str) -> list[Fact]:
        return list(self._pool.get(concept_code, []))

    def ensure_facts(self, stitch: Stitch, count: int) -> int:
        available = len(self._pool.get(stitch.concept_code, []))
        required = max(count, self.min_facts)
        if available < required:
            raise InsufficientFactsError(stitch.concept_code, available, required)
        return available

    def generate(self, stitch: Stitch, boundary_level: int, count: int) -> list[ReadyQuestion]:
        self.ensure_facts(stitch, count)
        facts = self.facts_for(stitch.concept_code)

        level = min(max(boundary_level, MIN_BOUNDARY_LEVEL), MAX_BOUNDARY_LEVEL)
        questions = []
        for index, fact in enumerate(facts[:count]):
            distractor = self._distractor(fact, facts, level)
            questions.append(
                ReadyQuestion(
                    id=f"{stitch.id}_q{index + 1}",
                    fact_id=fact.id,
                    text=fact.prompt,
                    correct_answer=fact.answer,
                    distractor=distractor,
                    boundary_level=level,
                )
            )

        logger.debug("Generated {} questions for {} at boundary level {}", len(questions), stitch.id, level)
        return questions

    @staticmethod
    def _distractor(fact: Fact, siblings: Sequence[Fact], level: int) -> str:
        candidates = [d for d in fact.distractors if d != fact.answer]
        if candidates:
            # Spread levels 1..5 across however many distractors the fact carries
            index = round((level - 1) * (len(candidates) - 1) / (MAX_BOUNDARY_LEVEL - 1))
            return candidates[index]

        for other in siblings:
            if other.answer != fact.answer:
                return other.answer

        raise PreparationError(
            ErrorCode.PREPARATION_FAILED,
            f"No distractor available for fact {fact.id}",
            fact_id=fact.id,
        )


def numeric_distractors(answer: int) -> tuple[str, ...]:
    """Wrong answers from far off (level 1) to one away (level 5)."""
    offsets = (10, 5, 2, -1, 1)
    values = []
    for offset in offsets:
        value = answer + offset
        if value != answer and value >= 0 and str(value) not in values:
            values.append(str(value))
    return tuple(values)


def facts_from_mapping(rows: Mapping[str, Iterable[tuple[str, int]]]) -> list[Fact]:
    """Build numeric facts from ``{concept_code: [(prompt, answer), ...]}``."""
    facts = []
    for concept_code, items in rows.items():
        for index, (prompt, answer) in enumerate(items, start=1):
            facts.append(
                Fact(
                    id=f"{concept_code}-{index:03d}",
                    concept_code=concept_code,
                    prompt=prompt,
                    answer=str(answer),
                    distractors=numeric_distractors(answer),
                )
            )
    return facts
