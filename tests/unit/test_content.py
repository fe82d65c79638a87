"""Unit tests for the fact-pool question generator, shuffle and curriculum seed."""

import pytest

from src.liveaid.content import Fact, FactPoolQuestionGenerator, numeric_distractors, seeded_shuffle
from src.liveaid.curriculum import DEFAULT_TUBE_SEED, build_seed, default_fact_pool
from src.liveaid.errors import ErrorCode, InsufficientFactsError
from src.liveaid.models import Stitch, TubeId

DOUBLING = Stitch(id="stitch_t1_p1", tube_id=TubeId.TUBE1, concept_code="0001")


class TestSeededShuffle:
    def test_deterministic_for_same_key(self):
        items = list(range(20))
        assert seeded_shuffle(items, "u1:s1") == seeded_shuffle(items, "u1:s1")

    def test_permutation(self):
        items = list(range(20))
        assert sorted(seeded_shuffle(items, "u1:s1")) == items

    def test_different_keys_differ(self):
        items = list(range(20))
        assert seeded_shuffle(items, "u1:s1") != seeded_shuffle(items, "u2:s1")

    def test_input_untouched(self):
        items = [1, 2, 3]
        seeded_shuffle(items, "k")
        assert items == [1, 2, 3]


class TestGenerator:
    def test_generates_requested_count(self, generator):
        questions = generator.generate(DOUBLING, boundary_level=1, count=20)

        assert len(questions) == 20
        assert all(q.correct_answer != q.distractor for q in questions)
        assert {q.boundary_level for q in questions} == {1}

    def test_distractor_closer_at_higher_boundary(self, generator):
        easy = generator.generate(DOUBLING, 1, 20)[0]
        hard = generator.generate(DOUBLING, 5, 20)[0]

        answer = int(easy.correct_answer)
        assert abs(int(easy.distractor) - answer) > abs(int(hard.distractor) - answer)

    def test_boundary_level_clamped(self, generator):
        questions = generator.generate(DOUBLING, 9, 20)
        assert questions[0].boundary_level == 5

    def test_insufficient_facts(self):
        generator = FactPoolQuestionGenerator(
            [Fact(id="f1", concept_code="x", prompt="1+1", answer="2", distractors=("3",))],
            min_facts=20,
        )
        stitch = Stitch(id="s", tube_id=TubeId.TUBE1, concept_code="x")

        with pytest.raises(InsufficientFactsError) as exc_info:
            generator.generate(stitch, 1, 20)

        assert exc_info.value.code == ErrorCode.INSUFFICIENT_FACTS
        assert exc_info.value.details["available"] == 1

    def test_unknown_concept_has_no_facts(self, generator):
        stitch = Stitch(id="s", tube_id=TubeId.TUBE1, concept_code="9999")
        with pytest.raises(InsufficientFactsError):
            generator.ensure_facts(stitch, 20)

    def test_sibling_answer_used_without_distractors(self):
        facts = [Fact(id=f"f{i}", concept_code="c", prompt=f"q{i}", answer=str(i)) for i in range(3)]
        generator = FactPoolQuestionGenerator(facts, min_facts=3)
        stitch = Stitch(id="s", tube_id=TubeId.TUBE1, concept_code="c")

        questions = generator.generate(stitch, 3, 3)

        assert questions[0].distractor == "1"
        assert questions[1].distractor == "0"


def test_numeric_distractors_ordered_far_to_near():
    assert numeric_distractors(10) == ("20", "15", "12", "9", "11")


def test_numeric_distractors_never_negative():
    assert all(int(d) >= 0 for d in numeric_distractors(0))


class TestCurriculum:
    def test_default_seed_sizes(self):
        seed = build_seed()
        assert [len(seed[t]) for t in TubeId] == [20, 18, 10]

    def test_stitch_ids_follow_tube_and_position(self):
        seed = build_seed()
        for tube_id, placements in seed.items():
            for position, stitch in placements:
                assert stitch.id == f"stitch_t{tube_id.value[-1]}_p{position}"
                assert stitch.tube_id == tube_id

    def test_tube_two_reuses_concept_one(self):
        seed = build_seed()
        assert dict(seed[TubeId.TUBE2])[18].concept_code == "0001"
        assert dict(seed[TubeId.TUBE2])[1].concept_code == "0019"

    def test_stitch_ids_unique(self):
        ids = [entry.stitch_id for entry in DEFAULT_TUBE_SEED]
        assert len(ids) == len(set(ids))

    def test_fact_pool_covers_every_seeded_concept(self):
        generator = FactPoolQuestionGenerator(default_fact_pool())
        for entry in DEFAULT_TUBE_SEED:
            stitch = Stitch(id=entry.stitch_id, tube_id=entry.tube_id, concept_code=entry.concept_code)
            assert generator.ensure_facts(stitch, 20) >= 20
