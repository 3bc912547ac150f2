"""
Unit tests for decks, pools, assessment sets and the session supply.
"""
import random

import pytest

from lesson_tutor.cache.assessment_cache import InMemoryAssessmentCache, build_cache_key
from lesson_tutor.core.config import SessionTargets
from lesson_tutor.core.exceptions import QuestionSupplyExhaustedError
from lesson_tutor.engine.assessment_generator import AssessmentGenerator
from lesson_tutor.engine.question_supply import (
    Deck,
    QuestionSupplyManager,
    build_assessment_set,
    build_qa_pool,
    ensure_exact_count,
)
from lesson_tutor.models.lesson import Lesson, QuestionCategory, QuestionItem
from lesson_tutor.models.session import MajorPhase


def items(prefix: str, count: int):
    return [QuestionItem(prompt=f"{prefix} {i}?", answer=str(i)) for i in range(count)]


def tf_mc_lesson(subject="math") -> Lesson:
    return Lesson.model_validate({
        "title": "Mixed",
        "subject": subject,
        "trueFalse": [{"question": f"Statement {i}.", "answer": i % 2 == 0} for i in range(5)],
        "multipleChoice": [
            {"question": f"Choice {i}?", "options": ["a", "b", "c"], "correct": i % 3}
            for i in range(5)
        ],
    })


class TestDeck:

    def test_full_cycle_has_no_repeats(self):
        deck = Deck(items("Q", 6), random.Random(1))
        drawn = [deck.draw().prompt for _ in range(6)]
        assert len(set(drawn)) == 6
        assert deck.remaining == 0

    def test_reshuffles_after_exhaustion(self):
        deck = Deck(items("Q", 3), random.Random(2))
        first = {deck.draw().prompt for _ in range(3)}
        second = {deck.draw().prompt for _ in range(3)}
        assert first == second
        assert deck.cycles == 1

    def test_empty_deck_draws_none(self):
        assert Deck([]).draw() is None
        assert Deck([]).reserve(3) == []


class TestAssessmentSets:
    """
    **Feature: lesson-tutor, Property: Exact-length assessment sets**
    """

    def test_true_false_and_multiple_choice_worksheet_of_eight(self):
        lesson = tf_mc_lesson()
        worksheet = build_assessment_set(lesson, 8, "math", random.Random(3))
        prompts = [q.prompt_key for q in worksheet]
        assert len(worksheet) == 8
        assert len(set(prompts)) == 8
        open_ended = [
            q for q in worksheet
            if q.category in (QuestionCategory.SHORT_ANSWER, QuestionCategory.FILL_IN_BLANK)
        ]
        assert len(open_ended) <= 1

    def test_non_default_subject_also_exact(self):
        worksheet = build_assessment_set(tf_mc_lesson("science"), 8, "math", random.Random(4))
        assert len(worksheet) == 8
        assert len({q.prompt_key for q in worksheet}) == 8

    def test_short_content_repeats_as_last_resort(self):
        result = ensure_exact_count(items("Q", 2), 5, [])
        assert len(result) == 5

    def test_no_content_gives_empty_set(self):
        assert ensure_exact_count([], 5, [[]]) == []

    def test_open_ended_cap(self, sample_lesson):
        # floor(10% of 10) = 1 of each open-ended category at most in the quota mix
        worksheet = build_assessment_set(sample_lesson, 10, "math", random.Random(5))
        assert len(worksheet) == 10

    def test_test_avoids_worksheet_prompts_when_possible(self):
        lesson = tf_mc_lesson()
        generator = AssessmentGenerator(InMemoryAssessmentCache(), "math", random.Random(6))
        sets = generator.generate(lesson, SessionTargets(comprehension=1, exercise=1, worksheet=5, test=5))
        worksheet = {q.prompt_key for q in sets.worksheet}
        test = {q.prompt_key for q in sets.test}
        assert len(sets.test) == 5
        assert worksheet.isdisjoint(test)


class TestQaPool:

    def test_default_subject_mixes_categories(self, sample_lesson):
        pool = build_qa_pool(sample_lesson, "math", random.Random(1))
        categories = {q.category for q in pool}
        assert QuestionCategory.SAMPLE in categories
        assert QuestionCategory.TRUE_FALSE in categories
        assert QuestionCategory.WORD_PROBLEM not in categories

    def test_other_subject_excludes_short_answer_samples(self):
        lesson = Lesson.model_validate({
            "title": "Plants",
            "subject": "science",
            "sample": [
                {"question": "What do plants need?", "answer": "sunlight"},
                {"question": "Explain photosynthesis.", "keywords": ["sunlight", "energy"]},
            ],
        })
        pool = build_qa_pool(lesson, "math", random.Random(1))
        assert [q.prompt for q in pool] == ["What do plants need?"]


class TestSupplyManager:

    def test_returned_item_is_asked_next(self, sample_lesson):
        supply = QuestionSupplyManager(sample_lesson, "math", random.Random(1))
        first = supply.next_question(MajorPhase.COMPREHENSION)
        supply.return_item(first)
        assert supply.next_question(MajorPhase.COMPREHENSION) is first

    def test_exercise_asks_word_problem_every_third_question(self, sample_lesson):
        supply = QuestionSupplyManager(sample_lesson, "math", random.Random(1))
        item = supply.next_question(MajorPhase.EXERCISE, asked_in_phase=2)
        assert item.category == QuestionCategory.WORD_PROBLEM

    def test_pool_rebuilds_when_exhausted(self, sample_lesson):
        supply = QuestionSupplyManager(sample_lesson, "math", random.Random(1))
        size = supply.pool_size
        for _ in range(size + 1):
            supply.next_question(MajorPhase.COMPREHENSION)
        assert supply.rebuilds == 1

    def test_empty_lesson_raises(self):
        supply = QuestionSupplyManager(Lesson(title="Empty"), "math", random.Random(1))
        with pytest.raises(QuestionSupplyExhaustedError):
            supply.next_question(MajorPhase.COMPREHENSION)


class TestAssessmentGenerator:

    @pytest.mark.asyncio
    async def test_cached_sets_are_reused(self, sample_lesson, targets):
        cache = InMemoryAssessmentCache()
        generator = AssessmentGenerator(cache, "math", random.Random(1))
        first = await generator.get_or_generate("fractions", sample_lesson, "learner-1", targets)
        second = await generator.get_or_generate("fractions", sample_lesson, "learner-1", targets)
        assert first is second
        assert cache.stats.hits == 1

    @pytest.mark.asyncio
    async def test_content_change_regenerates(self, sample_lesson, lesson_data, targets):
        cache = InMemoryAssessmentCache()
        generator = AssessmentGenerator(cache, "math", random.Random(1))
        first = await generator.get_or_generate("fractions", sample_lesson, "learner-1", targets)

        changed = Lesson.model_validate({**lesson_data, "sample": lesson_data["sample"][:1]})
        second = await generator.get_or_generate("fractions", changed, "learner-1", targets)
        assert second is not first
        assert second.content_hash == changed.content_hash()

    @pytest.mark.asyncio
    async def test_refresh_replaces_cached_entry(self, sample_lesson, targets):
        cache = InMemoryAssessmentCache()
        generator = AssessmentGenerator(cache, "math", random.Random(1))
        first = await generator.get_or_generate("fractions", sample_lesson, "learner-1", targets)
        fresh = await generator.refresh("fractions", sample_lesson, "learner-1", targets)
        key = build_cache_key("fractions", "learner-1", targets.worksheet, targets.test)
        assert fresh is not first
        assert await cache.get(key) is fresh
