"""
Unit tests for local answer judging and the judging directive.
"""
import pytest

from lesson_tutor.engine.answer_judge import (
    JudgeMode,
    build_acceptable_list,
    build_judging_directive,
    contains_whole_word,
    judge_item,
    judge_short_answer,
    normalize,
)
from lesson_tutor.engine.verdict import CORRECT_LEAD_IN, INCORRECT_LEAD_IN
from lesson_tutor.models.lesson import QuestionCategory, QuestionItem


def make_item(**data) -> QuestionItem:
    return QuestionItem.model_validate(data)


class TestNormalize:
    """Normalization used by every exact comparison."""

    @pytest.mark.parametrize("raw, expected", [
        ("  Twenty ", "20"),
        ("Twenty-One!", "21"),
        ("the THIRD one", "the 3 1"),
        ("Café", "cafe"),
        ("007", "7"),
        ("2nd", "2"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize_examples(self, raw, expected):
        assert normalize(raw) == expected

    def test_collapses_punctuation_and_spaces(self):
        assert normalize("It's   a  dog...") == "it s a dog"

    def test_whole_word_containment(self):
        assert contains_whole_word("plants use sunlight", "sunlight")
        assert not contains_whole_word("plants use sunlights", "sunlight")
        assert contains_whole_word("add the top numbers", "top numbers")


class TestAcceptableList:

    def test_number_answer_gains_word(self):
        acceptable = build_acceptable_list(make_item(question="10 + 10?", answer="20"))
        assert "20" in acceptable
        assert "twenty" in acceptable

    def test_multiple_choice_gains_letter_and_option_text(self):
        item = make_item(question="Pick", options=["A. red", "B. blue", "C. green"], correct=1)
        acceptable = build_acceptable_list(item)
        assert "B" in acceptable
        assert "b" in acceptable
        assert "blue" in acceptable

    def test_multiple_choice_letter_answer_resolves_option(self):
        item = make_item(question="Pick", options=["red", "blue"], answer="B")
        assert item.correct_option_index() == 1
        assert "blue" in build_acceptable_list(item)

    def test_true_false_synonyms(self):
        item = make_item(question="Sky is blue.", answer=True, category=QuestionCategory.TRUE_FALSE)
        acceptable = build_acceptable_list(item)
        assert {"true", "yes", "y", "correct", "right"} <= set(acceptable)
        assert "no" not in acceptable

    def test_no_duplicates_case_insensitive(self):
        item = make_item(question="Q", answer="Dog", expected_any=["dog", "DOG", "puppy"])
        assert build_acceptable_list(item) == ["Dog", "puppy"]


class TestJudgeItem:
    """
    **Feature: lesson-tutor, Property: Answer judging scenarios**
    """

    def test_number_word_matches_digit_answer(self):
        item = make_item(question="What is 10 + 10?", expected_any=["20"])
        result = judge_item(item, "twenty")
        assert result.correct
        assert result.mode == JudgeMode.EXACT

    def test_short_answer_two_of_three_keywords(self):
        item = make_item(
            question="How do plants make food?",
            keywords=["photosynthesis", "sunlight", "energy"],
            min_keywords=2,
            category=QuestionCategory.SHORT_ANSWER,
        )
        result = judge_item(item, "They use sunlight to get energy")
        assert result.correct
        assert result.mode == JudgeMode.SHORT_ANSWER
        assert result.matched_keywords == ["sunlight", "energy"]

    def test_short_answer_below_minimum_is_incorrect(self):
        item = make_item(
            question="How do plants make food?",
            keywords=["photosynthesis", "sunlight", "energy"],
            min_keywords=2,
            category=QuestionCategory.SHORT_ANSWER,
        )
        assert not judge_item(item, "sunlight").correct

    def test_keyword_count_ignores_repeats_and_partial_words(self):
        keywords = ["sunlight", "energy", "Sunlight"]
        assert not judge_short_answer("sunlight sunlight sunlights", keywords, 2)
        assert judge_short_answer("Sunlight gives energy", keywords, 2)
        assert not judge_short_answer("  ", keywords, 0)

    def test_short_answer_without_keywords_falls_back_to_exact(self):
        item = make_item(question="Name the top number.", answer="numerator", category=QuestionCategory.SHORT_ANSWER)
        result = judge_item(item, "Numerator")
        assert result.correct
        assert result.mode == JudgeMode.EXACT

    def test_empty_answer_is_incorrect(self):
        assert not judge_item(make_item(question="Q", answer="0"), "   ").correct

    def test_true_false_accepts_yes(self):
        item = make_item(question="1 + 1 = 2", answer="true", category=QuestionCategory.TRUE_FALSE)
        assert judge_item(item, "Yes").correct
        assert not judge_item(item, "no").correct


class TestJudgingDirective:

    def test_directive_carries_contract(self):
        item = make_item(question="What is 2 + 2?", answer="4")
        directive = build_judging_directive(item, "four")
        assert 'Learner answer: "four"' in directive
        assert '"four"' in directive
        assert CORRECT_LEAD_IN in directive
        assert INCORRECT_LEAD_IN in directive

    def test_short_answer_directive_mentions_keywords(self):
        item = make_item(
            question="Why?", keywords=["sun", "water"], min_keywords=2,
            category=QuestionCategory.SHORT_ANSWER,
        )
        directive = build_judging_directive(item, "sun")
        assert "sun" in directive
        assert "water" in directive
