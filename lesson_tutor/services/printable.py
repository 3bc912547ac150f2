"""
Printable worksheet/test output.

Items are numbered in set order and formatted by category:
- true/false items get a "True/False:" prefix
- multiple choice options are lettered A., B., C. ...
- fill-in-the-blank prompts have their blanks normalized to one length;
  word problems get a long answer line, other items a short one

Rendering to PDF or HTML happens outside the core, from the finalized
lines returned here.
"""

import re
from typing import List

from lesson_tutor.models.lesson import QuestionCategory, QuestionItem


BLANK_PATTERN = re.compile(r"_{3,}")
FILL_IN_BLANK = "__________"
SHORT_ANSWER_LINE = "Answer: ______________"
WORD_PROBLEM_LINE = "Answer: ________________________________________"

TITLES = {
    "worksheet": "Worksheet",
    "test": "Test",
}


def format_item(number: int, item: QuestionItem) -> List[str]:
    """Lines for one numbered item."""
    prompt = item.prompt.strip()
    if item.is_true_false:
        prompt = f"True/False: {prompt}"
    if item.is_fill_in_blank:
        if BLANK_PATTERN.search(prompt):
            prompt = BLANK_PATTERN.sub(FILL_IN_BLANK, prompt)
        else:
            prompt = f"{prompt} {FILL_IN_BLANK}"

    lines = [f"{number}. {prompt}"]
    if item.is_multiple_choice:
        for i in range(len(item.options)):
            if item.option_text(i):
                lines.append(f"   {item.letter_for(i)}. {item.option_text(i)}")
    elif item.category == QuestionCategory.WORD_PROBLEM:
        lines.append(f"   {WORD_PROBLEM_LINE}")
    elif not item.is_true_false and not item.is_fill_in_blank:
        lines.append(f"   {SHORT_ANSWER_LINE}")
    return lines


def format_printable(items: List[QuestionItem]) -> List[str]:
    """Numbered printable lines for a worksheet or test."""
    lines: List[str] = []
    for number, item in enumerate(items, start=1):
        lines.extend(format_item(number, item))
        lines.append("")
    return lines[:-1] if lines else lines


def format_answer_key(items: List[QuestionItem]) -> List[str]:
    """One line per item with its primary accepted answer."""
    key = []
    for number, item in enumerate(items, start=1):
        answer = item.primary_answer
        index = item.correct_option_index() if item.is_multiple_choice else None
        if index is not None:
            answer = f"{item.letter_for(index)}. {item.option_text(index)}"
        key.append(f"{number}. {answer}")
    return key


def printable_title(kind: str, lesson_title: str) -> str:
    return f"{lesson_title} - {TITLES.get(kind, kind.title())}"
