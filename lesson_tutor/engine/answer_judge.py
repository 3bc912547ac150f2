"""
Answer Judge - normalization and comparison of learner answers.

Two local modes:
- exact: normalized learner text equals a normalized accepted answer
- short-answer: at least N distinct keywords appear as whole words

For turns judged by the dialogue service, the same contract is packaged
into a directive and the reply verdict is read through the cue-phrase
protocol (see verdict.py).
"""

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List

from lesson_tutor.engine.verdict import CORRECT_LEAD_IN, INCORRECT_LEAD_IN
from lesson_tutor.models.lesson import QuestionItem

logger = logging.getLogger(__name__)


# =============================================================================
# NORMALIZATION
# =============================================================================

SMALL_NUMBERS = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11,
    "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19,
}

TENS = {
    "twenty": 20, "thirty": 30, "forty": 40, "fifty": 50,
    "sixty": 60, "seventy": 70, "eighty": 80, "ninety": 90,
}

ORDINAL_WORDS = {
    "first": 1, "second": 2, "third": 3, "fourth": 4, "fifth": 5,
    "sixth": 6, "seventh": 7, "eighth": 8, "ninth": 9, "tenth": 10,
    "eleventh": 11, "twelfth": 12, "thirteenth": 13, "fourteenth": 14,
    "fifteenth": 15, "sixteenth": 16, "seventeenth": 17, "eighteenth": 18,
    "nineteenth": 19, "twentieth": 20,
}

# 0..20 -> word, for expanding digit answers back to words
NUMBER_WORDS = {value: word for word, value in SMALL_NUMBERS.items()}
NUMBER_WORDS[20] = "twenty"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_ORDINAL_DIGITS = re.compile(r"([0-9]+)(?:st|nd|rd|th)")


def _strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _map_tokens(tokens: List[str]) -> List[str]:
    out: List[str] = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok in TENS:
            value = TENS[tok]
            if i + 1 < len(tokens) and 1 <= SMALL_NUMBERS.get(tokens[i + 1], 0) <= 9:
                value += SMALL_NUMBERS[tokens[i + 1]]
                i += 1
            out.append(str(value))
        elif tok in SMALL_NUMBERS:
            out.append(str(SMALL_NUMBERS[tok]))
        elif tok in ORDINAL_WORDS:
            out.append(str(ORDINAL_WORDS[tok]))
        elif tok.isdigit():
            out.append(str(int(tok)))
        else:
            ordinal = _ORDINAL_DIGITS.fullmatch(tok)
            out.append(str(int(ordinal.group(1))) if ordinal else tok)
        i += 1
    return out


def normalize(text) -> str:
    """
    Normalize an answer for comparison.
    
    Lowercases, strips diacritics and every non-alphanumeric character
    (hyphens become spaces), collapses whitespace and maps number words
    ("zero".."twenty", "twenty one" style compounds and ordinals) to digits.
    Idempotent: normalize(normalize(x)) == normalize(x).
    """
    if text is None:
        return ""
    lowered = _strip_diacritics(str(text).lower())
    tokens = _NON_ALNUM.sub(" ", lowered).split()
    return " ".join(_map_tokens(tokens))


def contains_whole_word(normalized_text: str, normalized_phrase: str) -> bool:
    """Whole-word (or whole-phrase) containment on normalized text."""
    if not normalized_phrase:
        return False
    pattern = r"(?:^|\s)" + re.escape(normalized_phrase) + r"(?:\s|$)"
    return re.search(pattern, normalized_text) is not None


# =============================================================================
# ACCEPTABLE ANSWERS
# =============================================================================

TRUE_SYNONYMS = ["true", "t", "yes", "y", "correct", "right"]
FALSE_SYNONYMS = ["false", "f", "no", "n", "incorrect", "wrong"]


def _unique(values: Iterable[str]) -> List[str]:
    """Drop blanks and case-insensitive repeats; single letters keep both cases."""
    seen = set()
    out = []
    for value in values:
        s = str(value or "").strip()
        key = s if len(s) == 1 else s.lower()
        if not s or key in seen:
            continue
        seen.add(key)
        out.append(s)
    return out


def build_acceptable_list(item: QuestionItem) -> List[str]:
    """
    Every answer string that counts as correct for an item.
    
    Multiple-choice items gain the correct letter (both cases) and the
    cleaned option text; true/false items gain yes/no style synonyms;
    integer answers 0-20 gain their number word.
    """
    acceptable: List[str] = []
    if item.answer:
        acceptable.append(item.answer)
    acceptable.extend(item.expected_any)
    
    idx = item.correct_option_index()
    if idx is not None:
        letter = item.letter_for(idx)
        if letter:
            acceptable.extend([letter, letter.lower()])
        option_text = item.option_text(idx)
        if option_text:
            acceptable.append(option_text)
    
    if item.is_true_false:
        normalized = {normalize(a) for a in acceptable}
        if "true" in normalized:
            acceptable.extend(TRUE_SYNONYMS)
        elif "false" in normalized:
            acceptable.extend(FALSE_SYNONYMS)
    
    for value in list(acceptable):
        norm = normalize(value)
        if norm.isdigit() and int(norm) in NUMBER_WORDS:
            acceptable.append(NUMBER_WORDS[int(norm)])
    
    return _unique(acceptable)


# =============================================================================
# JUDGING
# =============================================================================

class JudgeMode(str, Enum):
    EXACT = "exact"
    SHORT_ANSWER = "short_answer"


@dataclass
class JudgeResult:
    """Outcome of a local judgement."""
    correct: bool
    mode: JudgeMode
    normalized_answer: str
    matched_keywords: List[str] = field(default_factory=list)


def judge_exact(learner_answer: str, acceptable: Iterable[str]) -> bool:
    learner = normalize(learner_answer)
    if not learner:
        return False
    return learner in {normalize(a) for a in acceptable}


def matched_keywords(learner_answer: str, keywords: Iterable[str]) -> List[str]:
    """Distinct keywords present as whole words in the learner answer."""
    learner = normalize(learner_answer)
    found: List[str] = []
    seen = set()
    for keyword in keywords:
        norm = normalize(keyword)
        if not norm or norm in seen:
            continue
        if contains_whole_word(learner, norm):
            seen.add(norm)
            found.append(keyword)
    return found


def judge_short_answer(learner_answer: str, keywords: Iterable[str], min_keywords: int) -> bool:
    if not normalize(learner_answer):
        return False
    return len(matched_keywords(learner_answer, keywords)) >= min_keywords


def judge_item(item: QuestionItem, learner_answer: str) -> JudgeResult:
    """
    Judge an answer locally.
    
    Short-answer items with keywords use keyword mode; everything else
    uses exact mode against build_acceptable_list().
    """
    normalized = normalize(learner_answer)
    if item.is_short_answer and item.keywords:
        hits = matched_keywords(learner_answer, item.keywords)
        correct = judge_short_answer(learner_answer, item.keywords, item.effective_min_keywords)
        result = JudgeResult(correct, JudgeMode.SHORT_ANSWER, normalized, hits)
    else:
        correct = judge_exact(learner_answer, build_acceptable_list(item))
        result = JudgeResult(correct, JudgeMode.EXACT, normalized)
    logger.debug(
        f"[JUDGE] mode={result.mode.value} correct={result.correct} "
        f"answer={normalized[:40]!r}"
    )
    return result


# =============================================================================
# JUDGING DIRECTIVE
# =============================================================================

LENIENCY_RULES = (
    "Judge open-ended answers with bounded leniency: ignore fillers and politeness, "
    "be case-insensitive, ignore punctuation, and collapse spaces. "
    "Map number words zero through twenty to digits and accept either form."
)


def build_judging_directive(
    item: QuestionItem,
    learner_answer: str,
    *,
    phase_label: str = "question",
) -> str:
    """
    Package the comparison contract for a dialogue-judged turn.
    
    The reply must begin with the correct or incorrect lead-in; the
    contract in here is what the model is told to apply.
    """
    acceptable = build_acceptable_list(item)
    lines = [
        f"The learner answered this {phase_label}: \"{item.prompt}\"",
        f"Learner answer: \"{learner_answer}\"",
        f"Expected answer: \"{item.primary_answer}\"",
    ]
    if acceptable:
        lines.append("Accepted answers: " + "; ".join(f'"{a}"' for a in acceptable))
    if item.is_short_answer and item.keywords:
        lines.append(
            "Count it correct if the answer contains at least "
            f"{item.effective_min_keywords} of these keywords as whole words, in any order: "
            + ", ".join(f'"{k}"' for k in item.keywords)
        )
    else:
        lines.append("Count it correct only if the answer matches an accepted answer.")
    lines.append(LENIENCY_RULES)
    lines.append(
        f"Begin your reply with exactly \"{CORRECT_LEAD_IN}\" if the answer is correct "
        f"or exactly \"{INCORRECT_LEAD_IN}\" if it is not. "
        "If it is not correct, give a short hint without revealing the answer."
    )
    return "\n".join(lines)
