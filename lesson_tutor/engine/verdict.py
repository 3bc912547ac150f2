"""
Cue-phrase verdict protocol.

The dialogue service answers in free text. Correctness is read from it
deterministically:

- judging replies must open with one of two fixed lead-ins;
- test review replies must carry a sentinel cue phrase, verbatim, only
  when the learner was right.

Anything that does not match is treated as incorrect.
"""

import logging
import math
import random
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set

logger = logging.getLogger(__name__)


CORRECT_LEAD_IN = "Correct!"
INCORRECT_LEAD_IN = "Not quite right."

CUE_PHRASES: tuple = (
    "Spark of success",
    "Victory tick",
    "Answer locked in",
    "Bright star answer",
    "High five moment",
    "Correct and proud",
    "You nailed it",
    "That tracks true",
    "Answer win",
    "Golden answer",
    "Solution glow",
    "Brain boost",
    "Track of truth",
    "Result rocket",
    "A-plus moment",
    "Clean solve",
    "Solid outcome",
    "Clear outcome",
    "Facts aligned",
    "Crisp solve",
    "Total triumph",
    "Neat outcome",
    "Correct combo",
    "Answer sparkle",
)

QUESTION_BOUNDARY_PATTERN = re.compile(r"Question\s+(\d+)\.", re.IGNORECASE)

# Quotes, markdown emphasis and whitespace a model may put before a lead-in
_LEADING_NOISE = " \t\r\n\"'*_`"


class Verdict(str, Enum):
    """Correctness read from a reply."""
    CORRECT = "correct"
    INCORRECT = "incorrect"


def parse_lead_in(reply: str) -> Verdict:
    """
    Read the verdict from a judging reply's opening words.
    
    Only the exact "Correct!" lead-in counts as correct; a missing or
    unknown lead-in is incorrect.
    """
    text = (reply or "").lstrip(_LEADING_NOISE)
    if text.startswith(CORRECT_LEAD_IN):
        return Verdict.CORRECT
    if not text.startswith(INCORRECT_LEAD_IN):
        logger.debug(f"[VERDICT] No lead-in found, treating as incorrect: {text[:40]!r}")
    return Verdict.INCORRECT


def find_cue_phrase(text: str, phrases: Iterable[str] = CUE_PHRASES) -> Optional[str]:
    """Return the earliest cue phrase present in text (case-insensitive)."""
    haystack = (text or "").lower()
    best: Optional[str] = None
    best_pos = -1
    for phrase in phrases:
        pos = haystack.find(phrase.lower())
        if pos != -1 and (best_pos == -1 or pos < best_pos):
            best, best_pos = phrase, pos
    return best


def count_occurrences(text: str, phrase: str) -> int:
    return (text or "").lower().count(phrase.lower())


def score_percent(correct: int, total: int) -> int:
    """Half-up rounded percentage, 0 when there are no questions."""
    if total <= 0:
        return 0
    bounded = max(0, min(correct, total))
    return int(math.floor(bounded / total * 100 + 0.5))


def letter_grade(percent: int) -> str:
    if percent >= 90:
        return "A"
    if percent >= 80:
        return "B"
    if percent >= 70:
        return "C"
    if percent >= 60:
        return "D"
    return "F"


class CuePhrasePicker:
    """
    Hands out cue phrases without repeating until the list is exhausted.
    """
    
    def __init__(self, phrases: Sequence[str] = CUE_PHRASES, rng: Optional[random.Random] = None):
        self._phrases = list(phrases)
        self._rng = rng or random.Random()
        self._used: Set[str] = set()
    
    @property
    def used(self) -> Set[str]:
        return set(self._used)
    
    def pick(self) -> str:
        available = [p for p in self._phrases if p not in self._used]
        if not available:
            self._used.clear()
            available = list(self._phrases)
        choice = self._rng.choice(available)
        self._used.add(choice)
        return choice
    
    def assign(self, count: int) -> List[str]:
        """Distinct phrases for a batch of questions (cycles past the list size)."""
        return [self.pick() for _ in range(count)]
    
    def reset(self) -> None:
        self._used.clear()


def split_review_blocks(text: str, total: int) -> Dict[int, str]:
    """
    Split a full-review reply into per-question blocks.
    
    A block runs from its "Question N." marker to the next marker. Numbers
    outside 1..total are dropped and only the first block per number is kept.
    """
    matches = list(QUESTION_BOUNDARY_PATTERN.finditer(text or ""))
    blocks: Dict[int, str] = {}
    for i, match in enumerate(matches):
        number = int(match.group(1))
        if number < 1 or number > total or number in blocks:
            continue
        end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
        blocks[number] = text[match.start():end]
    return blocks


@dataclass
class ReviewTally:
    """Per-question outcome of parsing a review."""
    total: int
    correct_numbers: List[int] = field(default_factory=list)
    phrases_used: Set[str] = field(default_factory=set)
    
    @property
    def correct(self) -> int:
        return min(len(self.correct_numbers), self.total)
    
    @property
    def percent(self) -> int:
        return score_percent(self.correct, self.total)


def tally_full_review(text: str, total: int, phrases: Iterable[str] = CUE_PHRASES) -> ReviewTally:
    """
    Count correct answers in a single-call review reply.
    
    Each block can contribute at most one match, and a phrase credited
    to one block cannot be credited again.
    """
    tally = ReviewTally(total=max(0, total))
    phrase_list = list(phrases)
    blocks = split_review_blocks(text, tally.total)
    for number in sorted(blocks):
        remaining = [p for p in phrase_list if p not in tally.phrases_used]
        found = find_cue_phrase(blocks[number], remaining)
        if found:
            tally.phrases_used.add(found)
            tally.correct_numbers.append(number)
    logger.info(
        f"[VERDICT] Full review parsed: {len(blocks)}/{tally.total} blocks, "
        f"{tally.correct} correct"
    )
    return tally
