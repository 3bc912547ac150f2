"""
Question Supply Manager.

Decks give full-cycle non-repeating draws; pools are quota-mixed lists
consumed head-first and rebuilt from the lesson when they run dry.
Assessment sets (worksheet, test) are built to an exact length with
category quotas.
"""

import logging
import math
import random
from typing import Iterable, List, Optional, Sequence, Set

from lesson_tutor.core.exceptions import QuestionSupplyExhaustedError
from lesson_tutor.models.lesson import Lesson, QuestionItem
from lesson_tutor.models.session import MajorPhase

logger = logging.getLogger(__name__)


# Share of an assessment set drawn from word problems (default subject)
WORD_PROBLEM_SHARE = 0.3
# Cap for short-answer and for fill-in-the-blank items, each
OPEN_ENDED_CAP_SHARE = 0.10
# Exercise on the default subject asks a word problem every Nth question
WORD_PROBLEM_EVERY = 3


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def shuffled(items: Iterable[QuestionItem], rng: random.Random) -> List[QuestionItem]:
    copy = list(items)
    rng.shuffle(copy)
    return copy


def dedupe_prompts(items: Iterable[QuestionItem]) -> List[QuestionItem]:
    """Keep the first item for each prompt."""
    seen: Set[str] = set()
    out = []
    for item in items:
        if item.prompt_key in seen:
            continue
        seen.add(item.prompt_key)
        out.append(item)
    return out


# =============================================================================
# DECK
# =============================================================================

class Deck:
    """
    Shuffled sequence over one category plus a read cursor.
    
    No item repeats until the cursor passes the end; the deck then
    reshuffles and the cursor restarts at zero.
    """
    
    def __init__(self, items: Iterable[QuestionItem], rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self._items: List[QuestionItem] = shuffled(items, self._rng)
        self._cursor = 0
        self.cycles = 0
    
    def __len__(self) -> int:
        return len(self._items)
    
    @property
    def cursor(self) -> int:
        return self._cursor
    
    @property
    def remaining(self) -> int:
        return max(0, len(self._items) - self._cursor)
    
    def draw(self) -> Optional[QuestionItem]:
        if not self._items:
            return None
        if self._cursor >= len(self._items):
            self._rng.shuffle(self._items)
            self._cursor = 0
            self.cycles += 1
        item = self._items[self._cursor]
        self._cursor += 1
        return item
    
    def reserve(self, count: int) -> List[QuestionItem]:
        out = []
        for _ in range(count):
            item = self.draw()
            if item is None:
                break
            out.append(item)
        return out


# =============================================================================
# POOLS
# =============================================================================

def _is_default_subject(lesson: Lesson, default_subject: str) -> bool:
    return not lesson.subject or lesson.is_subject(default_subject)


def _valid_multiple_choice(lesson: Lesson) -> List[QuestionItem]:
    return [q for q in lesson.multiple_choice if q.is_multiple_choice]


def build_qa_pool(
    lesson: Lesson,
    default_subject: str = "math",
    rng: Optional[random.Random] = None,
) -> List[QuestionItem]:
    """
    Build the comprehension/exercise pool.
    
    Default subject: samples mixed with true/false, multiple-choice
    (only items with real options), fill-in-the-blank and short-answer.
    Other subjects: non-short-answer samples alone, or true/false +
    multiple-choice + fill-in-the-blank when no such samples exist.
    """
    rng = rng or random.Random()
    if _is_default_subject(lesson, default_subject):
        pool = [
            *lesson.sample,
            *lesson.true_false,
            *_valid_multiple_choice(lesson),
            *lesson.fill_in_blank,
            *lesson.short_answer,
        ]
        return shuffled(pool, rng)
    
    samples = [q for q in lesson.sample if not q.is_short_answer]
    if samples:
        return shuffled(samples, rng)
    return shuffled([*lesson.true_false, *_valid_multiple_choice(lesson), *lesson.fill_in_blank], rng)


def ensure_exact_count(
    base: Sequence[QuestionItem],
    target: int,
    pools: Sequence[Sequence[QuestionItem]],
    allow_duplicates_as_last_resort: bool = True,
) -> List[QuestionItem]:
    """
    Return exactly `target` items.
    
    Keeps the deduplicated base, tops up with unused prompts from pools in
    order, and only when content is still short cycles the combined pool
    allowing duplicates. With no content at all the result is empty.
    """
    if target <= 0:
        return []
    out = dedupe_prompts(base)
    if len(out) >= target:
        return out[:target]
    
    used = {item.prompt_key for item in out}
    for pool in pools:
        for item in pool:
            if len(out) >= target:
                break
            if item.prompt_key not in used:
                used.add(item.prompt_key)
                out.append(item)
        if len(out) >= target:
            break
    
    if len(out) < target and allow_duplicates_as_last_resort:
        flat = [item for item in base] + [item for pool in pools for item in pool]
        if flat:
            logger.warning(
                f"[SUPPLY] Only {len(out)} unique prompts for target {target}; "
                f"repeating items"
            )
        idx = 0
        while len(out) < target and flat:
            out.append(flat[idx % len(flat)])
            idx += 1
    
    return out[:target]


def select_quota_mix(
    lesson: Lesson,
    target: int,
    default_subject: str = "math",
    rng: Optional[random.Random] = None,
    avoid: Optional[Set[str]] = None,
) -> List[QuestionItem]:
    """
    Quota-mixed base selection for an assessment set.
    
    About 30% word problems on the default subject; short-answer and
    fill-in-the-blank are each capped at floor(10% of target).
    """
    rng = rng or random.Random()
    avoid = avoid or set()
    
    def fresh(items: Iterable[QuestionItem]) -> List[QuestionItem]:
        return [q for q in items if q.prompt_key not in avoid]
    
    cap = max(0, math.floor(target * OPEN_ENDED_CAP_SHARE))
    sa_pick = shuffled(fresh(lesson.short_answer), rng)[:cap]
    fib_pick = shuffled(fresh(lesson.fill_in_blank), rng)[:cap]
    
    if _is_default_subject(lesson, default_subject):
        desired_wp = round_half_up(target * WORD_PROBLEM_SHARE)
        wp_pick = shuffled(fresh(lesson.word_problems), rng)[:desired_wp]
        others = fresh([*lesson.sample, *lesson.true_false, *_valid_multiple_choice(lesson)])
        remaining = max(0, target - len(wp_pick) - len(sa_pick) - len(fib_pick))
        combined = [*wp_pick, *sa_pick, *fib_pick, *shuffled(others, rng)[:remaining]]
    else:
        others = fresh([*lesson.true_false, *_valid_multiple_choice(lesson)])
        if not (others or sa_pick or fib_pick):
            others = fresh([q for q in lesson.sample if not q.is_short_answer])
        remaining = max(0, target - len(sa_pick) - len(fib_pick))
        combined = [*sa_pick, *fib_pick, *shuffled(others, rng)[:remaining]]
    
    deduped = dedupe_prompts(combined)
    if len(deduped) != len(combined):
        logger.debug(f"[SUPPLY] Removed {len(combined) - len(deduped)} duplicate prompts from mix")
    return shuffled(deduped, rng)


def build_assessment_set(
    lesson: Lesson,
    target: int,
    default_subject: str = "math",
    rng: Optional[random.Random] = None,
    avoid: Optional[Set[str]] = None,
) -> List[QuestionItem]:
    """
    Fixed-length worksheet/test set.
    
    Items whose prompt is in `avoid` (e.g. already on the worksheet) are
    used only when nothing else can fill the set.
    """
    rng = rng or random.Random()
    avoid = avoid or set()
    base = select_quota_mix(lesson, target, default_subject, rng, avoid)
    
    closed_ended = [*lesson.true_false, *_valid_multiple_choice(lesson)]
    if _is_default_subject(lesson, default_subject):
        primary = [*lesson.sample, *closed_ended, *lesson.word_problems]
    else:
        primary = [*closed_ended, *[q for q in lesson.sample if not q.is_short_answer]]
    open_ended = [*lesson.fill_in_blank, *lesson.short_answer]
    
    def split(items: List[QuestionItem]):
        keep = [q for q in items if q.prompt_key not in avoid]
        later = [q for q in items if q.prompt_key in avoid]
        return keep, later
    
    primary_fresh, primary_seen = split(shuffled(primary, rng))
    open_fresh, open_seen = split(shuffled(open_ended, rng))
    pools = [primary_fresh, open_fresh, primary_seen, open_seen]
    
    result = ensure_exact_count(base, target, pools)
    logger.info(f"[SUPPLY] Built assessment set: {len(result)}/{target} items")
    return result


# =============================================================================
# SESSION SUPPLY
# =============================================================================

class QuestionSupplyManager:
    """
    Session-scoped source of comprehension and exercise questions.
    
    Owns the QA pool, the sample deck and the word-problem deck. When
    the pool is empty it is rebuilt from the lesson before giving up.
    """
    
    def __init__(
        self,
        lesson: Lesson,
        default_subject: str = "math",
        rng: Optional[random.Random] = None,
    ):
        self.lesson = lesson
        self.default_subject = default_subject
        self._rng = rng or random.Random()
        self.sample_deck = Deck(lesson.sample, self._rng)
        self.word_deck = Deck(
            lesson.word_problems if _is_default_subject(lesson, default_subject) else [],
            self._rng,
        )
        self._pool: List[QuestionItem] = build_qa_pool(lesson, default_subject, self._rng)
        self.rebuilds = 0
    
    @property
    def pool_size(self) -> int:
        return len(self._pool)
    
    def _rebuild_pool(self) -> None:
        self._pool = build_qa_pool(self.lesson, self.default_subject, self._rng)
        self.rebuilds += 1
        logger.info(f"[SUPPLY] Rebuilt QA pool from lesson: {len(self._pool)} items")
    
    def _pop_pool(self) -> Optional[QuestionItem]:
        if not self._pool:
            self._rebuild_pool()
        if self._pool:
            return self._pool.pop(0)
        return self.sample_deck.draw()
    
    def return_item(self, item: QuestionItem) -> None:
        """Put an unused item back at the head of the pool."""
        self._pool.insert(0, item)

    def next_question(self, phase: MajorPhase, asked_in_phase: int = 0) -> QuestionItem:
        """
        Next item for comprehension or exercise.
        
        Raises:
            QuestionSupplyExhaustedError: lesson has no usable questions
        """
        item: Optional[QuestionItem] = None
        if (
            phase == MajorPhase.EXERCISE
            and len(self.word_deck)
            and asked_in_phase % WORD_PROBLEM_EVERY == WORD_PROBLEM_EVERY - 1
        ):
            item = self.word_deck.draw()
        if item is None:
            item = self._pop_pool()
        if item is None:
            raise QuestionSupplyExhaustedError(
                f"No questions available for {phase.value} in lesson '{self.lesson.title}'"
            )
        logger.debug(f"[SUPPLY] {phase.value} question ({item.category.value}): {item.prompt[:50]}")
        return item
