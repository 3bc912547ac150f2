"""
Test review sequencer.

After silent collection, the learner's test answers are reviewed by the
dialogue service and scored from cue phrases in its replies.

Strategies:
- full: one directive for the whole test with a distinct cue phrase per
  question; the reply is split on "Question N." and each block is
  scored on its own
- per_item: one directive per question with a fresh cue phrase; the
  next question is reviewed only after the reply finished playing.
  A cue phrase already credited to an earlier question is not credited
  again.

The final score is computed here and handed to the closing directive as
fact.
"""

import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set

from lesson_tutor.engine.answer_judge import build_acceptable_list
from lesson_tutor.engine.reply_hygiene import StepType
from lesson_tutor.engine.verdict import (
    CUE_PHRASES,
    CuePhrasePicker,
    find_cue_phrase,
    letter_grade,
    score_percent,
    tally_full_review,
)
from lesson_tutor.models.lesson import QuestionItem
from lesson_tutor.models.session import ScoreResult
from lesson_tutor.prompts.prompt_loader import PromptLoader

logger = logging.getLogger(__name__)


# ask(instruction, step, cue_phrase) -> reply text once it finished playing,
# or None when the call failed or was aborted
AskFn = Callable[[str, StepType, Optional[str]], Awaitable[Optional[str]]]


@dataclass
class ReviewEntry:
    number: int
    item: QuestionItem
    learner_answer: str


def build_score(correct: int, total: int) -> ScoreResult:
    correct = max(0, min(correct, total))
    percent = score_percent(correct, total)
    return ScoreResult(total=total, correct=correct, percent=percent, grade=letter_grade(percent))


class ReviewSequencer:
    """
    Drives the review of one test.

    Progress survives a failed or aborted call, so calling run() again
    continues where the review stopped.
    """

    def __init__(
        self,
        prompts: PromptLoader,
        strategy: str = "full",
        rng: Optional[random.Random] = None,
        phrases=CUE_PHRASES,
    ):
        self.prompts = prompts
        self.strategy = strategy
        self.phrases = tuple(phrases)
        self.picker = CuePhrasePicker(self.phrases, rng)
        self.reset()

    def reset(self) -> None:
        self.position = 0
        self.correct = 0
        self.credited: Set[str] = set()
        self.picker.reset()

    # -------------------------------------------------------------------------
    # Directives
    # -------------------------------------------------------------------------

    def per_item_directive(self, entry: ReviewEntry, total: int, cue: str) -> str:
        accepted = "; ".join(f'"{a}"' for a in build_acceptable_list(entry.item))
        acceptance = f"Accepted answers: {accepted}. " + self.prompts.render("review.cue_requirement", cue=cue)
        directive = self.prompts.render(
            "review.per_item",
            number=entry.number,
            total=total,
            prompt=entry.item.prompt,
            expected=entry.item.primary_answer,
            learner_answer=entry.learner_answer or "(no answer)",
            acceptance=acceptance,
        )
        if entry.number < total:
            directive = f"{directive} {self.prompts.render('review.per_item_next')}"
        return directive

    def full_directive(self, entries: List[ReviewEntry], cues: List[str]) -> str:
        parts = [self.prompts.render("review.full_intro", total=len(entries))]
        for entry, cue in zip(entries, cues):
            parts.append(self.prompts.render(
                "review.full_item",
                number=entry.number,
                prompt=entry.item.prompt,
                expected=entry.item.primary_answer,
                accepted="; ".join(f'"{a}"' for a in build_acceptable_list(entry.item)),
                learner_answer=entry.learner_answer or "(no answer)",
                cue=cue,
            ))
        return "\n\n".join(parts)

    def closing_directive(self, result: ScoreResult) -> str:
        return self.prompts.render(
            "review.closing",
            correct=result.correct,
            total=result.total,
            percent=result.percent,
        )

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def credit_reply(self, reply: str) -> Optional[str]:
        """
        Per-item scoring: the earliest cue phrase from the full list that
        has not been credited yet, or None.
        """
        remaining = [p for p in self.phrases if p not in self.credited]
        found = find_cue_phrase(reply, remaining)
        if found:
            self.credited.add(found)
            self.correct += 1
        return found

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    async def run(self, entries: List[ReviewEntry], ask: AskFn) -> Optional[ScoreResult]:
        """
        Review every entry, then send the closing directive.

        Returns the score, or None if a review call did not complete.
        """
        if self.strategy == "per_item":
            result = await self._run_per_item(entries, ask)
        else:
            result = await self._run_full(entries, ask)
        if result is None:
            return None

        logger.info(
            f"[REVIEW] Score {result.correct}/{result.total} = {result.percent}% ({result.grade})"
        )
        closing = await ask(self.closing_directive(result), StepType.CLOSING, None)
        if closing is None:
            logger.warning("[REVIEW] Closing reply unavailable; score stands")
        return result

    async def _run_per_item(self, entries: List[ReviewEntry], ask: AskFn) -> Optional[ScoreResult]:
        total = len(entries)
        while self.position < total:
            entry = entries[self.position]
            cue = self.picker.pick()
            reply = await ask(self.per_item_directive(entry, total, cue), StepType.REVIEW, cue)
            if reply is None:
                logger.info(f"[REVIEW] Stopped at question {entry.number}")
                return None
            found = self.credit_reply(reply)
            logger.info(f"[REVIEW] Question {entry.number}: {'correct' if found else 'incorrect'}")
            self.position += 1
        return build_score(self.correct, total)

    async def _run_full(self, entries: List[ReviewEntry], ask: AskFn) -> Optional[ScoreResult]:
        total = len(entries)
        if total == 0:
            return build_score(0, 0)
        self.picker.reset()
        cues = self.picker.assign(total)
        reply = await ask(self.full_directive(entries, cues), StepType.REVIEW, None)
        if reply is None:
            return None
        tally = tally_full_review(reply, total, self.phrases)
        self.position = total
        self.correct = tally.correct
        self.credited = set(tally.phrases_used)
        return build_score(tally.correct, total)
