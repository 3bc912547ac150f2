"""
Caption timing and transcript.

A reply is split into sentences and shown one caption at a time. The
caption index advances on cancellable timers: the time spent on a
sentence is its share of the batch duration by word count, never less
than a floor. Without a known audio duration the batch duration is
estimated from the word count.

The scheduler owns its timer handles. Scheduling a batch clears the
previous one, so two schedules never run at once.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from lesson_tutor.core.config import settings

logger = logging.getLogger(__name__)


SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
NON_WORD = re.compile(r"[^A-Za-z0-9'+\-]+")
INVISIBLE = re.compile(r"[\u200B-\u200D\uFEFF]")

SECONDS_PER_SENTENCE_ESTIMATE = 1.5
ESTIMATE_SENTENCE_CAP_SECONDS = 12.0


def count_words(sentence: str) -> int:
    """Word count used for pacing; never less than 1."""
    text = INVISIBLE.sub("", (sentence or "").replace("\u00a0", " "))
    words = [w for w in NON_WORD.split(text) if w]
    return len(words) or 1


def split_caption_sentences(text: str) -> List[str]:
    """Split reply text into caption sentences, line by line."""
    sentences: List[str] = []
    for line in (text or "").splitlines():
        line = re.sub(r"\s+", " ", line).strip()
        if not line:
            continue
        sentences.extend(s.strip() for s in SENTENCE_SPLIT.split(line) if s.strip())
    return sentences


def estimate_duration(
    sentences: List[str],
    words_per_second: Optional[float] = None,
) -> float:
    """Narration estimate for a batch with no known audio duration."""
    rate = words_per_second or settings.words_per_second
    total_words = sum(count_words(s) for s in sentences) or len(sentences)
    return max(
        total_words / rate,
        min(len(sentences) * SECONDS_PER_SENTENCE_ESTIMATE, ESTIMATE_SENTENCE_CAP_SECONDS),
    )


def plan_caption_offsets(
    sentences: List[str],
    duration: Optional[float] = None,
    min_seconds: Optional[float] = None,
    words_per_second: Optional[float] = None,
) -> List[float]:
    """
    Offsets (seconds from batch start) at which each sentence becomes current.

    offsets[0] is always 0. Sentence i is shown for
    max(min_seconds, duration * words_i / total_words).
    """
    if not sentences:
        return []
    floor = settings.caption_min_seconds if min_seconds is None else min_seconds
    total = duration if duration and duration > 0 else estimate_duration(sentences, words_per_second)
    total_words = sum(count_words(s) for s in sentences) or len(sentences)

    offsets = [0.0]
    elapsed = 0.0
    for previous in sentences[:-1]:
        elapsed += max(floor, total * (count_words(previous) / total_words))
        offsets.append(elapsed)
    return offsets


# =============================================================================
# Transcript
# =============================================================================

@dataclass
class CaptionLine:
    text: str
    speaker: str = "tutor"

    @property
    def narrated(self) -> bool:
        return self.speaker == "tutor"


@dataclass
class Transcript:
    """Running transcript of tutor sentences and learner lines."""
    lines: List[CaptionLine] = field(default_factory=list)

    def add_learner(self, text: str) -> None:
        text = (text or "").strip()
        if text:
            self.lines.append(CaptionLine(text=text, speaker="learner"))

    def add_tutor(self, sentences: List[str]) -> int:
        """Append a batch; returns the transcript index of its first sentence."""
        start = len(self.lines)
        self.lines.extend(CaptionLine(text=s) for s in sentences)
        return start

    def texts(self) -> List[str]:
        return [line.text for line in self.lines]

    def clear(self) -> None:
        self.lines.clear()


# =============================================================================
# Scheduler
# =============================================================================

class CaptionScheduler:
    """
    Advances a caption index over one batch of sentences.

    Args:
        on_index: called with the transcript index of each caption shown
        on_done: called once the last caption of the batch is shown
        loop: object with time() and call_later(); defaults to the running loop
    """

    def __init__(
        self,
        on_index: Optional[Callable[[int], None]] = None,
        on_done: Optional[Callable[[], None]] = None,
        loop=None,
        min_seconds: Optional[float] = None,
        words_per_second: Optional[float] = None,
    ):
        self.on_index = on_index
        self.on_done = on_done
        self._loop = loop
        self.min_seconds = min_seconds
        self.words_per_second = words_per_second

        self._handles: List[asyncio.TimerHandle] = []
        self._sentences: List[str] = []
        self._batch_start = 0
        self._batch_end = 0
        self._duration = 0.0
        self._started_at: Optional[float] = None
        self._elapsed = 0.0

        self.index = 0
        self.done = True
        self.paused = False

    def _get_loop(self):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def active(self) -> bool:
        return bool(self._handles)

    @property
    def batch(self) -> List[str]:
        return list(self._sentences)

    def cancel_all(self) -> None:
        """Cancel every pending timer."""
        for handle in self._handles:
            handle.cancel()
        self._handles = []

    def schedule(
        self,
        sentences: List[str],
        start_index: int = 0,
        duration: Optional[float] = None,
    ) -> List[float]:
        """
        Schedule a new batch, replacing whatever was scheduled before.

        Returns the planned offsets.
        """
        self.cancel_all()
        self._sentences = list(sentences)
        self._batch_start = start_index
        self._batch_end = start_index + len(sentences)
        self._elapsed = 0.0
        self.paused = False
        if not sentences:
            self.done = True
            return []

        offsets = plan_caption_offsets(sentences, duration, self.min_seconds, self.words_per_second)
        self._duration = duration if duration and duration > 0 else estimate_duration(
            sentences, self.words_per_second
        )
        self._arm(offsets, start_index)
        return offsets

    def _arm(self, offsets: List[float], first_index: int) -> None:
        loop = self._get_loop()
        self._started_at = loop.time()
        self.done = False
        self._show(first_index)
        for i, offset in enumerate(offsets[1:], start=1):
            self._handles.append(loop.call_later(offset, self._show, first_index + i))

    def _show(self, index: int) -> None:
        self.index = index
        if self.on_index:
            self.on_index(index)
        if index >= self._batch_end - 1 and not self.done:
            self.done = True
            self._handles = []
            if self.on_done:
                self.on_done()

    def pause(self) -> None:
        """Halt timers, keeping the current caption."""
        if self.paused or self.done:
            return
        if self._started_at is not None:
            self._elapsed += self._get_loop().time() - self._started_at
        self.cancel_all()
        self.paused = True
        logger.debug(f"[CAPTIONS] Paused at index {self.index} after {self._elapsed:.2f}s")

    def resume(self) -> None:
        """Re-schedule only the remaining slice of the current batch."""
        if not self.paused:
            return
        self.paused = False
        remaining_sentences = self._sentences[self.index - self._batch_start:]
        if not remaining_sentences:
            self.done = True
            return
        remaining = max(0.1, self._duration - self._elapsed)
        offsets = plan_caption_offsets(
            remaining_sentences, remaining, self.min_seconds, self.words_per_second
        )
        self._arm(offsets, self.index)
