"""
Speech & caption synchronizer.

Playback is an ordered list of strategies tried in sequence:

1. primary audio output
2. decode-and-play fallback (only after the learner unlocked audio)
3. caption-only pacing (always succeeds)

Before any user gesture, a primary failure raises the 'enable sound'
affordance (needs_audio_unlock) and the reply continues caption-only.
unlock() replays the pending audio on the primary path and then the
fallback; once the fallback has worked it is preferred from then on.

A speech guard force-stops playback whose end never arrives.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from lesson_tutor.core.exceptions import PlaybackBlockedError, PlaybackFailedError
from lesson_tutor.engine.captions import (
    CaptionScheduler,
    Transcript,
    estimate_duration,
    split_caption_sentences,
)

logger = logging.getLogger(__name__)


GUARD_FLOOR_SECONDS = 1.8
GUARD_SLACK_SECONDS = 3.0

STRATEGY_PRIMARY = "primary"
STRATEGY_FALLBACK = "fallback"
STRATEGY_CAPTIONS = "captions"


def guard_timeout(duration: Optional[float]) -> float:
    return max(GUARD_FLOOR_SECONDS, (duration or 0.0) + GUARD_SLACK_SECONDS)


class AudioOutput(Protocol):
    """
    Something that can play audio bytes.

    start() raises PlaybackBlockedError when autoplay is refused and
    PlaybackFailedError when the bytes cannot be played. stop() must
    release whoever is waiting in wait_finished().
    """

    async def start(self, audio: bytes) -> Optional[float]:
        ...

    async def wait_finished(self) -> None:
        ...

    def pause(self) -> None:
        ...

    def resume(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def set_muted(self, muted: bool) -> None:
        ...


class VideoOutput(Protocol):
    """Ambient tutor video that runs while narration plays."""

    def play(self) -> None:
        ...

    def pause(self) -> None:
        ...


class SyntheticOutput:
    """
    Silent output that just lets a duration elapse.

    Used for caption-only pacing so pause and resume behave the same
    with or without sound.
    """

    def __init__(self, duration: float):
        self.duration = max(0.0, duration)
        self._remaining = self.duration
        self._started_at: Optional[float] = None
        self._finished = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None

    async def start(self, audio: Optional[bytes] = None) -> Optional[float]:
        self._arm()
        return self.duration

    def _arm(self) -> None:
        loop = asyncio.get_running_loop()
        self._started_at = loop.time()
        self._timer = loop.call_later(self._remaining, self._finished.set)

    async def wait_finished(self) -> None:
        await self._finished.wait()

    def pause(self) -> None:
        if self._timer is None or self._finished.is_set():
            return
        self._timer.cancel()
        self._timer = None
        self._remaining = max(0.0, self._remaining - (asyncio.get_running_loop().time() - self._started_at))

    def resume(self) -> None:
        if self._timer is None and not self._finished.is_set():
            self._arm()

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._finished.set()

    def set_muted(self, muted: bool) -> None:
        return None


@dataclass
class PlaybackStrategy:
    name: str
    output: AudioOutput
    requires_unlock: bool = False


@dataclass
class SpeechOutcome:
    """How a reply was delivered."""
    strategy: str
    sentences: List[str] = field(default_factory=list)
    start_index: int = 0
    duration: Optional[float] = None
    offsets: List[float] = field(default_factory=list)
    interrupted: bool = False


class SpeechCaptionSynchronizer:
    """
    Turns a reply into captions plus narration.

    Args:
        primary: primary audio output
        fallback: decode-and-play output usable after an unlock gesture
        video: ambient video output
        pace: when False, speak() returns as soon as playback is started
            instead of waiting for it to end, and caption-only replies
            are not paced at all
    """

    def __init__(
        self,
        primary: Optional[AudioOutput] = None,
        fallback: Optional[AudioOutput] = None,
        video: Optional[VideoOutput] = None,
        scheduler: Optional[CaptionScheduler] = None,
        transcript: Optional[Transcript] = None,
        pace: bool = True,
        words_per_second: Optional[float] = None,
    ):
        self.primary = primary
        self.fallback = fallback
        self.video = video
        self.scheduler = scheduler or CaptionScheduler(words_per_second=words_per_second)
        self.transcript = transcript or Transcript()
        self.pace = pace
        self.words_per_second = words_per_second

        self.needs_audio_unlock = False
        self.muted = False
        self.paused = False
        self.is_speaking = False

        self._unlocked = False
        self._prefer_fallback = False
        self._pending_audio: Optional[bytes] = None
        self._active: Optional[AudioOutput] = None
        self._active_duration: Optional[float] = None
        self._tracker: Optional[asyncio.Future] = None
        self._generation = 0
        self._last_outcome: Optional[SpeechOutcome] = None
        self._pause_event = asyncio.Event()
        self._resume_event = asyncio.Event()
        self._resume_event.set()

    @property
    def last_outcome(self) -> Optional[SpeechOutcome]:
        return self._last_outcome

    # -------------------------------------------------------------------------
    # Strategy chain
    # -------------------------------------------------------------------------

    def _strategies(self) -> List[PlaybackStrategy]:
        chain: List[PlaybackStrategy] = []
        if self.primary is not None:
            chain.append(PlaybackStrategy(STRATEGY_PRIMARY, self.primary))
        if self.fallback is not None:
            fallback = PlaybackStrategy(STRATEGY_FALLBACK, self.fallback, requires_unlock=True)
            if self._prefer_fallback:
                chain.insert(0, fallback)
            else:
                chain.append(fallback)
        return [s for s in chain if self._unlocked or not s.requires_unlock]

    async def _play_chain(self, audio: bytes):
        """Try each strategy; returns (strategy, duration) or (None, None)."""
        for strategy in self._strategies():
            try:
                duration = await strategy.output.start(audio)
            except PlaybackBlockedError:
                logger.warning(f"[PLAYBACK] {strategy.name} blocked until a user gesture")
                if not self._unlocked:
                    self.needs_audio_unlock = True
                    self._pending_audio = audio
                    return None, None
                continue
            except PlaybackFailedError as e:
                logger.warning(f"[PLAYBACK] {strategy.name} failed: {e}")
                if not self._unlocked:
                    self.needs_audio_unlock = True
                    self._pending_audio = audio
                    return None, None
                continue
            strategy.output.set_muted(self.muted)
            if strategy.name == STRATEGY_FALLBACK:
                self._prefer_fallback = True
            return strategy, duration
        return None, None

    # -------------------------------------------------------------------------
    # Speaking
    # -------------------------------------------------------------------------

    def add_learner_line(self, text: str) -> None:
        self.transcript.add_learner(text)

    async def speak(self, text: str, audio: Optional[bytes] = None) -> SpeechOutcome:
        """
        Caption and narrate one reply.

        Any previous batch (timers and audio) is stopped first.
        """
        self.stop()
        self._generation += 1
        generation = self._generation

        sentences = split_caption_sentences(text)
        start_index = self.transcript.add_tutor(sentences)
        if not sentences:
            outcome = SpeechOutcome(strategy=STRATEGY_CAPTIONS, start_index=start_index)
            self._last_outcome = outcome
            return outcome

        strategy, duration = (None, None)
        if audio:
            strategy, duration = await self._play_chain(audio)
        if generation != self._generation:
            return SpeechOutcome(strategy=STRATEGY_CAPTIONS, sentences=sentences, interrupted=True)

        if strategy is None:
            duration = estimate_duration(sentences, self.words_per_second)
            output: AudioOutput = SyntheticOutput(duration if self.pace else 0.0)
            await output.start(None)
            name = STRATEGY_CAPTIONS
        else:
            output = strategy.output
            name = strategy.name

        self._active = output
        self._active_duration = duration
        self.is_speaking = True
        offsets = self.scheduler.schedule(sentences, start_index=start_index, duration=duration)
        if self.video is not None:
            self.video.play()
        logger.info(f"[PLAYBACK] {len(sentences)} caption(s) via {name}, duration={duration}")

        outcome = SpeechOutcome(
            strategy=name,
            sentences=sentences,
            start_index=start_index,
            duration=duration,
            offsets=offsets,
        )
        self._last_outcome = outcome
        tracker = asyncio.ensure_future(self._await_end(generation))
        self._tracker = tracker
        if self.pace:
            await tracker
            outcome.interrupted = generation != self._generation
        return outcome

    async def wait_idle(self) -> None:
        """Wait until the reply being played has ended or been stopped."""
        tracker = self._tracker
        if tracker is not None and not tracker.done():
            await asyncio.wait({tracker})

    async def _await_end(self, generation: int) -> None:
        """
        Follow the active output until it ends.

        unlock() may swap the active output mid-reply; the watch then
        moves on to the new output instead of ending the reply.
        """
        try:
            while generation == self._generation:
                output = self._active
                if output is None:
                    break
                await self._watch(output, generation)
                if self._active is output:
                    break
                logger.debug("[PLAYBACK] Following handed-over output")
        finally:
            if generation == self._generation:
                self._finish()

    async def _watch(self, output: AudioOutput, generation: int) -> None:
        finished = asyncio.ensure_future(output.wait_finished())
        try:
            while not finished.done():
                if generation != self._generation or self._active is not output:
                    return
                if self.paused:
                    await self._resume_event.wait()
                    continue
                pause_wait = asyncio.ensure_future(self._pause_event.wait())
                done, _ = await asyncio.wait(
                    {finished, pause_wait},
                    timeout=guard_timeout(self._active_duration),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                pause_wait.cancel()
                if not done and self._active is output:
                    logger.warning("[PLAYBACK] ⚠️ Speech guard fired; forcing stop")
                    output.stop()
                    return
        finally:
            finished.cancel()

    def _finish(self) -> None:
        self.is_speaking = False
        self._active = None
        self._active_duration = None
        if self.video is not None:
            self.video.pause()

    async def unlock(self) -> bool:
        """
        User gesture: enable sound and replay the pending audio.

        Returns True if the pending audio is now playing.
        """
        self._unlocked = True
        self.needs_audio_unlock = False
        audio, self._pending_audio = self._pending_audio, None
        if not audio:
            return False
        outcome = self._last_outcome
        strategy, duration = await self._play_chain(audio)
        if strategy is None:
            logger.warning("[PLAYBACK] ❌ Audio unavailable after unlock; staying caption-only")
            return False

        previous = self._active
        self._active = strategy.output
        self._active_duration = duration
        if previous is not None and previous is not strategy.output:
            previous.stop()
        if outcome is not None and outcome.sentences:
            outcome.offsets = self.scheduler.schedule(
                outcome.sentences, start_index=outcome.start_index, duration=duration
            )
            outcome.strategy = strategy.name
            outcome.duration = duration
        if self._tracker is None or self._tracker.done():
            # The caption-only pass already ended; the replay gets its own watch
            self.is_speaking = True
            if self.video is not None:
                self.video.play()
            self._tracker = asyncio.ensure_future(self._await_end(self._generation))
        logger.info(f"[PLAYBACK] ✅ Replaying via {strategy.name} after unlock")
        return True

    # -------------------------------------------------------------------------
    # Controls
    # -------------------------------------------------------------------------

    def pause(self) -> None:
        """Stop narration, video and caption timers without losing progress."""
        if self.paused:
            return
        self.paused = True
        self._resume_event.clear()
        self._pause_event.set()
        if self._active is not None:
            self._active.pause()
        if self.video is not None:
            self.video.pause()
        self.scheduler.pause()

    def resume(self) -> None:
        if not self.paused:
            return
        self.paused = False
        self._pause_event.clear()
        self._resume_event.set()
        if self._active is not None:
            self._active.resume()
            if self.video is not None:
                self.video.play()
        self.scheduler.resume()

    def set_muted(self, muted: bool) -> None:
        """Mute narration; captions keep running."""
        self.muted = muted
        for output in (self.primary, self.fallback):
            if output is not None:
                output.set_muted(muted)

    def stop(self) -> None:
        """Stop and release audio and video, clear every caption timer."""
        self._generation += 1
        self.scheduler.cancel_all()
        if self._active is not None:
            self._active.stop()
        self._pending_audio = None
        self.paused = False
        self._pause_event.clear()
        self._resume_event.set()
        self._finish()
