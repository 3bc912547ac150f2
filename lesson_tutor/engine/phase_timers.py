"""
Per-phase play and work timers.

Every timed phase has two timers:
- play: from entering the phase until the learner presses begin
- work: from begin until the next phase is entered

Play timers always read green. Work timers compare lesson progress with
elapsed time: more than 5 points behind reads yellow, more than 15 red.

A golden key adds bonus minutes to every play timer. It is granted by a
facilitator at session start or earned by finishing enough work phases
before their timers run out.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from lesson_tutor.models.session import MajorPhase

logger = logging.getLogger(__name__)


class TimerKind(str, Enum):
    PLAY = "play"
    WORK = "work"


class TimerPace(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


# Minutes per phase
DEFAULT_PHASE_MINUTES: Dict[MajorPhase, Dict[TimerKind, float]] = {
    MajorPhase.DISCUSSION: {TimerKind.PLAY: 5, TimerKind.WORK: 15},
    MajorPhase.COMPREHENSION: {TimerKind.PLAY: 5, TimerKind.WORK: 10},
    MajorPhase.EXERCISE: {TimerKind.PLAY: 5, TimerKind.WORK: 15},
    MajorPhase.WORKSHEET: {TimerKind.PLAY: 5, TimerKind.WORK: 20},
    MajorPhase.TEST: {TimerKind.PLAY: 5, TimerKind.WORK: 15},
}

GOLDEN_KEY_BONUS_KEY = "golden_key_bonus_min"
GOLDEN_KEY_BONUS_MINUTES = 5
GOLDEN_KEY_WORK_PHASES = 4

YELLOW_BEHIND_POINTS = 5
RED_BEHIND_POINTS = 15


def timer_key(phase: MajorPhase, kind: TimerKind) -> str:
    return f"{phase.value}_{kind.value}_min"


def default_phase_timers() -> Dict[str, float]:
    minutes = {
        timer_key(phase, kind): value
        for phase, kinds in DEFAULT_PHASE_MINUTES.items()
        for kind, value in kinds.items()
    }
    minutes[GOLDEN_KEY_BONUS_KEY] = GOLDEN_KEY_BONUS_MINUTES
    return minutes


def load_phase_timers(overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, float]:
    """
    Default minutes with per-learner overrides applied.

    Keys look like "worksheet_work_min". Unknown keys, missing values and
    negative or non-numeric values keep the default.
    """
    timers = default_phase_timers()
    for key, value in (overrides or {}).items():
        if key not in timers:
            logger.warning(f"[TIMER] Ignoring unknown timer setting {key!r}")
            continue
        if value is None:
            continue
        try:
            minutes = float(value)
        except (TypeError, ValueError):
            logger.warning(f"[TIMER] Ignoring non-numeric {key}={value!r}")
            continue
        if minutes < 0:
            logger.warning(f"[TIMER] Ignoring negative {key}={minutes}")
            continue
        timers[key] = minutes
    return timers


def pace_for(progress_percent: float, time_percent: float) -> TimerPace:
    behind = time_percent - progress_percent
    if behind > RED_BEHIND_POINTS:
        return TimerPace.RED
    if behind > YELLOW_BEHIND_POINTS:
        return TimerPace.YELLOW
    return TimerPace.GREEN


class PhaseTimer:
    """Countdown read from a monotonic clock; paused time does not count."""

    def __init__(self, phase: MajorPhase, kind: TimerKind, limit_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self.phase = phase
        self.kind = kind
        self.limit_seconds = limit_seconds
        self._clock = clock
        self._started_at = clock()
        self._paused_at: Optional[float] = None
        self._paused_total = 0.0

    @property
    def paused(self) -> bool:
        return self._paused_at is not None

    @property
    def elapsed(self) -> float:
        now = self._paused_at if self._paused_at is not None else self._clock()
        return max(0.0, now - self._started_at - self._paused_total)

    @property
    def remaining(self) -> float:
        return max(0.0, self.limit_seconds - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.limit_seconds

    def pause(self) -> None:
        if self._paused_at is None:
            self._paused_at = self._clock()

    def resume(self) -> None:
        if self._paused_at is not None:
            self._paused_total += self._clock() - self._paused_at
            self._paused_at = None


@dataclass
class PhaseTimerStatus:
    """Snapshot of the running timer."""
    phase: MajorPhase
    kind: TimerKind
    elapsed_seconds: float
    limit_seconds: float
    remaining_seconds: float
    expired: bool
    paused: bool
    pace: TimerPace


class PhaseTimerBoard:
    """
    The timer of one session.

    At most one timer runs at a time: entering a phase starts its play
    timer, begin switches to the work timer and congrats stops timing.

    Args:
        minutes: timer settings, see load_phase_timers()
        golden_key: start with the play-timer bonus already applied
        clock: monotonic clock
    """

    def __init__(
        self,
        minutes: Optional[Mapping[str, Any]] = None,
        golden_key: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.minutes = load_phase_timers(minutes)
        self.golden_key = golden_key
        self.on_time_work_phases = 0
        self.current: Optional[PhaseTimer] = None
        self._clock = clock
        self._paused = False

    def limit_seconds(self, phase: MajorPhase, kind: TimerKind) -> float:
        minutes = self.minutes[timer_key(phase, kind)]
        if kind == TimerKind.PLAY and self.golden_key:
            minutes += self.minutes[GOLDEN_KEY_BONUS_KEY]
        return minutes * 60.0

    def _start(self, phase: MajorPhase, kind: TimerKind, completed: bool = False) -> None:
        finished = self.current
        if completed and finished is not None and finished.kind == TimerKind.WORK and not finished.expired:
            self.on_time_work_phases += 1
            if self.on_time_work_phases >= GOLDEN_KEY_WORK_PHASES:
                self.apply_golden_key()

        if phase not in DEFAULT_PHASE_MINUTES:
            self.current = None
            return
        self.current = PhaseTimer(phase, kind, self.limit_seconds(phase, kind), self._clock)
        if self._paused:
            self.current.pause()
        logger.debug(f"[TIMER] {phase.value} {kind.value} timer: {self.current.limit_seconds:.0f}s")

    def enter(self, phase: MajorPhase, completed: bool = False) -> None:
        """Start the play timer; completed means the previous phase was finished, not skipped."""
        self._start(phase, TimerKind.PLAY, completed)

    def start_work(self, phase: MajorPhase) -> None:
        self._start(phase, TimerKind.WORK)

    def pause(self) -> None:
        self._paused = True
        if self.current is not None:
            self.current.pause()

    def resume(self) -> None:
        self._paused = False
        if self.current is not None:
            self.current.resume()

    def apply_golden_key(self) -> None:
        """Add the bonus to every play timer, the running one included."""
        if self.golden_key:
            return
        self.golden_key = True
        if self.current is not None and self.current.kind == TimerKind.PLAY:
            self.current.limit_seconds += self.minutes[GOLDEN_KEY_BONUS_KEY] * 60.0
        logger.info(f"[TIMER] ✅ Golden key applied: +{self.minutes[GOLDEN_KEY_BONUS_KEY]:g} min play time")

    def status(self, progress_percent: float = 0.0) -> Optional[PhaseTimerStatus]:
        timer = self.current
        if timer is None:
            return None
        elapsed = timer.elapsed
        if timer.kind == TimerKind.PLAY:
            pace = TimerPace.GREEN
        else:
            time_percent = elapsed / timer.limit_seconds * 100 if timer.limit_seconds else 100.0
            pace = pace_for(progress_percent, time_percent)
        return PhaseTimerStatus(
            phase=timer.phase,
            kind=timer.kind,
            elapsed_seconds=round(elapsed, 1),
            limit_seconds=timer.limit_seconds,
            remaining_seconds=round(timer.remaining, 1),
            expired=timer.expired,
            paused=timer.paused,
            pace=pace,
        )
