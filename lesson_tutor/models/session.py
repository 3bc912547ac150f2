"""
Session state models.

The Phase Controller is the only writer of SessionState; every other
component receives inputs and hands results back.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from lesson_tutor.models.lesson import QuestionItem


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class MajorPhase(str, Enum):
    """Major phases in fixed forward order."""
    DISCUSSION = "discussion"
    COMPREHENSION = "comprehension"
    EXERCISE = "exercise"
    WORKSHEET = "worksheet"
    TEST = "test"
    CONGRATS = "congrats"


PHASE_ORDER: List[MajorPhase] = list(MajorPhase)


class SubPhase(str, Enum):
    """Finer steps inside a major phase."""
    DISCUSSION_AWAITING_BEGIN = "discussion-awaiting-begin"
    OPENING = "opening"
    TEACHING = "teaching"
    AWAITING_GATE = "awaiting-gate"
    COMPREHENSION_AWAITING_BEGIN = "comprehension-awaiting-begin"
    COMPREHENSION_ACTIVE = "comprehension-active"
    EXERCISE_AWAITING_BEGIN = "exercise-awaiting-begin"
    EXERCISE_ACTIVE = "exercise-active"
    WORKSHEET_AWAITING_BEGIN = "worksheet-awaiting-begin"
    WORKSHEET_ACTIVE = "worksheet-active"
    TEST_AWAITING_BEGIN = "test-awaiting-begin"
    TEST_ACTIVE = "test-active"
    TEST_REVIEW = "test-review"
    TEST_REVIEW_FINISHED = "test-review-finished"
    CONGRATS = "congrats"


AWAITING_BEGIN: dict = {
    MajorPhase.DISCUSSION: SubPhase.DISCUSSION_AWAITING_BEGIN,
    MajorPhase.COMPREHENSION: SubPhase.COMPREHENSION_AWAITING_BEGIN,
    MajorPhase.EXERCISE: SubPhase.EXERCISE_AWAITING_BEGIN,
    MajorPhase.WORKSHEET: SubPhase.WORKSHEET_AWAITING_BEGIN,
    MajorPhase.TEST: SubPhase.TEST_AWAITING_BEGIN,
    MajorPhase.CONGRATS: SubPhase.CONGRATS,
}

ACTIVE: dict = {
    MajorPhase.COMPREHENSION: SubPhase.COMPREHENSION_ACTIVE,
    MajorPhase.EXERCISE: SubPhase.EXERCISE_ACTIVE,
    MajorPhase.WORKSHEET: SubPhase.WORKSHEET_ACTIVE,
    MajorPhase.TEST: SubPhase.TEST_ACTIVE,
}


def next_phase(phase: MajorPhase) -> Optional[MajorPhase]:
    idx = PHASE_ORDER.index(phase)
    return PHASE_ORDER[idx + 1] if idx + 1 < len(PHASE_ORDER) else None


def previous_phase(phase: MajorPhase) -> Optional[MajorPhase]:
    idx = PHASE_ORDER.index(phase)
    return PHASE_ORDER[idx - 1] if idx > 0 else None


class TeachingStage(str, Enum):
    """Stages of the teaching sub-track inside discussion."""
    DEFINITIONS = "definitions"
    EXAMPLES = "examples"


class PhaseHistoryEntry(BaseModel):
    """A phase the session left, with the time it left."""
    phase: MajorPhase
    subphase: SubPhase
    left_at: datetime = Field(default_factory=_utc_now)


class ScoreResult(BaseModel):
    """Authoritative score after review."""
    total: int = Field(..., ge=0)
    correct: int = Field(..., ge=0)
    percent: int = Field(..., ge=0, le=100)
    grade: str = Field(default="F")


class SessionState(BaseModel):
    """
    Mutable state of one tutoring session.
    
    Exactly one problem is current at a time.
    """
    session_id: str = Field(default_factory=lambda: str(uuid4()))
    lesson_ref: str = Field(..., min_length=1)
    learner_id: str = Field(..., min_length=1)
    phase: MajorPhase = Field(default=MajorPhase.DISCUSSION)
    subphase: SubPhase = Field(default=SubPhase.DISCUSSION_AWAITING_BEGIN)
    ticker: int = Field(default=0, ge=0, description="Correct answers (or items) in this phase")
    current_problem: Optional[QuestionItem] = Field(default=None)
    teaching_stage: Optional[TeachingStage] = Field(default=None)
    question_count: int = Field(default=0, ge=0, description="Questions asked in this phase")
    
    worksheet_index: int = Field(default=0, ge=0)
    test_index: int = Field(default=0, ge=0)
    test_answers: List[str] = Field(default_factory=list)
    test_result: Optional[ScoreResult] = Field(default=None)
    
    # Transient, reset by abort-all
    pending_input: str = Field(default="")
    awaiting_lock_until: float = Field(default=0.0)
    skipped_into: bool = Field(default=False, description="Phase was entered by manual navigation")
    
    history: List[PhaseHistoryEntry] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utc_now)
    
    @property
    def is_awaiting_begin(self) -> bool:
        return self.subphase == AWAITING_BEGIN.get(self.phase) and self.phase != MajorPhase.CONGRATS
    
    @property
    def is_complete(self) -> bool:
        return self.phase == MajorPhase.CONGRATS
