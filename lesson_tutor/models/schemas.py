"""
Pydantic Schemas for the dialogue wire format and the HTTP API
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Get current UTC time (timezone-aware)"""
    return datetime.now(timezone.utc)


class ComponentStatus(str, Enum):
    """Status of a system component"""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


# =============================================================================
# Dialogue Service Wire Format
# =============================================================================

class DialogueRequest(BaseModel):
    """Body POSTed to the dialogue service for one turn."""
    system: str = Field(..., description="Context description (persona, lesson scope, optional guard)")
    instruction: str = Field(..., description="Task instruction for this turn")
    innertext: Optional[str] = Field(default=None, description="Learner utterance, if any")
    session: Dict[str, Any] = Field(default_factory=dict, description="Session metadata: phase, step, subject")


class DialogueReply(BaseModel):
    """Body returned by the dialogue service."""
    reply: str = Field(default="", description="Tutor reply text")
    audio: Optional[str] = Field(default=None, description="Base64 audio or data URL")
    usage: Optional[Dict[str, Any]] = Field(default=None, description="Token usage metadata")

    model_config = {"extra": "ignore"}


# =============================================================================
# Session API Schemas
# =============================================================================

class StartSessionRequest(BaseModel):
    """Request to open a tutoring session"""
    lesson_ref: str = Field(..., min_length=1, description="Lesson reference in the content source")
    learner_id: str = Field(..., min_length=1, description="Learner identifier")
    learner_name: Optional[str] = Field(default=None, description="Name used in the greeting")
    comprehension_target: Optional[int] = Field(default=None, description="Override: correct answers to finish comprehension")
    exercise_target: Optional[int] = Field(default=None, description="Override: correct answers to finish exercise")
    worksheet_length: Optional[int] = Field(default=None, description="Override: worksheet item count")
    test_length: Optional[int] = Field(default=None, description="Override: test item count")
    seed: Optional[int] = Field(default=None, description="Random seed for reproducible sessions")
    phase_timers: Optional[Dict[str, float]] = Field(
        default=None,
        description="Per-learner timer minutes, e.g. {\"worksheet_work_min\": 25}",
    )
    golden_key: bool = Field(default=False, description="Start with the golden key play-time bonus")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "lesson_ref": "3rd-math-fractions",
                    "learner_id": "learner-42",
                    "learner_name": "Sam",
                }
            ]
        }
    }


class LearnerMessageRequest(BaseModel):
    """A learner utterance"""
    text: str = Field(..., min_length=1, max_length=2000, description="What the learner said or typed")


class MuteRequest(BaseModel):
    """Mute or unmute narration"""
    muted: bool = Field(default=True, description="True to mute, False to unmute")


class ScoreView(BaseModel):
    """Final test score"""
    total: int
    correct: int
    percent: int
    grade: str


class PlaybackView(BaseModel):
    """Narration state"""
    speaking: bool = False
    paused: bool = False
    muted: bool = False
    needs_audio_unlock: bool = Field(default=False, description="Autoplay was refused; ask for a tap to enable sound")


class PhaseTimerView(BaseModel):
    """The running play or work timer"""
    phase: str
    kind: str = Field(..., description="play or work")
    elapsed_seconds: float
    limit_seconds: float
    remaining_seconds: float
    expired: bool
    paused: bool
    pace: str = Field(..., description="green, yellow or red against lesson progress")


class SessionView(BaseModel):
    """Observable session state"""
    session_id: str
    lesson_ref: str
    learner_id: str
    phase: str
    subphase: str
    ticker: int = Field(..., description="Correct answers (or items) counted in the current phase")
    target: Optional[int] = Field(default=None, description="Count that completes the current phase")
    current_question: Optional[str] = Field(default=None, description="Prompt awaiting an answer")
    worksheet_index: int = 0
    test_index: int = 0
    test_result: Optional[ScoreView] = None
    complete: bool = False
    playback: Optional[PlaybackView] = None
    timer: Optional[PhaseTimerView] = None


class SpeechSegmentView(BaseModel):
    """One spoken reply and when each of its captions shows"""
    captions: List[str] = Field(default_factory=list)
    offsets: List[float] = Field(default_factory=list, description="Seconds from reply start, one per caption")
    duration: Optional[float] = Field(default=None, description="Narration length in seconds")
    strategy: str = Field(..., description="primary, fallback or captions")
    start_index: int = Field(default=0, description="Transcript position of the first caption")


class TurnResponse(BaseModel):
    """Outcome of a learner action"""
    session: SessionView
    reply: Optional[str] = Field(default=None, description="Tutor utterance")
    captions: List[str] = Field(default_factory=list, description="Caption sentences in display order")
    segments: List[SpeechSegmentView] = Field(default_factory=list, description="Caption timing per spoken reply")
    has_audio: bool = Field(default=False, description="Whether speech audio was produced")
    verdict: Optional[str] = Field(default=None, description="correct/incorrect when an answer was judged")
    error: Optional[str] = Field(default=None, description="Generic message when the tutor is unavailable")


class PrintableResponse(BaseModel):
    """Printable worksheet or test"""
    kind: str
    title: str
    body: str
    answer_key: str


class JudgeRequest(BaseModel):
    """Standalone answer judging request"""
    question: Dict[str, Any] = Field(..., description="Question item in lesson JSON shape")
    answer: str = Field(..., description="Learner answer")


class JudgeResponse(BaseModel):
    """Standalone answer judging result"""
    correct: bool
    mode: str
    acceptable: List[str] = Field(default_factory=list)
    matched_keywords: List[str] = Field(default_factory=list)
    required_keywords: int = 0


# =============================================================================
# Health Check Schemas
# =============================================================================

class ComponentHealth(BaseModel):
    """Health status of a single component"""
    name: str = Field(..., description="Component name")
    status: ComponentStatus = Field(..., description="Component status")
    latency_ms: Optional[float] = Field(default=None, description="Check latency in milliseconds")
    message: Optional[str] = Field(default=None, description="Status message or error")


class HealthResponse(BaseModel):
    """Health check response"""
    status: str = Field(..., description="Overall system status")
    version: str = Field(..., description="Application version")
    environment: str = Field(..., description="Current environment")
    components: Dict[str, ComponentHealth] = Field(
        ...,
        description="Status of components: API, Lessons, Dialogue, Speech"
    )
    timestamp: datetime = Field(default_factory=utc_now, description="Check timestamp")


# =============================================================================
# Error Response Schemas
# =============================================================================

class ErrorDetail(BaseModel):
    """Detail of a validation or processing error"""
    field: Optional[str] = Field(default=None, description="Field that caused the error")
    message: str = Field(..., description="Error message")
    code: Optional[str] = Field(default=None, description="Error code")


class ErrorResponse(BaseModel):
    """Standard error response format"""
    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[List[ErrorDetail]] = Field(default=None, description="Error details")
    timestamp: datetime = Field(default_factory=utc_now, description="Error timestamp")


class RateLimitResponse(BaseModel):
    """Rate limit exceeded response"""
    error: str = Field(default="rate_limited", description="Error type")
    message: str = Field(default="Rate limit exceeded", description="Error message")
    retry_after: int = Field(..., description="Seconds until rate limit resets")
