"""
Domain exceptions for the tutoring session orchestrator.

Cancellation is not an error and has no exception here; aborted
dialogue calls come back as DialogueResult(aborted=True).
"""
from typing import Optional


class TutorError(Exception):
    """Base exception for the tutoring service."""
    pass


class DialogueServiceError(TutorError):
    """Raised when the dialogue service returns a non-2xx status or times out."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DialogueRouteNotReadyError(DialogueServiceError):
    """Raised for the transient 'route not ready' (404) class of failure."""

    def __init__(self, message: str = "Dialogue route not ready"):
        super().__init__(message, status_code=404)


class LessonNotFoundError(TutorError):
    """Raised when the content source has no lesson for a reference."""
    pass


class QuestionSupplyExhaustedError(TutorError):
    """Raised when no question can be produced even after rebuilding from the lesson."""
    pass


class PhaseTransitionError(TutorError):
    """Raised when a navigation request is not allowed in the current phase."""
    pass


class SessionNotFoundError(TutorError):
    """Raised when a session id is unknown."""
    pass


class PlaybackBlockedError(TutorError):
    """Raised by a playback strategy when autoplay is blocked until a user gesture."""
    pass


class PlaybackFailedError(TutorError):
    """Raised by a playback strategy that cannot play the given audio."""
    pass
