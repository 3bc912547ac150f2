"""
Service layer for the lesson tutor.

Only leaf services are re-exported here. The session service sits above
the engine and is imported from lesson_tutor.services.session_service.
"""

from lesson_tutor.services.dialogue_client import (
    DialogueClient,
    DialogueResult,
    GeminiDialogueBackend,
    HttpDialogueBackend,
    create_backend,
)
from lesson_tutor.services.printable import format_answer_key, format_printable
from lesson_tutor.services.speech_client import SpeechClient, get_speech_client

__all__ = [
    "DialogueClient",
    "DialogueResult",
    "GeminiDialogueBackend",
    "HttpDialogueBackend",
    "create_backend",
    "format_answer_key",
    "format_printable",
    "SpeechClient",
    "get_speech_client",
]
