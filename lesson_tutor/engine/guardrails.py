"""
Input guardrails for learner utterances.

Learner text is cleaned before it reaches the dialogue service or a log
line: profanity is masked with asterisks, instruction-injection phrases
are removed, and PII is masked for logs.
"""

import logging
import re
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ValidationStatus(str, Enum):
    """Status of content validation."""
    VALID = "VALID"
    FLAGGED = "FLAGGED"


class ValidationResult(BaseModel):
    """Result of cleaning one learner utterance."""
    status: ValidationStatus = Field(default=ValidationStatus.VALID)
    issues: List[str] = Field(default_factory=list, description="List of issues found")
    sanitized_content: str = Field(default="", description="Text safe to forward")
    
    def has_issues(self) -> bool:
        return len(self.issues) > 0


PROFANITY_WORDS: List[str] = [
    "fuck", "shit", "bitch", "ass", "damn", "hell", "crap",
    "bastard", "dick", "pussy", "cock", "piss", "slut", "whore",
    "fuk", "fck", "sht", "btch", "arse", "azz", "dik",
    "fag", "faggot", "retard", "retarded",
    "porn", "naked", "nude", "boob", "penis", "vagina",
]

INJECTION_PATTERNS: List[str] = [
    r"ignore\s+(previous|all|the)\s+(instructions|rules)",
    r"disregard\s+(your|the)\s+rules",
    r"you\s+are\s+now\s+",
    r"pretend\s+to\s+be",
    r"forget\s+(everything|your\s+instructions)",
    r"new\s+instructions:",
    r"\[system\]",
    r"<\s*system\s*>",
    r"(tell|give)\s+me\s+the\s+answer\s+key",
]

PII_PATTERNS: Dict[str, str] = {
    "email": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
    "phone": r"\b(\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b",
}


class InputGuardrails:
    """
    Cleans learner input.
    
    Cleaning never blocks the session: the learner's turn still goes
    through, with offending parts masked or removed.
    """
    
    def __init__(self, profanity: Optional[List[str]] = None):
        words = profanity if profanity is not None else PROFANITY_WORDS
        self._profanity_patterns = [
            re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE) for word in words
        ]
        self._injection_patterns = [re.compile(p, re.IGNORECASE) for p in INJECTION_PATTERNS]
        self._pii_patterns = {name: re.compile(p) for name, p in PII_PATTERNS.items()}
    
    def contains_profanity(self, text: str) -> bool:
        return any(p.search(text or "") for p in self._profanity_patterns)
    
    def filter_profanity(self, text: str) -> str:
        """Replace each profane word with asterisks of the same length."""
        filtered = text or ""
        for pattern in self._profanity_patterns:
            filtered = pattern.sub(lambda m: "*" * len(m.group(0)), filtered)
        return filtered
    
    def detect_prompt_injection(self, text: str) -> bool:
        for pattern in self._injection_patterns:
            if pattern.search(text or ""):
                logger.warning(f"[GUARD] Injection pattern matched: {pattern.pattern}")
                return True
        return False
    
    def clean(self, text: str) -> ValidationResult:
        """
        Clean one learner utterance.
        
        Returns:
            ValidationResult with the text to forward and any issues found
        """
        issues = []
        cleaned = (text or "").strip()
        if self.contains_profanity(cleaned):
            issues.append("profanity")
            cleaned = self.filter_profanity(cleaned)
        if self.detect_prompt_injection(cleaned):
            issues.append("prompt_injection")
            for pattern in self._injection_patterns:
                cleaned = pattern.sub(" ", cleaned)
            cleaned = " ".join(cleaned.split())
        return ValidationResult(
            status=ValidationStatus.FLAGGED if issues else ValidationStatus.VALID,
            issues=issues,
            sanitized_content=cleaned,
        )
    
    def mask_pii(self, text: str) -> str:
        masked = text or ""
        for pii_type, pattern in self._pii_patterns.items():
            masked = pattern.sub(f"[{pii_type.upper()}]", masked)
        return masked


_guardrails: Optional[InputGuardrails] = None


def get_guardrails() -> InputGuardrails:
    global _guardrails
    if _guardrails is None:
        _guardrails = InputGuardrails()
    return _guardrails


def mask_for_log(text: str, limit: int = 60) -> str:
    """Truncated, profanity- and PII-masked text for log lines."""
    guard = get_guardrails()
    masked = guard.mask_pii(guard.filter_profanity(text or ""))
    return masked if len(masked) <= limit else masked[:limit] + "..."
