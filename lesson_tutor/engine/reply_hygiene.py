"""
Reply hygiene - per-step post-processing of dialogue replies.

Rules by step:
- discussion and teaching: strip future-phase vocabulary
- teaching body: the gate question appears exactly once, at the end;
  every other question mark becomes a period
- gate response (proceed): keep encouragement plus the comprehension cue
- exercise and worksheet: strip vocabulary of later phases only
- review: a requested cue phrase appears at most once
- anywhere else: questions become statements
"""

import logging
import re
from enum import Enum
from typing import List, Optional

logger = logging.getLogger(__name__)


FORBIDDEN_ALL = re.compile(r"\b(exercise|worksheet|test|exam|quiz|answer key)\b", re.IGNORECASE)
FORBIDDEN_AFTER_EXERCISE = re.compile(r"\b(worksheet|test|exam|quiz|answer key)\b", re.IGNORECASE)
FORBIDDEN_AFTER_WORKSHEET = re.compile(r"\b(test|exam|quiz|answer key)\b", re.IGNORECASE)

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

EXERCISE_TRANSITION_PATTERNS = [
    re.compile(r"that's it for the exercise\. let's do the worksheet\.", re.IGNORECASE),
    re.compile(r"let me know when you're ready to begin the worksheet\.", re.IGNORECASE),
]


class StepType(str, Enum):
    """Kind of turn a reply belongs to."""
    OPENING = "opening"
    OPENING_REPLY = "opening-reply"
    TEACHING = "teaching"
    GATE_RESPONSE = "teaching-gate-response"
    COMPREHENSION = "comprehension"
    EXERCISE = "exercise"
    WORKSHEET = "worksheet"
    REVIEW = "review"
    CLOSING = "closing"
    DEFAULT = "default"


def _squash(text: str) -> str:
    return re.sub(r"\s{2,}", " ", text or "").strip()


def split_sentences(text: str) -> List[str]:
    return [s for s in SENTENCE_SPLIT.split(_squash(text)) if s]


def keep_first_occurrence(text: str, phrase: str) -> str:
    """Remove every occurrence of phrase after the first (case-insensitive)."""
    if not phrase:
        return text
    pattern = re.compile(re.escape(phrase), re.IGNORECASE)
    seen = []
    
    def _replace(match):
        if seen:
            return ""
        seen.append(True)
        return match.group(0)
    
    return _squash(pattern.sub(_replace, text))


class ReplyHygiene:
    """
    Applies step-specific clean-up to raw replies.
    
    Args:
        gate_question: the single question allowed at the end of teaching
        comprehension_cue: fixed phrase that ends the teaching track
    """
    
    def __init__(
        self,
        gate_question: str,
        comprehension_cue: str,
    ):
        self.gate_question = gate_question
        self.comprehension_cue = comprehension_cue
        self._gate_pattern = re.compile(re.escape(gate_question), re.IGNORECASE)
    
    def apply(self, text: str, step: StepType, cue_phrase: Optional[str] = None) -> str:
        reply = _squash(text)
        if step == StepType.OPENING:
            reply = self._opening(reply)
        elif step == StepType.OPENING_REPLY:
            reply = _squash(FORBIDDEN_ALL.sub("", reply)).replace("?", ".")
        elif step == StepType.TEACHING:
            reply = self._with_single_gate(_squash(FORBIDDEN_ALL.sub("", reply)))
        elif step == StepType.GATE_RESPONSE:
            reply = self._gate_response(reply)
        elif step == StepType.COMPREHENSION:
            pass
        elif step == StepType.EXERCISE:
            if any(p.search(reply) for p in EXERCISE_TRANSITION_PATTERNS):
                reply = _squash(FORBIDDEN_AFTER_WORKSHEET.sub("", reply))
            else:
                reply = _squash(FORBIDDEN_AFTER_EXERCISE.sub("", reply))
        elif step == StepType.WORKSHEET:
            reply = _squash(FORBIDDEN_AFTER_WORKSHEET.sub("", reply))
        elif step in (StepType.REVIEW, StepType.CLOSING):
            if cue_phrase:
                reply = keep_first_occurrence(reply, cue_phrase)
        else:
            reply = reply.replace("?", ".")
        if reply != _squash(text):
            logger.debug(f"[HYGIENE] {step.value}: reply adjusted")
        return reply
    
    def _opening(self, reply: str) -> str:
        # Only the final question survives as a question
        questions = re.findall(r"[^?]*\?", reply)
        if questions:
            head = reply[: reply.rfind(questions[-1])].strip()
            last = questions[-1].strip()
            reply = f"{head.replace('?', '.')} {last}".strip() if head else last
        return _squash(FORBIDDEN_ALL.sub("", reply))
    
    def _with_single_gate(self, reply: str) -> str:
        parts = split_sentences(reply)
        body = [
            p.replace("?", ".") for p in parts if not self._gate_pattern.search(p)
        ]
        return _squash(" ".join(body + [self.gate_question]))
    
    def _gate_response(self, reply: str) -> str:
        cleaned = _squash(FORBIDDEN_ALL.sub("", reply))
        pos = cleaned.lower().find(self.comprehension_cue.lower())
        if pos != -1:
            # Encouragement before the cue survives; anything after it is dropped
            encouragement = cleaned[:pos].replace("?", ".").strip()
            return _squash(f"{encouragement} {self.comprehension_cue}")
        return self._with_single_gate(cleaned)
