"""
Pytest Configuration and Fixtures for Lesson Tutor Tests
"""
import random
import time

import pytest
from hypothesis import settings

from lesson_tutor.cache.assessment_cache import InMemoryAssessmentCache
from lesson_tutor.core.config import SessionTargets
from lesson_tutor.engine.assessment_generator import AssessmentGenerator
from lesson_tutor.engine.phase_controller import PhaseController
from lesson_tutor.engine.playback import SpeechCaptionSynchronizer
from lesson_tutor.engine.question_supply import QuestionSupplyManager
from lesson_tutor.engine.reply_hygiene import ReplyHygiene
from lesson_tutor.models.lesson import Lesson
from lesson_tutor.models.schemas import DialogueReply
from lesson_tutor.models.session import SessionState
from lesson_tutor.prompts.prompt_loader import PromptLoader
from lesson_tutor.services.dialogue_client import DialogueClient

# Configure Hypothesis profiles
settings.register_profile("ci", max_examples=100, deadline=None)
settings.register_profile("dev", max_examples=50, deadline=5000)
settings.load_profile("dev")


LESSON_DATA = {
    "title": "Adding Fractions",
    "subject": "math",
    "grade": "3",
    "difficulty": "beginner",
    "teachingNotes": "Add fractions with the same denominator by adding the numerators.",
    "vocab": [
        {"term": "numerator", "definition": "the top number of a fraction"},
        {"term": "denominator", "definition": "the bottom number of a fraction"},
    ],
    "sample": [
        {"question": "What is 1/4 + 2/4?", "answer": "3/4"},
        {"q": "What is 1/5 + 1/5?", "a": "2/5"},
        {"question": "What is 2/6 + 3/6?", "answer": "5/6"},
    ],
    "wordProblems": [
        {
            "question": "Sam ate 1/8 of a pizza and Ana ate 3/8. How much did they eat together?",
            "answer": "4/8",
            "expectedAny": ["1/2", "one half"],
        },
        {"question": "A ribbon is 2/10 m and another is 5/10 m. How long are both?", "answer": "7/10"},
        {"question": "Mia read 1/3 of a book on Monday and 1/3 on Tuesday. How much did she read?", "answer": "2/3"},
    ],
    "trueFalse": [
        {"question": "1/2 + 1/2 equals 1.", "answer": True},
        {"question": "1/3 + 1/3 equals 2/6.", "answer": False},
    ],
    "multipleChoice": [
        {"question": "What is 1/4 + 1/4?", "options": ["A. 2/4", "B. 2/8", "C. 1/8"], "correct": 0},
        {"question": "Which fraction equals 3/3?", "options": ["1/3", "1", "3"], "answer": "B"},
    ],
    "fillInBlank": [
        {"question": "3/7 + 2/7 = ____", "answer": "5/7"},
    ],
    "shortAnswer": [
        {
            "question": "Explain how to add 1/5 and 2/5.",
            "answer": "Add the numerators and keep the denominator.",
            "keywords": ["numerators", "denominator"],
            "minKeywords": 2,
        },
    ],
}


class FakeDialogueBackend:
    """
    Scripted dialogue backend.

    Queued entries in `replies` are returned in order: a string is the
    reply text, an exception is raised, a callable receives the request.
    Setting `gate` to an asyncio.Event holds every call until it is set.
    """

    def __init__(self):
        self.requests = []
        self.replies = []
        self.default_reply = "Okay."
        self.gate = None
        self.warm_calls = 0
        self.closed = False

    async def complete(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0) if self.replies else self.default_reply
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(request)
        return DialogueReply(reply=reply)

    async def warm(self):
        self.warm_calls += 1

    async def close(self):
        self.closed = True


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def lesson_data():
    return dict(LESSON_DATA)


@pytest.fixture
def sample_lesson():
    return Lesson.model_validate(LESSON_DATA)


@pytest.fixture
def prompts():
    return PromptLoader()


@pytest.fixture
def fake_backend():
    return FakeDialogueBackend()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def targets():
    return SessionTargets(comprehension=2, exercise=2, worksheet=3, test=3)


@pytest.fixture
def make_controller(sample_lesson, fake_backend, prompts, targets):
    """Factory for a PhaseController wired to the fake backend."""

    def _make(session_targets=None, clock=None, lock_seconds=0.0, seed=7, synchronizer=None):
        rng = random.Random(seed)
        state = SessionState(lesson_ref="adding-fractions", learner_id="learner-1")
        dialogue = DialogueClient(
            fake_backend,
            ReplyHygiene(prompts.gate_question, prompts.comprehension_cue),
            retry_delays=[0.0, 0.0],
            timeout=5.0,
        )
        return PhaseController(
            state=state,
            lesson=sample_lesson,
            targets=session_targets or targets,
            dialogue=dialogue,
            synchronizer=synchronizer or SpeechCaptionSynchronizer(pace=False),
            supply=QuestionSupplyManager(sample_lesson, "math", rng),
            generator=AssessmentGenerator(InMemoryAssessmentCache(), "math", rng),
            prompts=prompts,
            rng=rng,
            learner_name="Sam",
            clock=clock or time.monotonic,
            awaiting_lock_seconds=lock_seconds,
        )

    return _make
