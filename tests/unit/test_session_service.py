"""
Unit tests for the session registry, snapshots and views.
"""
import pytest

from lesson_tutor.cache.assessment_cache import InMemoryAssessmentCache
from lesson_tutor.cache.snapshot_store import InMemorySnapshotStore, SessionSnapshot, snapshot_key
from lesson_tutor.core.config import settings
from lesson_tutor.core.exceptions import LessonNotFoundError, SessionNotFoundError
from lesson_tutor.models.session import MajorPhase, SubPhase
from lesson_tutor.repositories.lesson_repository import InMemoryLessonRepository
from lesson_tutor.services.session_service import SessionService
from lesson_tutor.services.speech_client import SpeechClient

LESSON_REF = "adding-fractions"


@pytest.fixture
def snapshots():
    return InMemorySnapshotStore()


@pytest.fixture
def service(sample_lesson, fake_backend, prompts, snapshots, monkeypatch):
    monkeypatch.setattr(settings, "awaiting_lock_seconds", 0.0)
    return SessionService(
        lessons=InMemoryLessonRepository({LESSON_REF: sample_lesson}),
        cache=InMemoryAssessmentCache(),
        snapshots=snapshots,
        prompts=prompts,
        backend=fake_backend,
        speech=SpeechClient(url=""),
    )


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_greets_learner(self, service, fake_backend):
        fake_backend.replies = ["Hi Sam! What's your favorite animal?"]
        controller, outcome = await service.start_session(LESSON_REF, "learner-1", learner_name="Sam", seed=1)

        assert outcome.reply == "Hi Sam! What's your favorite animal?"
        assert controller.state.subphase == SubPhase.OPENING
        assert service.get(controller.state.session_id) is controller
        assert fake_backend.requests[0].session["step"] == "opening"

    @pytest.mark.asyncio
    async def test_unknown_lesson(self, service):
        with pytest.raises(LessonNotFoundError):
            await service.start_session("no-such-lesson", "learner-1")

    def test_unknown_session(self, service):
        with pytest.raises(SessionNotFoundError):
            service.get("missing")

    @pytest.mark.asyncio
    async def test_targets_come_from_overrides(self, service):
        controller, _ = await service.start_session(LESSON_REF, "learner-1", worksheet_length=4, test_length=2)
        assert controller.targets.worksheet == 4
        assert controller.targets.test == 2
        assert controller.targets.comprehension == settings.comprehension_target

    @pytest.mark.asyncio
    async def test_end_and_close(self, service, fake_backend):
        controller, _ = await service.start_session(LESSON_REF, "learner-1")
        service.end_session(controller.state.session_id)
        assert service.active_sessions == 0
        await service.close()
        assert fake_backend.closed


class TestSnapshots:
    """
    **Feature: lesson-tutor, Property: Resume at last reached phase**
    """

    @pytest.mark.asyncio
    async def test_phase_change_saves_and_new_session_resumes(self, service, snapshots, fake_backend):
        controller, _ = await service.start_session(LESSON_REF, "learner-1")
        await controller.skip_forward()
        await controller.skip_forward()

        saved = await snapshots.load(snapshot_key(LESSON_REF, "learner-1"))
        assert saved.phase == MajorPhase.EXERCISE

        calls = len(fake_backend.requests)
        resumed, outcome = await service.start_session(LESSON_REF, "learner-1")
        assert resumed.state.subphase == SubPhase.EXERCISE_AWAITING_BEGIN
        assert outcome.reply is None
        assert len(fake_backend.requests) == calls

    @pytest.mark.asyncio
    async def test_test_progress_is_restored(self, service, snapshots):
        await snapshots.save(
            snapshot_key(LESSON_REF, "learner-2"),
            SessionSnapshot(
                lesson_ref=LESSON_REF,
                learner_id="learner-2",
                phase=MajorPhase.TEST,
                test_index=2,
                test_answers=["a", "b", "c"],
            ),
        )
        controller, _ = await service.start_session(LESSON_REF, "learner-2")
        assert controller.state.subphase == SubPhase.TEST_AWAITING_BEGIN
        assert controller.state.test_index == 2
        assert controller.state.test_answers == ["a", "b"]

    @pytest.mark.asyncio
    async def test_completion_clears_snapshot(self, service, snapshots):
        controller, _ = await service.start_session(
            LESSON_REF, "learner-3", worksheet_length=1, test_length=1, seed=3
        )
        for _ in range(4):
            await controller.skip_forward()
        assert controller.state.phase == MajorPhase.TEST
        assert await snapshots.load(snapshot_key(LESSON_REF, "learner-3")) is not None

        await controller.begin()
        await controller.send("3/4")

        assert controller.state.is_complete
        assert controller.state.test_result.total == 1
        assert await snapshots.load(snapshot_key(LESSON_REF, "learner-3")) is None


class TestViews:

    @pytest.mark.asyncio
    async def test_session_view(self, service):
        controller, _ = await service.start_session(LESSON_REF, "learner-1", comprehension_target=2)
        await controller.skip_forward()
        view = service.view(controller)
        assert view.phase == "comprehension"
        assert view.subphase == "comprehension-awaiting-begin"
        assert view.target == 2
        assert not view.complete

    @pytest.mark.asyncio
    async def test_printable_worksheet(self, service):
        controller, _ = await service.start_session(LESSON_REF, "learner-1", worksheet_length=4)
        printable = await service.printable(controller, "worksheet")
        assert printable.title == "Adding Fractions - Worksheet"
        assert printable.body.startswith("1. ")
        assert len(printable.answer_key.splitlines()) == 4
