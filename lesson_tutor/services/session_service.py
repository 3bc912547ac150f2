"""
Session Service - registry of live tutoring sessions.

Wires one PhaseController per session from the shared collaborators
(lesson source, assessment cache, snapshot store, dialogue backend,
speech client) and resumes a learner at the last phase they reached.

**Pattern:** Singleton Service
"""

import logging
import random
from typing import Any, Dict, Mapping, Optional, Tuple

from lesson_tutor.cache.assessment_cache import AssessmentCacheStore, get_assessment_cache
from lesson_tutor.cache.snapshot_store import (
    SessionSnapshot,
    SessionSnapshotStore,
    get_snapshot_store,
    snapshot_key,
)
from lesson_tutor.core.config import SessionTargets, settings
from lesson_tutor.core.exceptions import SessionNotFoundError
from lesson_tutor.engine.assessment_generator import AssessmentGenerator
from lesson_tutor.engine.phase_controller import PhaseController, PhaseEvent, TurnOutcome
from lesson_tutor.engine.phase_timers import PhaseTimerBoard
from lesson_tutor.engine.playback import SpeechCaptionSynchronizer, SpeechOutcome
from lesson_tutor.engine.question_supply import QuestionSupplyManager
from lesson_tutor.engine.reply_hygiene import ReplyHygiene
from lesson_tutor.models.schemas import (
    PhaseTimerView,
    PlaybackView,
    PrintableResponse,
    ScoreView,
    SessionView,
    SpeechSegmentView,
    TurnResponse,
)
from lesson_tutor.models.session import MajorPhase, SessionState
from lesson_tutor.prompts.prompt_loader import PromptLoader, get_prompt_loader
from lesson_tutor.repositories.lesson_repository import LessonContentSource, get_lesson_repository
from lesson_tutor.services.dialogue_client import DialogueBackend, DialogueClient, create_backend
from lesson_tutor.services.printable import (
    format_answer_key,
    format_printable,
    printable_title,
)
from lesson_tutor.services.speech_client import SpeechClient, get_speech_client

logger = logging.getLogger(__name__)


class SessionService:
    """
    Creates, stores and resumes tutoring sessions.

    Speech pacing is left to the client: speak() returns once captions
    are planned instead of waiting for narration to end.
    """

    def __init__(
        self,
        lessons: Optional[LessonContentSource] = None,
        cache: Optional[AssessmentCacheStore] = None,
        snapshots: Optional[SessionSnapshotStore] = None,
        prompts: Optional[PromptLoader] = None,
        backend: Optional[DialogueBackend] = None,
        speech: Optional[SpeechClient] = None,
        pace: bool = False,
    ):
        self.lessons = lessons or get_lesson_repository()
        self.cache = cache or get_assessment_cache()
        self.snapshots = snapshots or get_snapshot_store()
        self.prompts = prompts or get_prompt_loader()
        self.backend = backend or create_backend()
        self.speech = speech if speech is not None else get_speech_client()
        self.pace = pace
        self._sessions: Dict[str, PhaseController] = {}

        logger.info("SessionService initialized")

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_session(
        self,
        lesson_ref: str,
        learner_id: str,
        learner_name: Optional[str] = None,
        comprehension_target: Optional[int] = None,
        exercise_target: Optional[int] = None,
        worksheet_length: Optional[int] = None,
        test_length: Optional[int] = None,
        seed: Optional[int] = None,
        phase_timers: Optional[Mapping[str, Any]] = None,
        golden_key: bool = False,
    ) -> Tuple[PhaseController, TurnOutcome]:
        """
        Open a session and greet the learner, or resume a saved one.

        Raises:
            LessonNotFoundError: unknown lesson reference
        """
        lesson = await self.lessons.get_lesson(lesson_ref)
        targets = SessionTargets.resolve(
            settings,
            comprehension=comprehension_target,
            exercise=exercise_target,
            worksheet=worksheet_length,
            test=test_length,
        )
        rng = random.Random(seed)
        state = SessionState(lesson_ref=lesson_ref, learner_id=learner_id)

        dialogue = DialogueClient(
            self.backend,
            ReplyHygiene(self.prompts.gate_question, self.prompts.comprehension_cue),
            speech=self.speech,
        )
        controller = PhaseController(
            state=state,
            lesson=lesson,
            targets=targets,
            dialogue=dialogue,
            synchronizer=SpeechCaptionSynchronizer(pace=self.pace),
            supply=QuestionSupplyManager(lesson, settings.default_subject, rng),
            generator=AssessmentGenerator(self.cache, settings.default_subject, rng),
            prompts=self.prompts,
            rng=rng,
            learner_name=learner_name,
            timers=PhaseTimerBoard(phase_timers, golden_key=golden_key),
        )
        controller.on(PhaseEvent.PHASE_CHANGE, self._save_snapshot)
        controller.on(PhaseEvent.SESSION_COMPLETE, self._clear_snapshot)
        self._sessions[state.session_id] = controller

        snapshot = await self.snapshots.load(snapshot_key(lesson_ref, learner_id))
        if snapshot is not None and snapshot.phase not in (MajorPhase.DISCUSSION, MajorPhase.CONGRATS):
            controller.restore(
                snapshot.phase,
                worksheet_index=snapshot.worksheet_index,
                test_index=snapshot.test_index if snapshot.phase == MajorPhase.TEST else 0,
                test_answers=snapshot.test_answers if snapshot.phase == MajorPhase.TEST else None,
            )
            logger.info(f"Session {state.session_id} resumed at {snapshot.phase.value}")
            return controller, TurnOutcome()

        logger.info(f"Session {state.session_id} started: lesson={lesson_ref} learner={learner_id}")
        outcome = await controller.start()
        return controller, outcome

    def get(self, session_id: str) -> PhaseController:
        controller = self._sessions.get(session_id)
        if controller is None:
            raise SessionNotFoundError(f"Session '{session_id}' not found")
        return controller

    def end_session(self, session_id: str) -> None:
        controller = self._sessions.pop(session_id, None)
        if controller is not None:
            controller.abort_all()

    async def close(self) -> None:
        for session_id in list(self._sessions):
            self.end_session(session_id)
        await self.backend.close()
        if self.speech is not None:
            await self.speech.close()

    # =========================================================================
    # Playback controls
    # =========================================================================

    def pause(self, session_id: str) -> PhaseController:
        controller = self.get(session_id)
        controller.pause()
        return controller

    def resume(self, session_id: str) -> PhaseController:
        controller = self.get(session_id)
        controller.resume()
        return controller

    def set_muted(self, session_id: str, muted: bool) -> PhaseController:
        controller = self.get(session_id)
        controller.synchronizer.set_muted(muted)
        logger.info(f"Session {session_id} {'muted' if muted else 'unmuted'}")
        return controller

    async def unlock_audio(self, session_id: str) -> Tuple[PhaseController, bool]:
        """Learner gesture that allows sound; replays audio that autoplay refused."""
        controller = self.get(session_id)
        replaying = await controller.synchronizer.unlock()
        return controller, replaying

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def _save_snapshot(self, state: SessionState, **_) -> None:
        if state.phase == MajorPhase.CONGRATS:
            return
        await self.snapshots.save(
            snapshot_key(state.lesson_ref, state.learner_id),
            SessionSnapshot.from_state(state),
        )

    async def _clear_snapshot(self, state: SessionState, **_) -> None:
        await self.snapshots.clear(snapshot_key(state.lesson_ref, state.learner_id))
        logger.info(f"Session {state.session_id} complete; snapshot cleared")

    # =========================================================================
    # Views
    # =========================================================================

    @staticmethod
    def view(controller: PhaseController) -> SessionView:
        state = controller.state
        result = state.test_result
        sync = controller.synchronizer
        timer = controller.timer_status()
        return SessionView(
            session_id=state.session_id,
            lesson_ref=state.lesson_ref,
            learner_id=state.learner_id,
            phase=state.phase.value,
            subphase=state.subphase.value,
            ticker=state.ticker,
            target=controller.current_target,
            current_question=state.current_problem.prompt if state.current_problem else None,
            worksheet_index=state.worksheet_index,
            test_index=state.test_index,
            test_result=ScoreView(**result.model_dump()) if result else None,
            complete=state.is_complete,
            playback=PlaybackView(
                speaking=sync.is_speaking,
                paused=sync.paused,
                muted=sync.muted,
                needs_audio_unlock=sync.needs_audio_unlock,
            ),
            timer=PhaseTimerView(
                phase=timer.phase.value,
                kind=timer.kind.value,
                elapsed_seconds=timer.elapsed_seconds,
                limit_seconds=timer.limit_seconds,
                remaining_seconds=timer.remaining_seconds,
                expired=timer.expired,
                paused=timer.paused,
                pace=timer.pace.value,
            ) if timer else None,
        )

    @staticmethod
    def segment_view(spoken: SpeechOutcome) -> SpeechSegmentView:
        return SpeechSegmentView(
            captions=spoken.sentences,
            offsets=[round(offset, 3) for offset in spoken.offsets],
            duration=spoken.duration,
            strategy=spoken.strategy,
            start_index=spoken.start_index,
        )

    def turn_response(self, controller: PhaseController, outcome: TurnOutcome) -> TurnResponse:
        return TurnResponse(
            session=self.view(controller),
            reply=outcome.reply,
            captions=outcome.captions,
            segments=[self.segment_view(spoken) for spoken in outcome.segments],
            has_audio=outcome.has_audio,
            verdict=outcome.verdict.value if outcome.verdict else None,
            error=outcome.error,
        )

    async def printable(self, controller: PhaseController, kind: str) -> PrintableResponse:
        """Printable worksheet or test with its answer key."""
        sets = await controller.ensure_assessments()
        items = sets.worksheet if kind == "worksheet" else sets.test
        return PrintableResponse(
            kind=kind,
            title=printable_title(kind, controller.lesson.title),
            body="\n".join(format_printable(items)),
            answer_key="\n".join(format_answer_key(items)),
        )


_session_service: Optional[SessionService] = None


def get_session_service() -> SessionService:
    """Get or create SessionService singleton."""
    global _session_service
    if _session_service is None:
        _session_service = SessionService()
    return _session_service


def set_session_service(service: Optional[SessionService]) -> None:
    """Replace the singleton (tests and application startup)."""
    global _session_service
    _session_service = service
