"""
Phase Controller - the session state machine.

Major phases run in a fixed order:
discussion -> comprehension -> exercise -> worksheet -> test -> congrats

Teaching is a sub-track of discussion. Comprehension and exercise end
after a target number of correct answers, the worksheet after its last
item, and each then advances to the next phase's awaiting-begin
sub-phase with counters reset. The test collects answers silently, then
hands them to the review sequencer; congrats follows the review.

The controller is the only writer of SessionState. Manual navigation
aborts everything in flight (dialogue call, audio, caption timers,
transient input) before the state changes; replies from calls that
started before the transition are dropped.
"""

import inspect
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from lesson_tutor.cache.assessment_cache import CachedAssessments
from lesson_tutor.core.config import SessionTargets, settings
from lesson_tutor.core.exceptions import PhaseTransitionError
from lesson_tutor.engine.answer_judge import build_judging_directive
from lesson_tutor.engine.assessment_generator import AssessmentGenerator
from lesson_tutor.engine.guardrails import InputGuardrails, get_guardrails, mask_for_log
from lesson_tutor.engine.phase_timers import PhaseTimerBoard, PhaseTimerStatus
from lesson_tutor.engine.playback import SpeechCaptionSynchronizer, SpeechOutcome
from lesson_tutor.engine.question_supply import QuestionSupplyManager
from lesson_tutor.engine.reply_hygiene import StepType
from lesson_tutor.engine.review_sequencer import ReviewEntry, ReviewSequencer
from lesson_tutor.engine.verdict import Verdict, parse_lead_in
from lesson_tutor.models.lesson import Lesson, QuestionItem
from lesson_tutor.models.session import (
    ACTIVE,
    AWAITING_BEGIN,
    MajorPhase,
    PhaseHistoryEntry,
    SessionState,
    SubPhase,
    TeachingStage,
    next_phase,
    previous_phase,
)
from lesson_tutor.prompts.prompt_loader import PromptLoader
from lesson_tutor.services.dialogue_client import DialogueClient, DialogueResult

logger = logging.getLogger(__name__)


class PhaseEvent(str, Enum):
    PHASE_CHANGE = "phase_change"
    SESSION_COMPLETE = "session_complete"


# Sub-phases in which manual navigation is refused
NO_SKIP_SUBPHASES = {SubPhase.TEST_ACTIVE, SubPhase.TEST_REVIEW}

PHASE_STEPS = {
    MajorPhase.COMPREHENSION: StepType.COMPREHENSION,
    MajorPhase.EXERCISE: StepType.EXERCISE,
    MajorPhase.WORKSHEET: StepType.WORKSHEET,
}


def format_question(item: QuestionItem) -> str:
    """Question text as read aloud, with lettered options for multiple choice."""
    text = item.prompt.strip()
    if item.is_true_false:
        text = f"True/False: {text}"
    if item.is_multiple_choice:
        options = "  ".join(
            f"{item.letter_for(i)}. {item.option_text(i)}"
            for i in range(len(item.options))
            if item.option_text(i)
        )
        text = f"{text} {options}"
    return text


def spoken_test_question(index: int, item: QuestionItem) -> str:
    return f"Question {index + 1}. {format_question(item)}"


@dataclass
class TurnOutcome:
    """What one controller operation produced for the learner."""
    replies: List[str] = field(default_factory=list)
    captions: List[str] = field(default_factory=list)
    segments: List[SpeechOutcome] = field(default_factory=list)
    has_audio: bool = False
    verdict: Optional[Verdict] = None
    error: Optional[str] = None
    aborted: bool = False

    @property
    def reply(self) -> Optional[str]:
        return " ".join(self.replies) if self.replies else None


class PhaseController:
    """
    Drives one learner through one lesson.

    Args:
        state: session state (owned and written by this controller)
        lesson: loaded lesson content
        targets: per-session numeric targets
        dialogue: dialogue client for this session
        synchronizer: speech and caption output
        supply: comprehension/exercise question supply
        generator: worksheet/test set generator
        prompts: prompt templates
        clock: monotonic clock used for the awaiting lock and phase timers
        timers: play/work phase timers
    """

    def __init__(
        self,
        state: SessionState,
        lesson: Lesson,
        targets: SessionTargets,
        dialogue: DialogueClient,
        synchronizer: SpeechCaptionSynchronizer,
        supply: QuestionSupplyManager,
        generator: AssessmentGenerator,
        prompts: PromptLoader,
        guardrails: Optional[InputGuardrails] = None,
        rng: Optional[random.Random] = None,
        learner_name: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        awaiting_lock_seconds: Optional[float] = None,
        timers: Optional[PhaseTimerBoard] = None,
    ):
        self.state = state
        self.lesson = lesson
        self.targets = targets
        self.dialogue = dialogue
        self.synchronizer = synchronizer
        self.supply = supply
        self.generator = generator
        self.prompts = prompts
        self.guardrails = guardrails or get_guardrails()
        self.learner_name = learner_name or "there"
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock_seconds = (
            settings.awaiting_lock_seconds if awaiting_lock_seconds is None else awaiting_lock_seconds
        )
        self.reviewer = ReviewSequencer(prompts, strategy=targets.review_strategy, rng=self._rng)
        self.timers = timers or PhaseTimerBoard(clock=clock)
        self.timers.enter(state.phase)

        self._assessments: Optional[CachedAssessments] = None
        self._epoch = 0
        self._listeners: Dict[PhaseEvent, List[Callable]] = {event: [] for event in PhaseEvent}

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: PhaseEvent, callback: Callable) -> None:
        self._listeners[event].append(callback)

    def off(self, event: PhaseEvent, callback: Callable) -> None:
        if callback in self._listeners[event]:
            self._listeners[event].remove(callback)

    async def _emit(self, event: PhaseEvent, **payload: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                result = callback(self.state, **payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"[PHASE] Listener for {event.value} failed: {e}")

    # =========================================================================
    # Observable state
    # =========================================================================

    @property
    def current_target(self) -> Optional[int]:
        return {
            MajorPhase.COMPREHENSION: self.targets.comprehension,
            MajorPhase.EXERCISE: self.targets.exercise,
            MajorPhase.WORKSHEET: self.targets.worksheet,
            MajorPhase.TEST: self.targets.test,
        }.get(self.state.phase)

    @property
    def assessments(self) -> Optional[CachedAssessments]:
        return self._assessments

    def _locked(self) -> bool:
        return self._clock() < self.state.awaiting_lock_until

    def _is_stale(self, epoch: int) -> bool:
        return epoch != self._epoch

    @property
    def progress_percent(self) -> float:
        """Share of the current phase's target already reached."""
        target = self.current_target
        if not target:
            return 0.0
        return min(100.0, self.state.ticker / target * 100)

    def timer_status(self) -> Optional[PhaseTimerStatus]:
        return self.timers.status(self.progress_percent)

    # =========================================================================
    # Playback controls
    # =========================================================================

    def pause(self) -> None:
        """Hold narration, video, caption timers and the phase timer."""
        self.synchronizer.pause()
        self.timers.pause()
        logger.info(f"[PHASE] Session paused in {self.state.subphase.value}")

    def resume(self) -> None:
        self.synchronizer.resume()
        self.timers.resume()
        logger.info(f"[PHASE] Session resumed in {self.state.subphase.value}")

    # =========================================================================
    # Transitions
    # =========================================================================

    def abort_all(self) -> None:
        """Cancel the dialogue call, stop audio and captions, clear transient input."""
        self.dialogue.cancel()
        self.synchronizer.stop()
        # Navigation also ends a pause
        self.timers.resume()
        self.state.pending_input = ""
        self._epoch += 1

    async def _enter(self, phase: MajorPhase, skipped: bool = False) -> None:
        state = self.state
        previous = state.phase
        state.history.append(PhaseHistoryEntry(phase=state.phase, subphase=state.subphase))
        state.phase = phase
        state.subphase = AWAITING_BEGIN[phase]
        state.ticker = 0
        state.question_count = 0
        state.current_problem = None
        state.teaching_stage = None
        state.skipped_into = skipped
        if phase == MajorPhase.WORKSHEET:
            state.worksheet_index = 0
        elif phase == MajorPhase.TEST:
            state.test_index = 0
            state.test_answers = []
            state.test_result = None
            self.reviewer.reset()
        if skipped:
            state.awaiting_lock_until = self._clock() + self._lock_seconds
        self.timers.enter(phase, completed=not skipped)

        logger.info(
            f"[PHASE] {previous.value} -> {phase.value} ({state.subphase.value})"
            f"{' via navigation' if skipped else ''}"
        )
        await self._emit(PhaseEvent.PHASE_CHANGE, previous=previous)
        if phase == MajorPhase.CONGRATS:
            await self._complete()

    async def _complete(self) -> None:
        await self.generator.clear(self.state.lesson_ref, self.state.learner_id, self.targets)
        self._assessments = None
        await self._emit(PhaseEvent.SESSION_COMPLETE)

    async def _advance(self) -> None:
        """Automatic advance after a phase reached its target."""
        self.dialogue.cancel()
        self.state.pending_input = ""
        target = next_phase(self.state.phase)
        if target is not None:
            await self._enter(target)

    def _check_navigation(self) -> None:
        if self.state.subphase in NO_SKIP_SUBPHASES:
            raise PhaseTransitionError("Navigation is not available during the test")

    async def skip_forward(self) -> TurnOutcome:
        """Jump to the next major phase's awaiting-begin sub-phase."""
        self._check_navigation()
        target = next_phase(self.state.phase)
        if target is None or self.state.phase == MajorPhase.TEST:
            raise PhaseTransitionError(f"Cannot skip forward from {self.state.phase.value}")
        self.abort_all()
        await self._enter(target, skipped=True)
        return TurnOutcome()

    async def skip_back(self) -> TurnOutcome:
        """Jump to the previous major phase's awaiting-begin sub-phase."""
        self._check_navigation()
        target = previous_phase(self.state.phase)
        if target is None:
            raise PhaseTransitionError(f"Cannot go back from {self.state.phase.value}")
        self.abort_all()
        await self._enter(target, skipped=True)
        return TurnOutcome()

    def restore(self, phase: MajorPhase, worksheet_index: int = 0, test_index: int = 0,
                test_answers: Optional[List[str]] = None) -> None:
        """Resume at the awaiting-begin sub-phase of a previously reached phase."""
        state = self.state
        state.phase = phase
        state.subphase = AWAITING_BEGIN[phase]
        state.worksheet_index = worksheet_index
        state.test_index = test_index
        state.test_answers = list(test_answers or [])[:test_index]
        self.timers.enter(phase)
        logger.info(f"[PHASE] Restored session at {phase.value}")

    # =========================================================================
    # Dialogue helpers
    # =========================================================================

    def _metadata(self, step: StepType) -> Dict[str, Any]:
        state = self.state
        in_teaching = state.subphase in (SubPhase.TEACHING, SubPhase.AWAITING_GATE)
        return {
            "phase": "teaching" if in_teaching else state.phase.value,
            "subphase": state.subphase.value,
            "step": step.value,
            "subject": self.lesson.subject,
            "difficulty": self.lesson.difficulty,
            "lesson": self.lesson.title,
            "ticker": state.ticker,
        }

    def _context(self, include_guard: bool) -> str:
        in_teaching = self.state.subphase in (SubPhase.TEACHING, SubPhase.AWAITING_GATE)
        return self.prompts.build_system_message(
            self.lesson,
            stage=self.state.teaching_stage if in_teaching else None,
            include_guard=include_guard,
            gate_phrase=self.prompts.gate_question if in_teaching else None,
        )

    async def _call(
        self,
        instruction: str,
        step: StepType,
        learner_text: Optional[str] = None,
        cue_phrase: Optional[str] = None,
    ) -> DialogueResult:
        return await self.dialogue.send(
            self._context,
            instruction,
            learner_text=learner_text,
            metadata=self._metadata(step),
            step=step,
            cue_phrase=cue_phrase,
        )

    async def _say(self, outcome: TurnOutcome, text: str, audio: Optional[bytes], epoch: int) -> bool:
        """Speak a reply; False if a transition happened meanwhile."""
        if self._is_stale(epoch):
            outcome.aborted = True
            return False
        spoken = await self.synchronizer.speak(text, audio)
        outcome.replies.append(text)
        outcome.captions.extend(spoken.sentences)
        if spoken.sentences:
            outcome.segments.append(spoken)
        outcome.has_audio = outcome.has_audio or audio is not None
        if spoken.interrupted or self._is_stale(epoch):
            outcome.aborted = True
            return False
        return True

    def _prefetch_test_question(self, index: int) -> None:
        """Synthesize the next test question ahead of time."""
        test = self._assessments.test if self._assessments else []
        if self.dialogue.speech is not None and index < len(test):
            self.dialogue.speech.prefetch(spoken_test_question(index, test[index]))

    async def _speak_direct(self, outcome: TurnOutcome, text: str, epoch: int) -> bool:
        """Speak fixed text without the dialogue service."""
        audio = None
        if self.dialogue.speech is not None:
            audio = await self.dialogue.speech.synthesize(text)
        return await self._say(outcome, text, audio, epoch)

    async def _exchange(
        self,
        outcome: TurnOutcome,
        instruction: str,
        step: StepType,
        learner_text: Optional[str] = None,
        cue_phrase: Optional[str] = None,
    ) -> Optional[str]:
        """One dialogue call plus speech. Returns the reply, or None."""
        epoch = self._epoch
        result = await self._call(instruction, step, learner_text, cue_phrase)
        if result.aborted or self._is_stale(epoch):
            outcome.aborted = True
            return None
        if not result.success:
            outcome.error = result.error
            return None
        if not await self._say(outcome, result.text, result.audio, epoch):
            return None
        return result.text

    def _intro_line(self, phase: MajorPhase) -> str:
        intro = self.prompts.phase_intro(phase, self._rng)
        return f'Start by saying: "{intro}" ' if intro else ""

    # =========================================================================
    # Begin
    # =========================================================================

    async def start(self) -> TurnOutcome:
        """Open the session: begin discussion if nothing has happened yet."""
        if self.state.subphase == SubPhase.DISCUSSION_AWAITING_BEGIN:
            return await self.begin()
        return TurnOutcome()

    async def begin(self) -> TurnOutcome:
        """Explicit begin from an awaiting-begin sub-phase."""
        state = self.state
        if not state.is_awaiting_begin:
            raise PhaseTransitionError(f"Nothing to begin in {state.subphase.value}")

        phase = state.phase
        outcome = TurnOutcome()
        self.timers.start_work(phase)
        if phase == MajorPhase.DISCUSSION:
            state.subphase = SubPhase.OPENING
            instruction = self.prompts.render(
                "opening.greeting", learner_name=self.learner_name, title=self.lesson.title
            )
            await self._exchange(outcome, instruction, StepType.OPENING)
            return outcome

        if phase in (MajorPhase.WORKSHEET, MajorPhase.TEST):
            await self.ensure_assessments()

        state.subphase = ACTIVE[phase]
        state.skipped_into = False
        logger.info(f"[PHASE] Begin {phase.value}")

        if phase in (MajorPhase.COMPREHENSION, MajorPhase.EXERCISE):
            item = self.supply.next_question(phase, state.question_count)
            instruction = self._intro_line(phase) + self.prompts.render(
                f"asking.{phase.value}", prompt=format_question(item)
            )
            if await self._exchange(outcome, instruction, PHASE_STEPS[phase]) is not None:
                state.current_problem = item
                state.question_count += 1
            elif not outcome.aborted:
                self.supply.return_item(item)
                state.subphase = AWAITING_BEGIN[phase]
        elif phase == MajorPhase.WORKSHEET:
            item = self._assessments.worksheet[state.worksheet_index]
            instruction = self._intro_line(phase) + self.prompts.render(
                "asking.worksheet",
                cue=self.prompts.worksheet_cue(self._rng),
                number=state.worksheet_index + 1,
                prompt=format_question(item),
            )
            if await self._exchange(outcome, instruction, StepType.WORKSHEET) is not None:
                state.current_problem = item
            elif not outcome.aborted:
                state.subphase = AWAITING_BEGIN[phase]
        elif phase == MajorPhase.TEST:
            epoch = self._epoch
            intro = self.prompts.phase_intro(phase, self._rng)
            item = self._assessments.test[state.test_index]
            state.current_problem = item
            self._prefetch_test_question(state.test_index + 1)
            await self._speak_direct(outcome, f"{intro} {spoken_test_question(state.test_index, item)}".strip(), epoch)
        return outcome

    # =========================================================================
    # Learner input
    # =========================================================================

    async def send(self, text: str) -> TurnOutcome:
        """Handle one learner utterance in the current sub-phase."""
        state = self.state
        if self._locked():
            logger.info("[PHASE] Input dropped inside the awaiting lock")
            return TurnOutcome(aborted=True)
        if state.is_awaiting_begin:
            raise PhaseTransitionError(f"Press begin to start {state.phase.value}")
        if state.is_complete or state.subphase == SubPhase.TEST_REVIEW_FINISHED:
            raise PhaseTransitionError("This lesson is complete")

        cleaned = self.guardrails.clean(text).sanitized_content
        state.pending_input = cleaned
        self.synchronizer.add_learner_line(cleaned)
        logger.info(f"[PHASE] {state.subphase.value} input: {mask_for_log(cleaned)!r}")

        try:
            subphase = state.subphase
            if subphase == SubPhase.OPENING:
                return await self._handle_opening(cleaned)
            if subphase in (SubPhase.TEACHING, SubPhase.AWAITING_GATE):
                return await self._handle_gate(cleaned)
            if subphase in (SubPhase.COMPREHENSION_ACTIVE, SubPhase.EXERCISE_ACTIVE):
                return await self._handle_practice(cleaned)
            if subphase == SubPhase.WORKSHEET_ACTIVE:
                return await self._handle_worksheet(cleaned)
            if subphase == SubPhase.TEST_ACTIVE:
                return await self._handle_test_answer(cleaned)
            if subphase == SubPhase.TEST_REVIEW:
                return await self.run_review()
        finally:
            state.pending_input = ""
        raise PhaseTransitionError(f"No input expected in {state.subphase.value}")

    async def _handle_opening(self, text: str) -> TurnOutcome:
        outcome = TurnOutcome()
        instruction = self.prompts.render("opening.reply", title=self.lesson.title)
        if await self._exchange(outcome, instruction, StepType.OPENING_REPLY, learner_text=text) is None:
            return outcome
        first = TeachingStage.DEFINITIONS if self.lesson.vocabulary else TeachingStage.EXAMPLES
        await self._teach(outcome, first)
        return outcome

    async def _teach(self, outcome: TurnOutcome, stage: TeachingStage, repeat: bool = False) -> None:
        state = self.state
        previous = (state.subphase, state.teaching_stage)
        state.subphase = SubPhase.TEACHING
        state.teaching_stage = stage
        style = self.prompts.style_for(self.lesson.grade, self.lesson.difficulty)
        if repeat:
            instruction = self.prompts.render("teaching.repeat", stage=stage.value, style=style)
        else:
            instruction = self.prompts.render(f"teaching.{stage.value}", title=self.lesson.title, style=style)
        if await self._exchange(outcome, instruction, StepType.TEACHING) is not None:
            state.subphase = SubPhase.AWAITING_GATE
        elif not outcome.aborted:
            # Failed call: the learner's next message retries from where we were
            state.subphase, state.teaching_stage = previous

    async def _handle_gate(self, text: str) -> TurnOutcome:
        state = self.state
        outcome = TurnOutcome()
        stage = state.teaching_stage or TeachingStage.EXAMPLES
        if self.prompts.is_yes(text):
            logger.info(f"[PHASE] Repeating teaching stage {stage.value}")
            await self._teach(outcome, stage, repeat=True)
            return outcome
        if stage == TeachingStage.DEFINITIONS:
            await self._teach(outcome, TeachingStage.EXAMPLES)
            return outcome

        epoch = self._epoch
        instruction = self.prompts.render("teaching.gate_response", cue=self.prompts.comprehension_cue)
        reply = await self._exchange(outcome, instruction, StepType.GATE_RESPONSE, learner_text=text)
        if reply is not None and not self._is_stale(epoch):
            await self._advance()
        return outcome

    async def _handle_practice(self, text: str) -> TurnOutcome:
        state = self.state
        phase = state.phase
        outcome = TurnOutcome()
        item = state.current_problem
        if item is None:
            item = self.supply.next_question(phase, state.question_count)
            state.current_problem = item
            state.question_count += 1

        target = self.current_target or 1
        finishing = state.ticker + 1 >= target
        upcoming = None if finishing else self.supply.next_question(phase, state.question_count)

        directive = build_judging_directive(item, text, phase_label=f"{phase.value} question")
        if upcoming is not None:
            directive += "\n" + self.prompts.render("feedback.after_correct_next", prompt=format_question(upcoming))
        directive += "\n" + self.prompts.render("feedback.after_incorrect")

        epoch = self._epoch
        reply = await self._exchange(outcome, directive, PHASE_STEPS[phase], learner_text=text)
        if reply is None or self._is_stale(epoch):
            if upcoming is not None:
                self.supply.return_item(upcoming)
            return outcome

        outcome.verdict = parse_lead_in(reply)
        if outcome.verdict != Verdict.CORRECT:
            if upcoming is not None:
                self.supply.return_item(upcoming)
            return outcome

        state.ticker += 1
        logger.info(f"[PHASE] {phase.value} correct {state.ticker}/{target}")
        if state.ticker >= target:
            await self._advance()
        else:
            state.current_problem = upcoming
            state.question_count += 1
        return outcome

    async def _handle_worksheet(self, text: str) -> TurnOutcome:
        state = self.state
        outcome = TurnOutcome()
        worksheet = self._assessments.worksheet if self._assessments else []
        item = state.current_problem or worksheet[state.worksheet_index]
        next_index = state.worksheet_index + 1
        upcoming = worksheet[next_index] if next_index < len(worksheet) else None

        directive = build_judging_directive(item, text, phase_label="worksheet question")
        if upcoming is not None:
            directive += "\nIf the answer is correct: " + self.prompts.render(
                "asking.worksheet",
                cue=self.prompts.worksheet_cue(self._rng),
                number=next_index + 1,
                prompt=format_question(upcoming),
            )
        directive += "\nIf the answer is incorrect: " + self.prompts.render(
            "asking.worksheet_again",
            number=state.worksheet_index + 1,
            prompt=format_question(item),
        )

        epoch = self._epoch
        reply = await self._exchange(outcome, directive, StepType.WORKSHEET, learner_text=text)
        if reply is None or self._is_stale(epoch):
            return outcome

        outcome.verdict = parse_lead_in(reply)
        if outcome.verdict != Verdict.CORRECT:
            # The same question is asked again until it is answered correctly
            state.current_problem = item
            logger.info(f"[PHASE] worksheet question {next_index} not correct, asking again")
            return outcome

        state.ticker += 1
        state.worksheet_index = next_index
        state.current_problem = upcoming
        logger.info(f"[PHASE] worksheet {next_index}/{len(worksheet)}, correct {state.ticker}")
        if upcoming is None:
            await self._advance()
        return outcome

    async def _handle_test_answer(self, text: str) -> TurnOutcome:
        state = self.state
        outcome = TurnOutcome()
        test = self._assessments.test if self._assessments else []
        state.test_answers.append(text)
        state.test_index += 1
        state.ticker = state.test_index
        if state.test_index < len(test):
            item = test[state.test_index]
            state.current_problem = item
            self._prefetch_test_question(state.test_index + 1)
            await self._speak_direct(outcome, spoken_test_question(state.test_index, item), self._epoch)
            return outcome

        state.current_problem = None
        state.subphase = SubPhase.TEST_REVIEW
        logger.info(f"[PHASE] Test answers collected: {len(state.test_answers)}")
        review = await self.run_review()
        outcome.replies.extend(review.replies)
        outcome.captions.extend(review.captions)
        outcome.segments.extend(review.segments)
        outcome.has_audio = review.has_audio
        outcome.error = review.error
        outcome.aborted = review.aborted
        return outcome

    # =========================================================================
    # Review
    # =========================================================================

    async def run_review(self) -> TurnOutcome:
        """Review the collected test answers, score them and enter congrats."""
        state = self.state
        if state.subphase != SubPhase.TEST_REVIEW:
            raise PhaseTransitionError("No test to review")
        outcome = TurnOutcome()
        test = self._assessments.test if self._assessments else []
        entries = [
            ReviewEntry(number=i + 1, item=item, learner_answer=state.test_answers[i] if i < len(state.test_answers) else "")
            for i, item in enumerate(test)
        ]

        epoch = self._epoch
        per_item = self.reviewer.strategy == "per_item"

        async def ask(instruction: str, step: StepType, cue: Optional[str]) -> Optional[str]:
            reply = await self._exchange(outcome, instruction, step, cue_phrase=cue)
            if reply is not None and per_item:
                # The next item is reviewed only once this one has been heard
                await self.synchronizer.wait_idle()
                if self._is_stale(epoch):
                    outcome.aborted = True
                    return None
            return reply

        result = await self.reviewer.run(entries, ask)
        if result is None or self._is_stale(epoch):
            return outcome

        state.test_result = result
        state.subphase = SubPhase.TEST_REVIEW_FINISHED
        await self._advance()
        return outcome

    # =========================================================================
    # Assessments
    # =========================================================================

    async def ensure_assessments(self) -> CachedAssessments:
        if self._assessments is None:
            self._assessments = await self.generator.get_or_generate(
                self.state.lesson_ref, self.lesson, self.state.learner_id, self.targets
            )
        return self._assessments

    async def refresh_assessments(self) -> CachedAssessments:
        """Discard and regenerate both sets and reset read progress."""
        state = self.state
        if state.subphase in NO_SKIP_SUBPHASES:
            raise PhaseTransitionError("Assessments cannot be refreshed during the test")
        self._assessments = await self.generator.refresh(
            state.lesson_ref, self.lesson, state.learner_id, self.targets
        )
        state.worksheet_index = 0
        state.test_index = 0
        state.test_answers = []
        state.test_result = None
        self.reviewer.reset()
        if state.phase in (MajorPhase.WORKSHEET, MajorPhase.TEST):
            self.abort_all()
            state.subphase = AWAITING_BEGIN[state.phase]
            state.current_problem = None
            state.ticker = 0
        return self._assessments
