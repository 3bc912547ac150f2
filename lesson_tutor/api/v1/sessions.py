"""
Tutoring Session API

One session walks a learner through discussion, comprehension,
exercise, worksheet, test and congrats. Every action returns the
tutor's reply together with the updated session view.
"""
import logging
from typing import Literal

from fastapi import APIRouter, Request, status

from lesson_tutor.api.deps import RequireApiKey, Sessions
from lesson_tutor.core.rate_limit import message_rate_limit
from lesson_tutor.models.schemas import (
    LearnerMessageRequest,
    MuteRequest,
    PrintableResponse,
    SessionView,
    StartSessionRequest,
    TurnResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["Sessions"])

COMMON_RESPONSES = {
    401: {"description": "Authentication required - missing X-API-Key"},
    404: {"description": "Unknown session"},
    409: {"description": "Action not allowed in the current phase"},
}


@router.post(
    "",
    response_model=TurnResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"description": "Authentication required - missing X-API-Key"},
        404: {"description": "Unknown lesson"},
    },
    summary="Start or resume a tutoring session",
)
async def start_session(
    body: StartSessionRequest,
    auth: RequireApiKey,
    service: Sessions,
) -> TurnResponse:
    """
    Open a session for a learner and lesson.

    A learner with a saved snapshot resumes at the phase they reached,
    waiting for Begin; otherwise the tutor greets them.
    """
    controller, outcome = await service.start_session(
        lesson_ref=body.lesson_ref,
        learner_id=body.learner_id,
        learner_name=body.learner_name,
        comprehension_target=body.comprehension_target,
        exercise_target=body.exercise_target,
        worksheet_length=body.worksheet_length,
        test_length=body.test_length,
        seed=body.seed,
        phase_timers=body.phase_timers,
        golden_key=body.golden_key,
    )
    return service.turn_response(controller, outcome)


@router.get("/{session_id}", response_model=SessionView, responses=COMMON_RESPONSES)
async def get_session(session_id: str, auth: RequireApiKey, service: Sessions) -> SessionView:
    return service.view(service.get(session_id))


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT, responses=COMMON_RESPONSES)
async def end_session(session_id: str, auth: RequireApiKey, service: Sessions) -> None:
    """Abort in-flight work and forget the session."""
    service.get(session_id)
    service.end_session(session_id)
    logger.info(f"Session {session_id} ended by client")


@router.post(
    "/{session_id}/begin",
    response_model=TurnResponse,
    responses=COMMON_RESPONSES,
    summary="Begin the current phase",
)
async def begin_phase(session_id: str, auth: RequireApiKey, service: Sessions) -> TurnResponse:
    controller = service.get(session_id)
    outcome = await controller.begin()
    return service.turn_response(controller, outcome)


@router.post(
    "/{session_id}/messages",
    response_model=TurnResponse,
    responses={**COMMON_RESPONSES, 429: {"description": "Rate limit exceeded"}},
    summary="Send a learner utterance",
)
@message_rate_limit
async def send_message(
    request: Request,
    session_id: str,
    body: LearnerMessageRequest,
    auth: RequireApiKey,
    service: Sessions,
) -> TurnResponse:
    """
    Route a learner utterance to the handler for the current subphase.

    Utterances that arrive inside the post-skip lock window are dropped
    and come back with no reply.
    """
    controller = service.get(session_id)
    outcome = await controller.send(body.text)
    return service.turn_response(controller, outcome)


@router.post(
    "/{session_id}/skip",
    response_model=TurnResponse,
    responses=COMMON_RESPONSES,
    summary="Skip forward one phase",
)
async def skip_forward(session_id: str, auth: RequireApiKey, service: Sessions) -> TurnResponse:
    controller = service.get(session_id)
    outcome = await controller.skip_forward()
    return service.turn_response(controller, outcome)


@router.post(
    "/{session_id}/back",
    response_model=TurnResponse,
    responses=COMMON_RESPONSES,
    summary="Go back one phase",
)
async def skip_back(session_id: str, auth: RequireApiKey, service: Sessions) -> TurnResponse:
    controller = service.get(session_id)
    outcome = await controller.skip_back()
    return service.turn_response(controller, outcome)


@router.post(
    "/{session_id}/pause",
    response_model=SessionView,
    responses=COMMON_RESPONSES,
    summary="Pause narration, captions and the phase timer",
)
async def pause_session(session_id: str, auth: RequireApiKey, service: Sessions) -> SessionView:
    return service.view(service.pause(session_id))


@router.post(
    "/{session_id}/resume",
    response_model=SessionView,
    responses=COMMON_RESPONSES,
    summary="Resume narration, captions and the phase timer",
)
async def resume_session(session_id: str, auth: RequireApiKey, service: Sessions) -> SessionView:
    return service.view(service.resume(session_id))


@router.post(
    "/{session_id}/mute",
    response_model=SessionView,
    responses=COMMON_RESPONSES,
    summary="Mute or unmute narration",
)
async def mute_session(
    session_id: str,
    body: MuteRequest,
    auth: RequireApiKey,
    service: Sessions,
) -> SessionView:
    """Captions keep running while narration is muted."""
    return service.view(service.set_muted(session_id, body.muted))


@router.post(
    "/{session_id}/unlock",
    response_model=TurnResponse,
    responses=COMMON_RESPONSES,
    summary="Enable sound after autoplay was refused",
)
async def unlock_audio(session_id: str, auth: RequireApiKey, service: Sessions) -> TurnResponse:
    """
    Record the learner's gesture and replay the reply that could not
    autoplay. When it replays, the response carries its new caption timing.
    """
    controller, replaying = await service.unlock_audio(session_id)
    spoken = controller.synchronizer.last_outcome if replaying else None
    return TurnResponse(
        session=service.view(controller),
        captions=spoken.sentences if spoken else [],
        segments=[service.segment_view(spoken)] if spoken else [],
        has_audio=replaying,
    )


@router.post(
    "/{session_id}/assessments/refresh",
    response_model=SessionView,
    responses=COMMON_RESPONSES,
    summary="Regenerate the worksheet and test",
)
async def refresh_assessments(session_id: str, auth: RequireApiKey, service: Sessions) -> SessionView:
    controller = service.get(session_id)
    await controller.refresh_assessments()
    return service.view(controller)


@router.get(
    "/{session_id}/printable/{kind}",
    response_model=PrintableResponse,
    responses=COMMON_RESPONSES,
    summary="Printable worksheet or test with answer key",
)
async def get_printable(
    session_id: str,
    kind: Literal["worksheet", "test"],
    auth: RequireApiKey,
    service: Sessions,
) -> PrintableResponse:
    controller = service.get(session_id)
    return await service.printable(controller, kind)
