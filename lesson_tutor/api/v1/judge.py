"""
Standalone answer judging.

POST /api/v1/judge - judge one answer against a question item with the
same local rules the session uses (exact match or short-answer keywords).
"""
import logging

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from lesson_tutor.api.deps import RequireApiKey
from lesson_tutor.engine.answer_judge import build_acceptable_list, judge_item
from lesson_tutor.models.lesson import QuestionItem
from lesson_tutor.models.schemas import JudgeRequest, JudgeResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Judge"])


@router.post(
    "/judge",
    response_model=JudgeResponse,
    responses={
        400: {"description": "Question item is malformed"},
        401: {"description": "Authentication required - missing X-API-Key"},
    },
    summary="Judge a learner answer",
)
async def judge_answer(body: JudgeRequest, auth: RequireApiKey) -> JudgeResponse:
    try:
        item = QuestionItem.model_validate(body.question)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid question item: {e.errors()[0]['msg']}")

    result = judge_item(item, body.answer)
    return JudgeResponse(
        correct=result.correct,
        mode=result.mode.value,
        acceptable=build_acceptable_list(item),
        matched_keywords=result.matched_keywords,
        required_keywords=item.effective_min_keywords if item.is_short_answer else 0,
    )
