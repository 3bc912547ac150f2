"""
Rate Limiting Module

slowapi limits for the tutor API. Most routes share a default window
keyed on the caller; learner turns are additionally limited per session
because each one costs a dialogue service call.
"""
import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from lesson_tutor.core.config import settings
from lesson_tutor.models.schemas import RateLimitResponse

logger = logging.getLogger(__name__)


def caller_key(request: Request) -> str:
    """API key prefix when one is sent, remote address otherwise."""
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"key:{api_key[:8]}"
    return get_remote_address(request)


def session_turn_key(request: Request) -> str:
    """Caller plus session id, so one chatty session cannot starve the others."""
    session_id = request.path_params.get("session_id", "-")
    return f"{caller_key(request)}:session:{session_id}"


limiter = Limiter(
    key_func=caller_key,
    default_limits=[f"{settings.rate_limit_requests}/{settings.rate_limit_window_seconds}seconds"],
)

message_rate_limit = limiter.limit(settings.message_rate_limit, key_func=session_turn_key)


def retry_after_seconds(exc: RateLimitExceeded) -> int:
    """Window length of the exceeded limit, in seconds."""
    item = getattr(getattr(exc, "limit", None), "limit", None)
    if item is None:
        return settings.rate_limit_window_seconds
    return int(item.get_expiry())


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """429 with Retry-After set to the window of the limit that was hit."""
    detail = str(getattr(exc, "detail", "") or "")
    retry_after = retry_after_seconds(exc)

    logger.warning(f"[RATE] {caller_key(request)} over limit on {request.url.path}: {detail}")

    body = RateLimitResponse(
        message=f"Too many requests. Try again in {retry_after} seconds.",
        retry_after=retry_after,
    )
    return JSONResponse(
        status_code=429,
        content=body.model_dump(mode="json"),
        headers={"Retry-After": str(retry_after)},
    )
