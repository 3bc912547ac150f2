"""
Lesson Tutor Service - FastAPI Application Entry Point

Phase-driven tutoring sessions over a dialogue service, with local
answer judging, cached worksheets/tests and speech-synchronized captions.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from lesson_tutor.core.config import settings
from lesson_tutor.core.exceptions import (
    DialogueServiceError,
    LessonNotFoundError,
    PhaseTransitionError,
    QuestionSupplyExhaustedError,
    SessionNotFoundError,
)
from lesson_tutor.core.rate_limit import limiter, rate_limit_exceeded_handler
from lesson_tutor.models.schemas import ErrorDetail, ErrorResponse

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Startup checks warn and continue; shutdown aborts live sessions and
    closes the shared HTTP clients.
    """
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Dialogue backend: {settings.dialogue_backend}")

    try:
        from lesson_tutor.repositories.lesson_repository import get_lesson_repository
        if get_lesson_repository().is_available():
            logger.info(f"✅ Lesson content: {settings.lesson_content_dir}")
        else:
            logger.warning(f"⚠️ Lesson content directory missing: {settings.lesson_content_dir} (service will continue)")
    except Exception as e:
        logger.warning(f"⚠️ Lesson content check failed: {e} (service will continue)")

    try:
        from lesson_tutor.prompts.prompt_loader import get_prompt_loader
        get_prompt_loader()
        logger.info("✅ PromptLoader initialized")
    except Exception as e:
        logger.warning(f"⚠️ PromptLoader initialization failed: {e} (using defaults)")

    if not settings.speech_url:
        logger.info("Speech endpoint not configured; sessions run caption-only")

    from lesson_tutor.services.session_service import get_session_service
    service = get_session_service()

    logger.info(f"🚀 {settings.app_name} started successfully")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    try:
        await service.close()
        logger.info("✅ Sessions aborted and clients closed")
    except Exception as e:
        logger.error(f"❌ Failed to close session service: {e}")
    logger.info("👋 Shutdown complete")


def create_application() -> FastAPI:
    """
    Application factory pattern.
    Creates and configures the FastAPI application.
    """
    app = FastAPI(
        title=settings.app_name,
        description="Phase-driven lesson tutor: discussion, practice, worksheet, test and review",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Credentials cannot be combined with a wildcard origin
    allow_all = settings.cors_origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    # Configure Rate Limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # Register exception handlers
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(LessonNotFoundError, not_found_exception_handler)
    app.add_exception_handler(SessionNotFoundError, not_found_exception_handler)
    app.add_exception_handler(PhaseTransitionError, phase_transition_exception_handler)
    app.add_exception_handler(QuestionSupplyExhaustedError, phase_transition_exception_handler)
    app.add_exception_handler(DialogueServiceError, dialogue_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include API routers
    from lesson_tutor.api.v1 import router as api_v1_router
    app.include_router(api_v1_router, prefix=settings.api_v1_prefix)

    return app


# =============================================================================
# Exception Handlers
# =============================================================================

def _error(status_code: int, error: str, message: str, details=None) -> JSONResponse:
    response = ErrorResponse(error=error, message=message, details=details)
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """
    Handle Pydantic validation errors.
    Returns HTTP 400 with detailed error information.
    """
    errors = [
        ErrorDetail(
            field=".".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            code=error["type"],
        )
        for error in exc.errors()
    ]
    logger.warning(f"Validation error on {request.url.path}: {len(errors)} field(s)")
    return _error(status.HTTP_400_BAD_REQUEST, "validation_error", "Request validation failed", errors)


async def not_found_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc))


async def phase_transition_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.info(f"Rejected action on {request.url.path}: {exc}")
    return _error(status.HTTP_409_CONFLICT, "phase_conflict", str(exc))


async def dialogue_exception_handler(request: Request, exc: DialogueServiceError) -> JSONResponse:
    logger.error(f"Dialogue service failure (status={exc.status_code}): {exc}")
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "dialogue_unavailable",
        "The tutor is unavailable right now. Please try again.",
    )


async def general_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    Handle unexpected exceptions.
    Returns HTTP 500 while keeping the service up.
    """
    logger.exception(f"Unexpected error: {exc}")
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "An unexpected error occurred" if not settings.debug else str(exc),
    )


# Create application instance
app = create_application()


# =============================================================================
# Root Endpoint
# =============================================================================

@app.get("/", tags=["Root"])
async def root():
    """Root endpoint - service information"""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
        "docs": "/docs",
    }
