"""
Health Check Endpoint

GET /api/v1/health     - shallow liveness ping, touches nothing
GET /api/v1/health/deep - status of API, lesson content, dialogue and speech

Dialogue and speech are reported from configuration only; probing the
dialogue route would spend a model call.
"""
import asyncio
import logging
import time

from fastapi import APIRouter

from lesson_tutor.core.config import settings
from lesson_tutor.models.schemas import ComponentHealth, ComponentStatus, HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

HEALTH_CHECK_TIMEOUT = 5


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000, 2)


async def check_api_health() -> ComponentHealth:
    """Check API component health"""
    start = time.time()
    return ComponentHealth(
        name="API",
        status=ComponentStatus.HEALTHY,
        latency_ms=_elapsed_ms(start),
        message="API is responding",
    )


async def check_lessons_health() -> ComponentHealth:
    """Check that the lesson content directory is reachable."""
    start = time.time()
    try:
        from lesson_tutor.repositories.lesson_repository import get_lesson_repository

        available = get_lesson_repository().is_available()
        return ComponentHealth(
            name="Lessons",
            status=ComponentStatus.HEALTHY if available else ComponentStatus.UNAVAILABLE,
            latency_ms=_elapsed_ms(start),
            message=(
                f"Content directory: {settings.lesson_content_dir}"
                if available
                else f"Content directory missing: {settings.lesson_content_dir}"
            ),
        )
    except Exception as e:
        logger.error(f"Lessons health check failed: {e}")
        return ComponentHealth(
            name="Lessons",
            status=ComponentStatus.UNAVAILABLE,
            latency_ms=_elapsed_ms(start),
            message=str(e),
        )


async def check_dialogue_health() -> ComponentHealth:
    """Report the configured dialogue backend."""
    if settings.dialogue_backend == "gemini":
        if settings.google_api_key:
            return ComponentHealth(
                name="Dialogue",
                status=ComponentStatus.HEALTHY,
                message=f"Gemini model {settings.google_model}",
            )
        return ComponentHealth(
            name="Dialogue",
            status=ComponentStatus.UNAVAILABLE,
            message="GOOGLE_API_KEY not configured",
        )
    return ComponentHealth(
        name="Dialogue",
        status=ComponentStatus.HEALTHY,
        message=f"HTTP route {settings.dialogue_url}",
    )


async def check_speech_health() -> ComponentHealth:
    """Speech is optional; without it the tutor runs caption-only."""
    if settings.speech_url:
        return ComponentHealth(
            name="Speech",
            status=ComponentStatus.HEALTHY,
            message=f"Synthesis endpoint {settings.speech_url}",
        )
    return ComponentHealth(
        name="Speech",
        status=ComponentStatus.DEGRADED,
        message="No speech endpoint configured (caption-only)",
    )


def determine_overall_status(components: dict[str, ComponentHealth]) -> str:
    """
    healthy: every component healthy
    unhealthy: the API itself is unavailable
    degraded: anything else
    """
    statuses = [c.status for c in components.values()]
    if all(s == ComponentStatus.HEALTHY for s in statuses):
        return "healthy"
    api = components.get("api")
    if api is not None and api.status == ComponentStatus.UNAVAILABLE:
        return "unhealthy"
    return "degraded"


async def check_with_timeout(
    check_func,
    component_name: str,
    timeout_seconds: float = HEALTH_CHECK_TIMEOUT
) -> ComponentHealth:
    """Run a check, reporting UNAVAILABLE when it exceeds the timeout."""
    try:
        return await asyncio.wait_for(check_func(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"Health check timeout for {component_name} (>{timeout_seconds}s)")
        return ComponentHealth(
            name=component_name,
            status=ComponentStatus.UNAVAILABLE,
            latency_ms=timeout_seconds * 1000,
            message=f"Health check timeout (>{timeout_seconds}s)",
        )


@router.get("", summary="Shallow Health Check")
async def health_check_shallow():
    """Liveness ping for uptime monitors."""
    return {
        "status": "ok",
        "service": "lesson-tutor",
        "version": settings.app_version,
        "environment": settings.environment,
    }


@router.get("/deep", response_model=HealthResponse, summary="Deep Health Check")
async def health_check_deep() -> HealthResponse:
    components = {
        "api": await check_with_timeout(check_api_health, "API"),
        "lessons": await check_with_timeout(check_lessons_health, "Lessons"),
        "dialogue": await check_with_timeout(check_dialogue_health, "Dialogue"),
        "speech": await check_with_timeout(check_speech_health, "Speech"),
    }
    overall_status = determine_overall_status(components)

    logger.info(f"Deep health check: {overall_status}")
    return HealthResponse(
        status=overall_status,
        version=settings.app_version,
        environment=settings.environment,
        components=components,
    )
