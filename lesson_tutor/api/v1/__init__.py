"""
API Version 1 Router
Aggregates all v1 endpoints
"""
from fastapi import APIRouter

from lesson_tutor.api.v1.health import router as health_router
from lesson_tutor.api.v1.judge import router as judge_router
from lesson_tutor.api.v1.sessions import router as sessions_router

router = APIRouter(tags=["v1"])

# Include sub-routers
router.include_router(health_router)
router.include_router(sessions_router)  # /sessions/...
router.include_router(judge_router)  # POST /judge


@router.get("/")
async def api_v1_root():
    """API v1 root endpoint"""
    return {"api": "v1", "status": "active"}
