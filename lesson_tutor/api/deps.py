"""
API Dependencies - Dependency Injection for FastAPI

Provides reusable dependencies for authentication and the session service.
"""
from typing import Annotated, Optional

from fastapi import Depends

from lesson_tutor.core.security import require_api_key
from lesson_tutor.services.session_service import SessionService, get_session_service


# Require a valid X-API-Key (when one is configured)
RequireApiKey = Annotated[Optional[str], Depends(require_api_key)]

# Process-wide session registry
Sessions = Annotated[SessionService, Depends(get_session_service)]
