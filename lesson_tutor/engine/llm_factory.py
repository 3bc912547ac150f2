"""
LLM Factory - Gemini chat model for the in-process dialogue backend.

The tutor normally talks to a dialogue service over HTTP. When
DIALOGUE_BACKEND=gemini the same requests are answered by a
ChatGoogleGenerativeAI model created here.
"""

import logging
from typing import Any, Optional

from langchain_google_genai import ChatGoogleGenerativeAI

from lesson_tutor.core.config import settings

logger = logging.getLogger(__name__)


# =============================================================================
# LLM FACTORY
# =============================================================================

def create_tutor_llm(
    temperature: Optional[float] = None,
    model: Optional[str] = None,
) -> ChatGoogleGenerativeAI:
    """
    Create the chat model that plays the tutor.

    Args:
        temperature: Override LLM temperature (default from config)
        model: Override model name (default from config)
    """
    model_name = model or settings.google_model
    temp = settings.llm_temperature if temperature is None else temperature

    logger.info(f"[LLM_FACTORY] Creating tutor LLM: model={model_name}, temperature={temp}")

    return ChatGoogleGenerativeAI(
        model=model_name,
        temperature=temp,
        google_api_key=settings.google_api_key,
    )


def extract_text(content: Any) -> str:
    """
    Flatten a chat model response into plain text.

    Gemini may return a list of parts ({'type': 'text', 'text': ...});
    thinking parts are dropped.
    """
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return str(content or "")
