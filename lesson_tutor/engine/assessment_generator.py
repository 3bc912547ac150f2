"""
Assessment Set Generator.

Builds the worksheet and test once per session, persists them behind a
cache key of (lesson, learner, worksheet length, test length) and
regenerates when the lesson content or configured lengths change.
"""

import logging
import random
from typing import Optional

from lesson_tutor.cache.assessment_cache import (
    AssessmentCacheStore,
    CachedAssessments,
    build_cache_key,
)
from lesson_tutor.core.config import SessionTargets
from lesson_tutor.engine.question_supply import build_assessment_set
from lesson_tutor.models.lesson import Lesson

logger = logging.getLogger(__name__)


class AssessmentGenerator:
    """
    Worksheet/test builder with cache-backed reuse.
    
    Usage:
        generator = AssessmentGenerator(cache)
        sets = await generator.get_or_generate("fractions-1", lesson, "learner-7", targets)
    """
    
    def __init__(
        self,
        cache: AssessmentCacheStore,
        default_subject: str = "math",
        rng: Optional[random.Random] = None,
    ):
        self._cache = cache
        self._default_subject = default_subject
        self._rng = rng or random.Random()
    
    def generate(self, lesson: Lesson, targets: SessionTargets) -> CachedAssessments:
        """Build both sets; the test avoids worksheet prompts where content allows."""
        worksheet = build_assessment_set(
            lesson, targets.worksheet, self._default_subject, self._rng
        )
        test = build_assessment_set(
            lesson,
            targets.test,
            self._default_subject,
            self._rng,
            avoid={item.prompt_key for item in worksheet},
        )
        logger.info(
            f"[ASSESSMENT] Generated worksheet={len(worksheet)} test={len(test)} "
            f"for '{lesson.title}'"
        )
        return CachedAssessments(
            worksheet=worksheet,
            test=test,
            content_hash=lesson.content_hash(),
        )
    
    async def get_or_generate(
        self,
        lesson_ref: str,
        lesson: Lesson,
        learner_id: str,
        targets: SessionTargets,
    ) -> CachedAssessments:
        """
        Restore sets from cache or generate and store new ones.
        
        A cached entry built from different content, or whose lengths do
        not match the targets, is discarded rather than truncated or padded.
        """
        key = build_cache_key(lesson_ref, learner_id, targets.worksheet, targets.test)
        cached = await self._cache.get(key)
        if cached is not None:
            if cached.matches(lesson.content_hash(), targets.worksheet, targets.test):
                logger.info(f"[ASSESSMENT] Restored cached sets for {key}")
                return cached
            logger.info(f"[ASSESSMENT] Cached sets stale for {key}, regenerating")
            await self._cache.clear(key)
        
        fresh = self.generate(lesson, targets)
        await self._cache.set(key, fresh)
        return fresh
    
    async def refresh(
        self,
        lesson_ref: str,
        lesson: Lesson,
        learner_id: str,
        targets: SessionTargets,
    ) -> CachedAssessments:
        """Discard the cached sets and build new ones."""
        await self.clear(lesson_ref, learner_id, targets)
        fresh = self.generate(lesson, targets)
        await self._cache.set(
            build_cache_key(lesson_ref, learner_id, targets.worksheet, targets.test), fresh
        )
        logger.info(f"[ASSESSMENT] Refreshed sets for {lesson_ref}/{learner_id}")
        return fresh
    
    async def clear(self, lesson_ref: str, learner_id: str, targets: SessionTargets) -> None:
        await self._cache.clear(
            build_cache_key(lesson_ref, learner_id, targets.worksheet, targets.test)
        )
