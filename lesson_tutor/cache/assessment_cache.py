"""
Assessment Cache - persisted worksheet/test sets.

Sets are keyed by (lesson, learner, worksheet length, test length) and
carry the lesson content hash they were generated from, so a content
change or a length mismatch invalidates them.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol

from lesson_tutor.models.lesson import QuestionItem

logger = logging.getLogger(__name__)


def build_cache_key(lesson_ref: str, learner_id: str, worksheet_length: int, test_length: int) -> str:
    """Stable key for one learner's assessment sets."""
    return f"assessments:{lesson_ref}:{learner_id}:w{worksheet_length}:t{test_length}"


@dataclass
class CachedAssessments:
    """A stored worksheet/test pair with its provenance."""
    worksheet: List[QuestionItem]
    test: List[QuestionItem]
    content_hash: str
    created_at: float = field(default_factory=time.time)
    
    def matches(self, content_hash: str, worksheet_length: int, test_length: int) -> bool:
        """True when the stored sets are still valid for this lesson and configuration."""
        return (
            self.content_hash == content_hash
            and len(self.worksheet) == worksheet_length
            and len(self.test) == test_length
        )


class AssessmentCacheStore(Protocol):
    """External store for assessment sets."""
    
    async def get(self, key: str) -> Optional[CachedAssessments]:
        ...
    
    async def set(self, key: str, value: CachedAssessments) -> None:
        ...
    
    async def clear(self, key: str) -> None:
        ...


@dataclass
class CacheStats:
    """Lookup counters."""
    hits: int = 0
    misses: int = 0
    writes: int = 0
    clears: int = 0


class InMemoryAssessmentCache:
    """
    Process-local AssessmentCacheStore.
    
    Good for a single worker and for tests; swap for a shared store when
    running several workers.
    """
    
    def __init__(self):
        self._entries: Dict[str, CachedAssessments] = {}
        self.stats = CacheStats()
    
    async def get(self, key: str) -> Optional[CachedAssessments]:
        entry = self._entries.get(key)
        if entry is None:
            self.stats.misses += 1
            logger.debug(f"[CACHE] Miss: {key}")
            return None
        self.stats.hits += 1
        logger.debug(f"[CACHE] Hit: {key}")
        return entry
    
    async def set(self, key: str, value: CachedAssessments) -> None:
        self._entries[key] = value
        self.stats.writes += 1
    
    async def clear(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self.stats.clears += 1
            logger.debug(f"[CACHE] Cleared: {key}")
    
    def __len__(self) -> int:
        return len(self._entries)


_assessment_cache: Optional[InMemoryAssessmentCache] = None


def get_assessment_cache() -> InMemoryAssessmentCache:
    """Get or create the process-wide assessment cache."""
    global _assessment_cache
    if _assessment_cache is None:
        _assessment_cache = InMemoryAssessmentCache()
    return _assessment_cache
