"""
Lesson Content Source

Read-only access to lesson documents, fetched once per session by a
stable lesson reference. Lessons are JSON files named <lesson_ref>.json
under the configured content directory.
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Dict, Optional, Protocol

from pydantic import ValidationError

from lesson_tutor.core.config import settings
from lesson_tutor.core.exceptions import LessonNotFoundError
from lesson_tutor.models.lesson import Lesson

logger = logging.getLogger(__name__)

# Lesson refs become file names; keep them to a safe alphabet
_SAFE_REF = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.\-]*$")


class LessonContentSource(Protocol):
    """Anything that can fetch a lesson by reference."""
    
    async def get_lesson(self, lesson_ref: str) -> Lesson:
        ...


class JsonLessonRepository:
    """
    Lesson source backed by a directory of JSON files.
    
    Parsed lessons are kept in memory; lessons are read-only so the cache
    is never invalidated within a process.
    """
    
    def __init__(self, content_dir: Optional[str] = None):
        self._content_dir = Path(content_dir or settings.lesson_content_dir)
        self._lessons: Dict[str, Lesson] = {}
        logger.info(f"[LESSONS] Content directory: {self._content_dir}")
    
    def is_available(self) -> bool:
        return self._content_dir.is_dir()
    
    def _path_for(self, lesson_ref: str) -> Path:
        if not _SAFE_REF.match(lesson_ref or "") or ".." in lesson_ref:
            raise LessonNotFoundError(f"Invalid lesson reference: {lesson_ref!r}")
        return self._content_dir / f"{lesson_ref}.json"
    
    def _read(self, path: Path) -> Lesson:
        with open(path, "r", encoding="utf-8") as f:
            return Lesson.model_validate(json.load(f))
    
    async def get_lesson(self, lesson_ref: str) -> Lesson:
        """
        Load a lesson.
        
        Raises:
            LessonNotFoundError: unknown reference, missing file or invalid document
        """
        if lesson_ref in self._lessons:
            return self._lessons[lesson_ref]
        
        path = self._path_for(lesson_ref)
        if not path.is_file():
            raise LessonNotFoundError(f"Lesson not found: {lesson_ref}")
        
        try:
            lesson = await asyncio.to_thread(self._read, path)
        except (json.JSONDecodeError, ValidationError) as e:
            logger.error(f"[LESSONS] Invalid lesson document {path.name}: {e}")
            raise LessonNotFoundError(f"Lesson document is invalid: {lesson_ref}") from e
        
        self._lessons[lesson_ref] = lesson
        logger.info(
            f"[LESSONS] Loaded '{lesson.title}' ({lesson_ref}): "
            f"{len(lesson.sample)} samples, {len(lesson.word_problems)} word problems"
        )
        return lesson


class InMemoryLessonRepository:
    """Lesson source over a dict, used for tests and embedded content."""
    
    def __init__(self, lessons: Optional[Dict[str, Lesson]] = None):
        self._lessons = dict(lessons or {})
    
    def add(self, lesson_ref: str, lesson: Lesson) -> None:
        self._lessons[lesson_ref] = lesson
    
    async def get_lesson(self, lesson_ref: str) -> Lesson:
        try:
            return self._lessons[lesson_ref]
        except KeyError:
            raise LessonNotFoundError(f"Lesson not found: {lesson_ref}") from None


_lesson_repository: Optional[JsonLessonRepository] = None


def get_lesson_repository() -> JsonLessonRepository:
    """Get or create the lesson repository singleton."""
    global _lesson_repository
    if _lesson_repository is None:
        _lesson_repository = JsonLessonRepository()
    return _lesson_repository
