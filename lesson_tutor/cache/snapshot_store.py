"""
Session snapshot persistence.

A snapshot is saved after every phase change so an interrupted session
resumes at the last phase it reached. Snapshots are cleared when the
lesson is completed.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from lesson_tutor.models.session import MajorPhase, ScoreResult, SessionState

logger = logging.getLogger(__name__)


def snapshot_key(lesson_ref: str, learner_id: str) -> str:
    return f"snapshot:{lesson_ref}:{learner_id}"


class SessionSnapshot(BaseModel):
    """Resumable progress for one learner on one lesson."""
    lesson_ref: str
    learner_id: str
    phase: MajorPhase
    worksheet_index: int = Field(default=0, ge=0)
    test_index: int = Field(default=0, ge=0)
    test_answers: List[str] = Field(default_factory=list)
    test_result: Optional[ScoreResult] = None
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    
    @classmethod
    def from_state(cls, state: SessionState) -> "SessionSnapshot":
        return cls(
            lesson_ref=state.lesson_ref,
            learner_id=state.learner_id,
            phase=state.phase,
            worksheet_index=state.worksheet_index,
            test_index=state.test_index,
            test_answers=list(state.test_answers),
            test_result=state.test_result,
        )


class SessionSnapshotStore(Protocol):
    """External store for session snapshots."""
    
    async def load(self, key: str) -> Optional[SessionSnapshot]:
        ...
    
    async def save(self, key: str, snapshot: SessionSnapshot) -> None:
        ...
    
    async def clear(self, key: str) -> None:
        ...


class InMemorySnapshotStore:
    """Process-local SessionSnapshotStore."""
    
    def __init__(self):
        self._snapshots: Dict[str, SessionSnapshot] = {}
    
    async def load(self, key: str) -> Optional[SessionSnapshot]:
        return self._snapshots.get(key)
    
    async def save(self, key: str, snapshot: SessionSnapshot) -> None:
        self._snapshots[key] = snapshot
        logger.debug(f"[SNAPSHOT] Saved {key} at phase {snapshot.phase.value}")
    
    async def clear(self, key: str) -> None:
        self._snapshots.pop(key, None)


_snapshot_store: Optional[InMemorySnapshotStore] = None


def get_snapshot_store() -> InMemorySnapshotStore:
    """Get or create the process-wide snapshot store."""
    global _snapshot_store
    if _snapshot_store is None:
        _snapshot_store = InMemorySnapshotStore()
    return _snapshot_store
