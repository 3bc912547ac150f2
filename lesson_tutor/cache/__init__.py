"""
Cache Module - assessment sets and session snapshots.

Both stores are protocols with in-memory implementations; a deployment
can provide any object with the same async methods.
"""

from lesson_tutor.cache.assessment_cache import (
    AssessmentCacheStore,
    CachedAssessments,
    InMemoryAssessmentCache,
    build_cache_key,
    get_assessment_cache,
)
from lesson_tutor.cache.snapshot_store import (
    InMemorySnapshotStore,
    SessionSnapshot,
    SessionSnapshotStore,
    get_snapshot_store,
    snapshot_key,
)

__all__ = [
    "AssessmentCacheStore",
    "CachedAssessments",
    "InMemoryAssessmentCache",
    "build_cache_key",
    "get_assessment_cache",
    "InMemorySnapshotStore",
    "SessionSnapshot",
    "SessionSnapshotStore",
    "get_snapshot_store",
    "snapshot_key",
]
