"""Generation and revision orchestration."""

from .orchestrator import GenerationPipeline, GenerationResult, GenerationStats, SubjectContext
from .revision import MAX_REVISIONS, RevisionOrchestrator

__all__ = [
    "GenerationPipeline",
    "GenerationResult",
    "GenerationStats",
    "SubjectContext",
    "MAX_REVISIONS",
    "RevisionOrchestrator",
]
