"""Domain models for script generation jobs.

A Job is one generation attempt for one source item. Each pass of the
draft/evaluate loop produces an Iteration holding the drafted Scenes and,
once the editor has run, its Review.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Lifecycle status of a generation job."""

    PENDING = "pending"
    ITERATING = "iterating"
    NEEDS_HUMAN_REVIEW = "needs_human_review"
    APPROVED = "approved"
    REJECTED = "rejected"


TERMINAL_STATUSES = frozenset({JobStatus.APPROVED, JobStatus.REJECTED})


class GateDecision(str, Enum):
    """Gate label derived from the last review verdict."""

    PASS = "PASS"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    FAIL = "FAIL"


class Verdict(str, Enum):
    """Editor classification of a draft."""

    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    REJECTED = "rejected"


class CommentType(str, Enum):
    """Kind of an editor comment on a scene."""

    POSITIVE = "positive"
    NEGATIVE = "negative"
    SUGGESTION = "suggestion"
    INFO = "info"


def gate_decision_for(verdict: Verdict) -> GateDecision:
    """Map a review verdict to the job's gate decision."""
    if verdict == Verdict.APPROVED:
        return GateDecision.PASS
    if verdict == Verdict.REJECTED:
        return GateDecision.FAIL
    return GateDecision.NEEDS_REVIEW


def normalize_score(raw_score: float) -> int:
    """Convert an editor score on the 1-10 scale to the stored 0-100 scale."""
    return max(0, min(100, round(raw_score * 10)))


@dataclass
class SourceItem:
    """An article that a script is generated from."""

    id: str
    title: str
    body: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "SourceItem":
        return cls(
            id=str(data["id"]),
            title=data.get("title", ""),
            body=data.get("body") or data.get("content") or "",
        )


@dataclass
class Scene:
    """One ordered content unit of a script."""

    number: int
    text: str
    visual: str
    duration: float

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "text": self.text,
            "visual": self.visual,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Scene":
        return cls(
            number=int(data["number"]),
            text=data.get("text", ""),
            visual=data.get("visual", ""),
            duration=float(data.get("duration", 0)),
        )


@dataclass
class Draft:
    """Scriptwriter output for one iteration."""

    scenes: list[Scene]
    total_duration: float

    @property
    def full_script(self) -> str:
        return "\n\n".join(scene.text for scene in self.scenes)


@dataclass
class Comment:
    type: CommentType
    text: str


@dataclass
class SceneComment:
    """Editor comments attached to one scene."""

    scene_number: int
    comments: list[Comment] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scene_number": self.scene_number,
            "comments": [{"type": c.type.value, "text": c.text} for c in self.comments],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SceneComment":
        return cls(
            scene_number=int(data["scene_number"]),
            comments=[
                Comment(type=CommentType(c["type"]), text=c["text"])
                for c in data.get("comments", [])
            ],
        )


@dataclass
class Review:
    """Editor evaluation of one iteration.

    ``score`` stays on the editor's 1-10 scale; jobs store the normalized
    value (see ``normalize_score``).
    """

    score: float
    verdict: Verdict
    overall_comment: str
    scene_comments: list[SceneComment] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "verdict": self.verdict.value,
            "overall_comment": self.overall_comment,
            "scene_comments": [sc.to_dict() for sc in self.scene_comments],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Review":
        return cls(
            score=float(data["score"]),
            verdict=Verdict(data["verdict"]),
            overall_comment=data.get("overall_comment", ""),
            scene_comments=[SceneComment.from_dict(sc) for sc in data.get("scene_comments", [])],
        )


@dataclass
class Iteration:
    """One draft + evaluation pass within a job.

    An iteration without a review is draft-only and only exists while
    the editor is running.
    """

    job_id: str
    version: int
    scenes: list[Scene]
    review: Review | None = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "version": self.version,
            "scenes": [s.to_dict() for s in self.scenes],
            "review": self.review.to_dict() if self.review else None,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Iteration":
        return cls(
            job_id=data["job_id"],
            version=int(data["version"]),
            scenes=[Scene.from_dict(s) for s in data.get("scenes", [])],
            review=Review.from_dict(data["review"]) if data.get("review") else None,
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(),
        )


@dataclass
class Job:
    """One generation attempt for one source item."""

    id: str
    subject_id: str
    source_item_id: str
    title: str = ""
    status: JobStatus = JobStatus.PENDING
    gate_decision: GateDecision | None = None
    iteration_count: int = 0
    revision_count: int = 0
    final_score: int | None = None
    revision_notes: str | None = None
    revision_scene_refs: list[int] = field(default_factory=list)
    error: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    reviewed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "source_item_id": self.source_item_id,
            "title": self.title,
            "status": self.status.value,
            "gate_decision": self.gate_decision.value if self.gate_decision else None,
            "iteration_count": self.iteration_count,
            "revision_count": self.revision_count,
            "final_score": self.final_score,
            "revision_notes": self.revision_notes,
            "revision_scene_refs": list(self.revision_scene_refs),
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        return cls(
            id=data["id"],
            subject_id=data["subject_id"],
            source_item_id=data["source_item_id"],
            title=data.get("title", ""),
            status=JobStatus(data.get("status", "pending")),
            gate_decision=GateDecision(data["gate_decision"]) if data.get("gate_decision") else None,
            iteration_count=data.get("iteration_count", 0),
            revision_count=data.get("revision_count", 0),
            final_score=data.get("final_score"),
            revision_notes=data.get("revision_notes"),
            revision_scene_refs=list(data.get("revision_scene_refs", [])),
            error=data.get("error"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else datetime.now(),
            reviewed_at=datetime.fromisoformat(data["reviewed_at"]) if data.get("reviewed_at") else None,
        )
