"""
The Editor Agent - scores a drafted script and comments on its scenes.
"""

import logging
from typing import Any, AsyncIterator

from ..config import GenerationSettings
from ..errors import AgentError
from ..models import Comment, CommentType, Draft, Review, SceneComment, SourceItem, Verdict
from .base import EvaluationAgent, ThinkingChunk
from .prompts import EDITOR_SYSTEM_PROMPT, build_editor_prompt

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 10


def expected_verdict(score: float) -> Verdict:
    """Verdict implied by the score band (8+ approved, 5-7 revise, below 5 reject)."""
    if score >= 8:
        return Verdict.APPROVED
    if score >= 5:
        return Verdict.NEEDS_REVISION
    return Verdict.REJECTED


class EditorAgent(EvaluationAgent):
    """
    Reviews drafts on a 1-10 scale.

    The verdict and score are returned as the model gave them. When they
    disagree with the score bands a warning is logged; the pipeline
    decides which one wins.
    """

    @property
    def name(self) -> str:
        return "Editor"

    async def stream_review(
        self, draft: Draft, source: SourceItem, settings: GenerationSettings
    ) -> AsyncIterator[ThinkingChunk | Review]:
        self.log("Reviewing %d scenes for '%s'", len(draft.scenes), source.title)

        prompt = build_editor_prompt(draft, source, settings)

        data: dict[str, Any] | None = None
        async for event in self._stream_json(prompt, EDITOR_SYSTEM_PROMPT):
            if isinstance(event, ThinkingChunk):
                yield event
            else:
                data = event

        review = self._parse_review(data or {})

        if expected_verdict(review.score) != review.verdict:
            logger.warning(
                "Editor verdict '%s' does not match score %g for '%s'",
                review.verdict.value,
                review.score,
                source.title,
            )

        self.log("Score %g, verdict %s", review.score, review.verdict.value)
        yield review

    def _parse_review(self, data: dict[str, Any]) -> Review:
        """
        Validate model output into a Review.

        Raises:
            AgentError: On a missing or out-of-range score, an unknown
                verdict, or malformed scene comments.
        """
        try:
            score = float(data["score"])
        except (KeyError, TypeError, ValueError) as e:
            raise AgentError("Editor returned no numeric score") from e
        if not MIN_SCORE <= score <= MAX_SCORE:
            raise AgentError(f"Editor score {score:g} is outside {MIN_SCORE}-{MAX_SCORE}")

        try:
            verdict = Verdict(data.get("verdict"))
        except ValueError as e:
            raise AgentError(f"Editor returned unknown verdict: {data.get('verdict')!r}") from e

        overall_comment = str(data.get("overall_comment") or "").strip()

        scene_comments = []
        for raw in data.get("scene_comments") or []:
            try:
                scene_number = int(raw["scene_number"])
                comments = [
                    Comment(type=CommentType(c["type"]), text=str(c["text"]).strip())
                    for c in raw.get("comments", [])
                ]
            except (KeyError, TypeError, ValueError) as e:
                raise AgentError(f"Editor returned a malformed scene comment: {raw!r}") from e
            if scene_number < 1:
                raise AgentError(f"Editor commented on invalid scene {scene_number}")
            scene_comments.append(SceneComment(scene_number=scene_number, comments=comments))

        return Review(
            score=score,
            verdict=verdict,
            overall_comment=overall_comment,
            scene_comments=scene_comments,
        )
