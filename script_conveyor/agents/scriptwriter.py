"""
The Scriptwriter Agent - drafts a scene-by-scene script from an article.
"""

from typing import Any, AsyncIterator

from ..errors import AgentError
from ..models import Draft, Scene
from .base import DraftingAgent, DraftRequest, ThinkingChunk
from .prompts import SCRIPTWRITER_SYSTEM_PROMPT, build_scriptwriter_prompt


class ScriptwriterAgent(DraftingAgent):
    """
    Drafts scripts and rewrites them from editor or reviewer feedback.

    Scenes are renumbered 1..n in the order the model returned them.
    """

    @property
    def name(self) -> str:
        return "Scriptwriter"

    async def stream_draft(self, request: DraftRequest) -> AsyncIterator[ThinkingChunk | Draft]:
        self.log("Drafting version %d for '%s'", request.version, request.source.title)

        prompt = build_scriptwriter_prompt(
            request.source,
            request.version,
            request.settings,
            review=request.review,
            feedback=request.feedback,
            target_scenes=request.target_scenes,
            previous_scenes=request.previous_scenes,
            learned_instructions=request.learned_instructions,
        )

        data: dict[str, Any] | None = None
        async for event in self._stream_json(prompt, SCRIPTWRITER_SYSTEM_PROMPT):
            if isinstance(event, ThinkingChunk):
                yield event
            else:
                data = event

        draft = self._parse_draft(data or {})
        self.log("Draft has %d scenes, %.0fs", len(draft.scenes), draft.total_duration)
        yield draft

    def _parse_draft(self, data: dict[str, Any]) -> Draft:
        """
        Validate model output into a Draft.

        Raises:
            AgentError: If there are no scenes or a scene is malformed.
        """
        raw_scenes = data.get("scenes")
        if not isinstance(raw_scenes, list) or not raw_scenes:
            raise AgentError("Scriptwriter returned no scenes")

        scenes = []
        for index, raw in enumerate(raw_scenes, start=1):
            if not isinstance(raw, dict):
                raise AgentError(f"Scene {index} is not an object")

            text = str(raw.get("text") or "").strip()
            if not text:
                raise AgentError(f"Scene {index} has no text")

            try:
                duration = float(raw.get("duration", 0))
            except (TypeError, ValueError) as e:
                raise AgentError(f"Scene {index} has an invalid duration") from e
            if duration <= 0:
                raise AgentError(f"Scene {index} has a non-positive duration")

            scenes.append(
                Scene(
                    number=index,
                    text=text,
                    visual=str(raw.get("visual") or "").strip(),
                    duration=duration,
                )
            )

        # The reported total is advisory; the scene durations are authoritative
        total_duration = sum(scene.duration for scene in scenes)
        return Draft(scenes=scenes, total_duration=total_duration)
