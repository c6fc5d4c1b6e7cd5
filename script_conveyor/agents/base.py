"""
Base agent interface for the generation loop.

Agents are streaming producers: they yield ThinkingChunks while the model
works and finish with exactly one structured result. The orchestrator
forwards each chunk as it arrives and never buffers the whole stream.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from ..config import GenerationSettings
from ..errors import AgentError
from ..models import Draft, Review, Scene, SourceItem
from .llm_provider import LLMProvider, parse_json_response

logger = logging.getLogger(__name__)


@dataclass
class ThinkingChunk:
    """Partial model output forwarded to live subscribers."""

    content: str
    kind: str = "thinking"


@dataclass
class DraftRequest:
    """Everything the scriptwriter needs for one draft.

    Exactly one kind of corrective context is set on a retry: either the
    previous ``review`` from the automatic loop, or human ``feedback``
    (optionally aimed at ``target_scenes``) during a revision pass.
    """

    source: SourceItem
    version: int
    settings: GenerationSettings
    review: Review | None = None
    feedback: str | None = None
    target_scenes: list[int] = field(default_factory=list)
    previous_scenes: list[Scene] = field(default_factory=list)
    learned_instructions: list[str] = field(default_factory=list)


class BaseAgent(ABC):
    """
    Abstract base class for the loop's LLM agents.

    Subclasses build prompts and validate the model's JSON; streaming and
    parsing are shared here.
    """

    def __init__(self, llm: LLMProvider):
        self.llm = llm

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for logging and debugging."""
        pass

    async def _stream_json(
        self, prompt: str, system_prompt: str
    ) -> AsyncIterator[ThinkingChunk | dict[str, Any]]:
        """
        Stream a model call, yielding chunks and then the parsed JSON.

        Raises:
            AgentError: If the model call fails or the output is not JSON.
        """
        parts: list[str] = []
        try:
            async for chunk in self.llm.stream(prompt, system_prompt):
                if chunk.kind == "text":
                    parts.append(chunk.text)
                yield ThinkingChunk(content=chunk.text, kind=chunk.kind)
        except AgentError:
            raise
        except Exception as e:
            raise AgentError(f"{self.name} model call failed: {e}") from e

        text = "".join(parts)
        if not text.strip():
            raise AgentError(f"{self.name} returned an empty response")
        yield parse_json_response(text)

    def log(self, message: str, *args: Any) -> None:
        """Standardized logging with agent name prefix."""
        logger.info(f"[{self.name}] {message}", *args)


class DraftingAgent(BaseAgent):
    """Produces a Draft for a source item."""

    @abstractmethod
    def stream_draft(self, request: DraftRequest) -> AsyncIterator[ThinkingChunk | Draft]:
        """Yield thinking chunks, then exactly one Draft.

        Raises:
            AgentError: On model failure or malformed output.
        """


class EvaluationAgent(BaseAgent):
    """Scores a Draft against its source item."""

    @abstractmethod
    def stream_review(
        self, draft: Draft, source: SourceItem, settings: GenerationSettings
    ) -> AsyncIterator[ThinkingChunk | Review]:
        """Yield thinking chunks, then exactly one Review.

        Raises:
            AgentError: On model failure or malformed output.
        """
