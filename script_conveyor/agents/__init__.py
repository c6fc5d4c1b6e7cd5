"""
LLM agents for the generation loop.

- Scriptwriter: drafts scenes from an article, rewrites from feedback
- Editor: scores a draft and comments on its scenes
"""

from .base import BaseAgent, DraftingAgent, DraftRequest, EvaluationAgent, ThinkingChunk
from .editor import EditorAgent
from .llm_provider import LLMChunk, LLMError, LLMProvider, get_llm_provider, parse_json_response
from .scriptwriter import ScriptwriterAgent

__all__ = [
    "BaseAgent",
    "DraftingAgent",
    "DraftRequest",
    "EvaluationAgent",
    "ThinkingChunk",
    "EditorAgent",
    "ScriptwriterAgent",
    "LLMChunk",
    "LLMError",
    "LLMProvider",
    "get_llm_provider",
    "parse_json_response",
]
