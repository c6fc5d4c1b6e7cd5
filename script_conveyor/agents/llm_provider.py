"""LLM Provider abstraction and implementations."""

import asyncio
import json
import re
import subprocess
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Any, AsyncIterator, Literal

from ..config import Config, LLMConfig
from ..errors import AgentError


class LLMError(AgentError):
    """Error from an LLM call or from parsing its output."""

    code = "LLM_ERROR"


@dataclass
class LLMChunk:
    """A piece of streamed model output.

    ``thinking`` chunks are the model's reasoning, ``text`` chunks make up
    the answer.
    """

    kind: Literal["thinking", "text"]
    text: str


def parse_json_response(response: str) -> dict[str, Any]:
    """Parse JSON from a model response.

    Handles responses wrapped in markdown code blocks or surrounded by prose.

    Raises:
        LLMError: If no JSON object can be parsed.
    """
    text = response.strip()

    json_block_pattern = r"```(?:json)?\s*([\s\S]*?)```"
    matches = re.findall(json_block_pattern, text)
    if matches:
        text = matches[0].strip()

    json_match = re.search(r"(\{[\s\S]*\}|\[[\s\S]*\])", text)
    if json_match:
        text = json_match.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise LLMError(f"Failed to parse JSON response: {e}\nResponse: {response[:500]}") from e
    if not isinstance(data, dict):
        raise LLMError(f"Expected a JSON object, got {type(data).__name__}")
    return data


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, config: LLMConfig):
        self.config = config

    @abstractmethod
    def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        """Generate a response from the LLM.

        Args:
            prompt: The user prompt
            system_prompt: Optional system prompt

        Returns:
            The generated text response
        """

    def generate_json(
        self, prompt: str, system_prompt: str | None = None
    ) -> dict[str, Any]:
        """Generate a JSON response from the LLM."""
        json_prompt = f"{prompt}\n\nRespond with valid JSON only. No markdown code blocks."
        return parse_json_response(self.generate(json_prompt, system_prompt))

    async def stream(
        self, prompt: str, system_prompt: str | None = None
    ) -> AsyncIterator[LLMChunk]:
        """Stream the response as chunks.

        Providers without native streaming run ``generate`` in a worker
        thread and yield the whole answer as a single chunk.
        """
        text = await asyncio.to_thread(self.generate, prompt, system_prompt)
        yield LLMChunk(kind="text", text=text)


class MockLLMProvider(LLMProvider):
    """Deterministic provider for demos and tests.

    Drafts are built from the article text. Reviews for the same title
    improve on every call (5, 7, 9) so the loop converges on the third
    iteration.
    """

    def __init__(self, config: LLMConfig | None = None):
        super().__init__(config or LLMConfig(provider="mock"))
        self._reviews: Counter[str] = Counter()

    def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        return json.dumps(self.generate_json(prompt, system_prompt))

    def generate_json(
        self, prompt: str, system_prompt: str | None = None
    ) -> dict[str, Any]:
        title_match = re.search(r"^Title: (.*)$", prompt, re.MULTILINE)
        title = title_match.group(1).strip() if title_match else "Untitled"

        if "script editor" in (system_prompt or "").lower():
            return self._mock_review(title)
        return self._mock_draft(title, prompt)

    async def stream(
        self, prompt: str, system_prompt: str | None = None
    ) -> AsyncIterator[LLMChunk]:
        yield LLMChunk(kind="thinking", text="Reading the article and planning the scenes...")
        text = self.generate(prompt, system_prompt)
        step = max(len(text) // 4, 1)
        for start in range(0, len(text), step):
            yield LLMChunk(kind="text", text=text[start:start + step])

    def _mock_draft(self, title: str, prompt: str) -> dict[str, Any]:
        body_match = re.search(r"^Body: (.*)$", prompt, re.MULTILINE)
        body = body_match.group(1) if body_match else ""
        sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", body) if s.strip()]
        middle = sentences[:2] or [f"Here is what happened with {title}."]

        texts = [f"Stop scrolling: {title}."] + middle + ["Follow for more stories like this."]
        scenes = [
            {
                "number": i,
                "text": text,
                "visual": "Presenter on camera" if i in (1, len(texts)) else "B-roll with key facts on screen",
                "duration": 8,
            }
            for i, text in enumerate(texts, start=1)
        ]
        return {"scenes": scenes, "total_duration": 8 * len(scenes)}

    def _mock_review(self, title: str) -> dict[str, Any]:
        self._reviews[title] += 1
        score = min(3 + 2 * self._reviews[title], 9)
        verdict = "approved" if score >= 8 else "needs_revision"
        return {
            "score": score,
            "verdict": verdict,
            "overall_comment": "Strong hook, ready to record." if verdict == "approved"
            else "The opening needs more tension and the ending needs a clearer call to action.",
            "scene_comments": [
                {
                    "scene_number": 1,
                    "comments": [
                        {"type": "positive" if verdict == "approved" else "suggestion",
                         "text": "Lead with the most surprising number."},
                    ],
                }
            ],
        }


class ClaudeCodeLLMProvider(LLMProvider):
    """LLM provider using the Claude Code CLI in print mode."""

    def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        """Generate a text response via the CLI.

        Raises:
            LLMError: If the CLI command fails or times out.
        """
        cmd = ["claude", "--print", "-p", prompt]
        if self.config.model:
            cmd.extend(["--model", self.config.model])
        if system_prompt:
            cmd.extend(["--system-prompt", system_prompt])

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.config.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise LLMError(f"Claude Code timed out after {self.config.timeout}s") from e

        if result.returncode != 0:
            raise LLMError(f"Claude Code failed: {result.stderr}")

        return result.stdout.strip()


class OpenAILLMProvider(LLMProvider):
    """LLM provider using the OpenAI chat completions API with streaming."""

    def __init__(self, config: LLMConfig, api_key: str | None = None):
        super().__init__(config)
        self._api_key = api_key
        self._client = None
        self._async_client = None

    def _get_client(self):
        """Lazy-init the sync client."""
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(api_key=self._api_key, timeout=self.config.timeout)
        return self._client

    def _get_async_client(self):
        """Lazy-init the async client."""
        if self._async_client is None:
            from openai import AsyncOpenAI

            self._async_client = AsyncOpenAI(api_key=self._api_key, timeout=self.config.timeout)
        return self._async_client

    def _messages(self, prompt: str, system_prompt: str | None) -> list[dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        try:
            response = self._get_client().chat.completions.create(
                model=self.config.model,
                messages=self._messages(prompt, system_prompt),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        except Exception as e:
            raise LLMError(f"OpenAI request failed: {e}") from e
        return response.choices[0].message.content or ""

    async def stream(
        self, prompt: str, system_prompt: str | None = None
    ) -> AsyncIterator[LLMChunk]:
        try:
            response = await self._get_async_client().chat.completions.create(
                model=self.config.model,
                messages=self._messages(prompt, system_prompt),
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                stream=True,
            )
        except Exception as e:
            raise LLMError(f"OpenAI request failed: {e}") from e

        async for chunk in response:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            # Reasoning models expose their thinking separately from content
            reasoning = getattr(delta, "reasoning_content", None)
            if reasoning:
                yield LLMChunk(kind="thinking", text=reasoning)
            if delta.content:
                yield LLMChunk(kind="text", text=delta.content)


def get_llm_provider(config: Config | None = None) -> LLMProvider:
    """Get the appropriate LLM provider based on configuration.

    Raises:
        ValueError: If provider name is not recognized.
    """
    if config is None:
        from ..config import load_config

        config = load_config()

    provider_name = config.llm.provider.lower()

    if provider_name == "mock":
        return MockLLMProvider(config.llm)
    elif provider_name == "claude-code":
        return ClaudeCodeLLMProvider(config.llm)
    elif provider_name == "openai":
        return OpenAILLMProvider(config.llm)
    else:
        raise ValueError(f"Unknown LLM provider: {provider_name}")
