"""Shared test fixtures."""

import asyncio
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable

import pytest

from script_conveyor.agents.base import DraftingAgent, DraftRequest, EvaluationAgent, ThinkingChunk
from script_conveyor.budget import BudgetGovernor, LearningService
from script_conveyor.channels import ChannelManager
from script_conveyor.config import BudgetConfig, Config, GenerationSettings
from script_conveyor.models import Draft, Review, Scene, SourceItem, Verdict
from script_conveyor.pipeline import GenerationPipeline, RevisionOrchestrator
from script_conveyor.sources import InMemorySourceProvider
from script_conveyor.storage import JobStore


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--run-llm-tests",
        action="store_true",
        default=False,
        help="Run LLM integration tests (expensive, makes real API calls)",
    )


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "llm_integration: mark test as requiring real LLM calls"
    )


def pytest_collection_modifyitems(config, items):
    """Skip LLM tests unless --run-llm-tests is provided."""
    if not config.getoption("--run-llm-tests", default=False):
        skip_llm = pytest.mark.skip(
            reason="LLM integration tests skipped. Use --run-llm-tests to run."
        )
        for item in items:
            if "llm_integration" in item.keywords:
                item.add_marker(skip_llm)


class FrozenClock:
    """Controllable replacement for ``datetime.now``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class ScriptedWriter(DraftingAgent):
    """Drafting agent that returns a fixed two-scene draft and records requests."""

    def __init__(self, error: Exception | None = None):
        super().__init__(llm=None)
        self.error = error
        self.requests: list[DraftRequest] = []

    @property
    def name(self) -> str:
        return "ScriptedWriter"

    async def stream_draft(self, request: DraftRequest) -> AsyncIterator[ThinkingChunk | Draft]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        yield ThinkingChunk(content=f"drafting v{request.version}")
        scenes = [
            Scene(number=1, text=f"Hook for {request.source.title}", visual="Presenter", duration=5),
            Scene(number=2, text="The story", visual="B-roll", duration=10),
        ]
        yield Draft(scenes=scenes, total_duration=15)


class ScriptedEditor(EvaluationAgent):
    """Evaluation agent that plays back a queue of reviews.

    Each queue entry is a ``(score, verdict)`` pair or an exception to
    raise. An empty queue yields score 5 / needs_revision. When ``gate``
    is set, every review waits for it first.
    """

    def __init__(self, reviews=None, gate: asyncio.Event | None = None):
        super().__init__(llm=None)
        self.reviews = list(reviews or [])
        self.gate = gate
        self.calls = 0

    @property
    def name(self) -> str:
        return "ScriptedEditor"

    async def stream_review(
        self, draft: Draft, source: SourceItem, settings: GenerationSettings
    ) -> AsyncIterator[ThinkingChunk | Review]:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        item = self.reviews.pop(0) if self.reviews else (5, "needs_revision")
        if isinstance(item, Exception):
            raise item
        score, verdict = item
        yield ThinkingChunk(content="evaluating")
        yield Review(score=score, verdict=Verdict(verdict), overall_comment=f"Scored {score}")


class RecordingSink:
    """Push channel sink that keeps every message it receives."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: list[dict] = []
        self.closed = False

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise ConnectionError("sink is gone")
        self.messages.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def events(self, name: str | None = None) -> list[dict]:
        return [m for m in self.messages if name is None or m["event"] == name]


@pytest.fixture
def test_config() -> Config:
    """Provide a test configuration."""
    return Config()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 15, 10, 0, 0))


@pytest.fixture
def articles() -> list[SourceItem]:
    return [
        SourceItem(id=f"a{i}", title=f"Article {i}", body=f"Body of article {i}. It has facts.")
        for i in range(1, 6)
    ]


@pytest.fixture
def sources(articles: list[SourceItem]) -> InMemorySourceProvider:
    return InMemorySourceProvider(articles)


@pytest.fixture
def job_store() -> JobStore:
    return JobStore()


@pytest.fixture
def governor(clock: FrozenClock) -> BudgetGovernor:
    return BudgetGovernor(BudgetConfig(), clock=clock)


@pytest.fixture
def channels() -> ChannelManager:
    return ChannelManager()


@pytest.fixture
def writer() -> ScriptedWriter:
    return ScriptedWriter()


@pytest.fixture
def editor() -> ScriptedEditor:
    return ScriptedEditor()


@pytest.fixture
def editor_cls() -> type[ScriptedEditor]:
    return ScriptedEditor


@pytest.fixture
def writer_cls() -> type[ScriptedWriter]:
    return ScriptedWriter


@pytest.fixture
def make_sink() -> type[RecordingSink]:
    """Factory for recording push channel sinks."""
    return RecordingSink


@pytest.fixture
def make_pipeline(
    job_store: JobStore,
    governor: BudgetGovernor,
    channels: ChannelManager,
    sources: InMemorySourceProvider,
    writer: ScriptedWriter,
) -> Callable[..., GenerationPipeline]:
    """Build a pipeline around a given editor (and optionally writer)."""

    def factory(editor: ScriptedEditor, writer: ScriptedWriter = writer) -> GenerationPipeline:
        return GenerationPipeline(
            store=job_store,
            governor=governor,
            channels=channels,
            sources=sources,
            writer=writer,
            editor=editor,
            learning=LearningService(governor),
        )

    return factory


@pytest.fixture
def pipeline(make_pipeline, editor: ScriptedEditor) -> GenerationPipeline:
    return make_pipeline(editor)


@pytest.fixture
def revisions(pipeline: GenerationPipeline) -> RevisionOrchestrator:
    return RevisionOrchestrator(pipeline, max_revisions=5)


@pytest.fixture
def settings() -> GenerationSettings:
    """Scenario settings: 3 iterations, threshold 8."""
    return GenerationSettings(max_iterations=3, approval_threshold=8)
