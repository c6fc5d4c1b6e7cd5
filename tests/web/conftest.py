"""Test fixtures for web backend tests."""

from typing import Generator

import pytest
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.testclient import TestClient

from script_conveyor.budget import BudgetGovernor
from script_conveyor.channels import ChannelManager
from script_conveyor.config import Config
from script_conveyor.pipeline import GenerationPipeline, RevisionOrchestrator
from script_conveyor.storage import JobStore
from script_conveyor.web.backend import dependencies


@pytest.fixture
def headers() -> dict[str, str]:
    """Identity headers for the default test subject."""
    return {"X-Subject-Id": "s1"}


@pytest.fixture
def test_client(
    test_config: Config,
    job_store: JobStore,
    governor: BudgetGovernor,
    channels: ChannelManager,
    pipeline: GenerationPipeline,
    revisions: RevisionOrchestrator,
) -> Generator[TestClient, None, None]:
    """Create a test client with mocked dependencies."""
    from script_conveyor.web.backend.dependencies import (
        get_channel_manager,
        get_config,
        get_governor,
        get_job_store,
        get_pipeline,
        get_revision_orchestrator,
    )
    from script_conveyor.web.backend.routers import (
        channels_router,
        generation_router,
        jobs_router,
    )

    # Clear any cached dependencies
    dependencies.reset_dependencies()

    # Create app without lifespan to avoid building the real pipeline
    app = FastAPI(title="Script Conveyor API - Test")

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(generation_router, prefix="/api/v1")
    app.include_router(jobs_router, prefix="/api/v1")
    app.include_router(channels_router)

    @app.get("/health")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    # Override dependencies
    app.dependency_overrides[get_config] = lambda: test_config
    app.dependency_overrides[get_channel_manager] = lambda: channels
    app.dependency_overrides[get_job_store] = lambda: job_store
    app.dependency_overrides[get_governor] = lambda: governor
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_revision_orchestrator] = lambda: revisions

    with TestClient(app) as client:
        yield client
        # Background batches run on the client's event loop
        client.portal.call(pipeline.shutdown)

    # Cleanup
    app.dependency_overrides.clear()


@pytest.fixture
def wait_idle(test_client: TestClient, pipeline: GenerationPipeline):
    """Block until every background batch, revision and regeneration is done."""

    def wait() -> None:
        test_client.portal.call(pipeline.join)

    return wait
