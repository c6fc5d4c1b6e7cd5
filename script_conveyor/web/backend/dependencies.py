"""Dependency injection for FastAPI."""

import os
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from ...agents import EditorAgent, LLMProvider, ScriptwriterAgent, get_llm_provider
from ...budget import BudgetGovernor
from ...channels import ChannelManager
from ...config import Config, load_config
from ...pipeline import GenerationPipeline, RevisionOrchestrator
from ...sources import (
    HttpSourceProvider,
    InMemorySourceProvider,
    JsonSourceProvider,
    SourceProvider,
)
from ...storage import JobStore

# Optional path to config.yaml
CONFIG_ENV_VAR = "SCRIPT_CONVEYOR_CONFIG"


@lru_cache
def get_config() -> Config:
    """Get the application configuration (cached)."""
    return load_config(os.environ.get(CONFIG_ENV_VAR))


@lru_cache
def get_channel_manager() -> ChannelManager:
    """Get the push channel manager (cached singleton)."""
    return ChannelManager()


@lru_cache
def get_job_store() -> JobStore:
    """Get the job store (cached singleton)."""
    return JobStore(data_dir=get_config().storage.data_dir)


@lru_cache
def get_governor() -> BudgetGovernor:
    """Get the budget governor (cached singleton)."""
    config = get_config()
    return BudgetGovernor(config.budget, data_dir=config.storage.data_dir)


@lru_cache
def get_source_provider() -> SourceProvider:
    """Get the source item provider (cached singleton)."""
    storage = get_config().storage
    if storage.sources_url:
        return HttpSourceProvider(storage.sources_url)
    if storage.sources_path is not None:
        return JsonSourceProvider(storage.sources_path)
    return InMemorySourceProvider()


@lru_cache
def get_llm() -> LLMProvider:
    """Get the LLM provider shared by both agents (cached singleton)."""
    return get_llm_provider(get_config())


@lru_cache
def get_pipeline() -> GenerationPipeline:
    """Get the generation pipeline (cached singleton)."""
    llm = get_llm()
    return GenerationPipeline(
        store=get_job_store(),
        governor=get_governor(),
        channels=get_channel_manager(),
        sources=get_source_provider(),
        writer=ScriptwriterAgent(llm),
        editor=EditorAgent(llm),
        config=get_config().generation,
    )


@lru_cache
def get_revision_orchestrator() -> RevisionOrchestrator:
    """Get the revision orchestrator (cached singleton)."""
    return RevisionOrchestrator(get_pipeline(), max_revisions=get_config().generation.max_revisions)


def get_subject_id(x_subject_id: Annotated[str | None, Header()] = None) -> str:
    """Read the caller's subject identity from the X-Subject-Id header."""
    if not x_subject_id or not x_subject_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Missing X-Subject-Id header", "code": "UNAUTHORIZED"},
        )
    return x_subject_id.strip()


def reset_dependencies() -> None:
    """Clear every cached singleton, e.g. between tests."""
    for factory in (
        get_config,
        get_channel_manager,
        get_job_store,
        get_governor,
        get_source_provider,
        get_llm,
        get_pipeline,
        get_revision_orchestrator,
    ):
        factory.cache_clear()


# Type aliases for cleaner router signatures
ConfigDep = Annotated[Config, Depends(get_config)]
ChannelManagerDep = Annotated[ChannelManager, Depends(get_channel_manager)]
JobStoreDep = Annotated[JobStore, Depends(get_job_store)]
GovernorDep = Annotated[BudgetGovernor, Depends(get_governor)]
PipelineDep = Annotated[GenerationPipeline, Depends(get_pipeline)]
RevisionDep = Annotated[RevisionOrchestrator, Depends(get_revision_orchestrator)]
SubjectDep = Annotated[str, Depends(get_subject_id)]
