"""Configuration loading and management."""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import SettingsValidationError


class LLMConfig(BaseModel):
    """LLM provider configuration."""

    provider: str = "mock"
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = 0.7
    timeout: int = 300


class StylePreferences(BaseModel):
    """Voice of the generated script."""

    formality: Literal["formal", "conversational", "casual"] = "conversational"
    tone: Literal["serious", "engaging", "funny", "motivational"] = "engaging"
    language: Literal["en", "ru"] = "en"


class DurationRange(BaseModel):
    """Target script length in seconds."""

    min: int = Field(default=30, ge=5)
    max: int = Field(default=90, ge=5)

    @model_validator(mode="after")
    def _check_order(self) -> "DurationRange":
        if self.min > self.max:
            raise ValueError("duration range min must not exceed max")
        return self


class GenerationConfig(BaseModel):
    """Defaults for the draft/evaluate loop."""

    max_iterations: int = 3
    approval_threshold: float = 8.0
    max_revisions: int = 5
    style: StylePreferences = Field(default_factory=StylePreferences)
    duration: DurationRange = Field(default_factory=DurationRange)


class BudgetConfig(BaseModel):
    """Per-subject quota defaults and charging policy."""

    daily_limit: int = 10
    monthly_budget_limit: float = 10.0
    cost_per_item: float = 0.05
    charge_failed_attempts: bool = True


class StorageConfig(BaseModel):
    """Where jobs and quota state are persisted (None keeps them in memory).

    ``sources_path`` is a JSON file or directory of source articles;
    ``sources_url`` points at an article service and wins when both are set.
    """

    data_dir: Path | None = None
    sources_path: Path | None = None
    sources_url: str | None = None


class WebConfig(BaseModel):
    """Web server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]


class Config(BaseModel):
    """Main application configuration."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    web: WebConfig = Field(default_factory=WebConfig)

    @classmethod
    def from_yaml(cls, path: Path | str) -> "Config":
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return cls()

        return cls(**data)

    def to_yaml(self, path: Path | str) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False)


class GenerationSettings(BaseModel):
    """Settings for one generation run.

    ``approval_threshold`` is on the editor's 1-10 scale.
    """

    max_iterations: int = Field(default=3, ge=1, le=10)
    approval_threshold: float = Field(default=8.0, ge=1, le=10)
    style: StylePreferences = Field(default_factory=StylePreferences)
    duration: DurationRange = Field(default_factory=DurationRange)
    writer_instructions: str | None = None
    editor_instructions: str | None = None
    examples: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _strip_instructions(self) -> "GenerationSettings":
        for name in ("writer_instructions", "editor_instructions"):
            value = getattr(self, name)
            if value is not None and not value.strip():
                setattr(self, name, None)
        self.examples = [e for e in self.examples if e.strip()]
        return self

    @classmethod
    def from_config(cls, config: GenerationConfig) -> "GenerationSettings":
        """Build run settings from configured defaults."""
        return cls(
            max_iterations=config.max_iterations,
            approval_threshold=config.approval_threshold,
            style=config.style,
            duration=config.duration,
        )

    @classmethod
    def parse(cls, data: dict[str, Any] | None, defaults: GenerationConfig | None = None) -> "GenerationSettings":
        """Validate raw settings, filling gaps from configured defaults.

        Raises:
            SettingsValidationError: If any field is invalid.
        """
        base = cls.from_config(defaults or GenerationConfig()).model_dump()
        base.update(data or {})
        try:
            return cls(**base)
        except ValidationError as e:
            raise SettingsValidationError(str(e)) from e


def load_config(config_path: Path | str | None = None) -> Config:
    """Load configuration from file or use defaults."""
    if config_path is None:
        # Look for config.yaml in current directory or project root
        candidates = [Path("config.yaml"), Path(__file__).parent.parent / "config.yaml"]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is not None:
        return Config.from_yaml(config_path)

    return Config()
