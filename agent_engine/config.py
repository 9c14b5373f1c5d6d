"""Engine configuration loaded from environment variables."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_engine.schemas import Tier


class EngineSettings(BaseSettings):
    """Settings for the agent engine (env prefix ``AGENT_ENGINE_``)."""

    model_config = SettingsConfigDict(
        env_prefix="AGENT_ENGINE_",
        env_file=".env",
        extra="ignore",
    )

    # Storage
    data_dir: Path = Path.home() / ".agent_engine"
    db_path: Path | None = None
    store_enabled: bool = True

    # Embeddings
    embedding_backend: str = Field(default="chroma", pattern=r"^(chroma|ollama|none)$")
    ollama_base_url: str = "http://localhost:11434"
    ollama_embedding_model: str = "nomic-embed-text"

    # Completion
    tier_models: dict[Tier, str] = Field(
        default_factory=lambda: {
            Tier.FAST: "llama3.2:3b",
            Tier.STANDARD: "qwen2.5:14b",
            Tier.HEAVY: "qwen2.5:32b",
        }
    )
    completion_timeout: float = 120.0

    # Execution
    worker_url: str | None = None

    # Discovery
    index_batch_size: int = Field(default=64, ge=1)
    discovery_limit: int = Field(default=10, ge=1)

    # Delegation
    stream_flush_chars: int = Field(default=50, ge=1)
    stream_flush_interval: float = Field(default=0.1, gt=0)
    max_concurrent_subagents: int = Field(default=10, ge=1)
    sub_agent_max_iterations: int = Field(default=10, ge=1)
    orchestrator_max_iterations: int = Field(default=25, ge=1)

    # Clarification
    clarification_timeout: float = Field(default=300.0, gt=0)

    log_level: str = "INFO"

    @property
    def resolved_db_path(self) -> Path:
        return self.db_path or self.data_dir / "engine.db"


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Get the process-wide settings instance."""
    return EngineSettings()
