"""
Type-safe configuration for Sketch2Agent using Pydantic Settings.

This module provides a centralized, type-safe configuration system
that loads from environment variables and .env files.

Usage:
    from shared.config import config

    if config.reject_cycles:
        ...
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Sketch2AgentConfig(BaseSettings):
    """
    Central configuration for Sketch2Agent.

    All configuration is loaded from environment variables or .env file.
    Provides type safety and validation at startup.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ============================================================================
    # API Keys & Models
    # ============================================================================

    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key for node behavior generation")
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API key for Claude models")
    default_llm_model: str = Field(default="gpt-5-mini", description="Model used to synthesize node behaviors")
    agent_llm_model: str = Field(default="gpt-5-mini", description="Model used by agent node templates")

    # ============================================================================
    # Persistence
    # ============================================================================

    DATABASE_URL: Optional[str] = Field(
        default=None,
        description="Database URL for build records and executions (postgres://... or sqlite://...). Defaults to a local sqlite file."
    )
    redis_url: Optional[str] = Field(default=None, description="Redis URL for the Taskiq build broker")

    # ============================================================================
    # Build Coordinator
    # ============================================================================

    build_poller_enabled: bool = Field(default=True, description="Run the pending-build polling loop inside the worker")
    build_poller_interval_seconds: int = Field(default=2, description="Seconds between build poll ticks")
    build_poller_batch_size: int = Field(default=5, description="Maximum builds claimed per poll tick")
    build_lease_seconds: int = Field(
        default=900,
        description="How long a claimed build stays leased before another worker may reclaim it"
    )
    synthesis_timeout_seconds: float = Field(default=120.0, description="Per-node timeout for the generation service")
    synthesis_max_retries: int = Field(
        default=2,
        description="Retries for transient generation failures (timeouts). Bounded so builds never stay pending forever."
    )

    # ============================================================================
    # Graph Semantics
    # ============================================================================

    reject_cycles: bool = Field(
        default=True,
        description="Reject graphs with cycles among execution/conditional/dependency edges at parse time"
    )
    router_decisions_enabled: bool = Field(
        default=True,
        description="Honor router decisions on conditional edges. When False conditional edges run like execution edges."
    )
    agent_templates_enabled: bool = Field(
        default=False,
        description="Instantiate agent nodes from the agent template. When False agent nodes fail synthesis."
    )

    # ============================================================================
    # Execution Engine
    # ============================================================================

    execution_max_concurrency: int = Field(default=8, description="Parallel node executions within one superstep")
    execution_max_super_steps: int = Field(default=100, description="Hard bound on supersteps per execution")

    # ============================================================================
    # MLflow Configuration
    # ============================================================================

    mlflow_tracking_uri: Optional[str] = Field(default=None, description="MLflow tracking server URI (e.g., http://localhost:5000)")
    mlflow_experiment_name: Optional[str] = Field(default=None, description="MLflow experiment name for organizing runs")

    # ============================================================================
    # Computed Properties
    # ============================================================================

    @property
    def is_mlflow_tracing_enabled(self) -> bool:
        """Check if MLflow tracing is enabled."""
        return self.mlflow_tracking_uri is not None


# ============================================================================
# Global Config Instance
# ============================================================================

config = Sketch2AgentConfig()
