"""
Wiring of stores, coordinator and engine from the global configuration.
Library code takes these collaborators by injection; only entrypoints (API,
worker) call the factories below.
"""

from __future__ import annotations

from typing import Optional

from shared.config import Sketch2AgentConfig, config as default_config
from workflow_compiler.build.coordinator import BuildCoordinator, BuildSettings
from workflow_compiler.build.store import BuildStore
from workflow_compiler.runtime.engine import ExecutionEngine, ExecutionSettings
from workflow_compiler.synthesis.service import GenerationService, LLMGenerationService
from workflow_compiler.synthesis.synthesizer import CodeSynthesizer


def create_store() -> BuildStore:
    from workflow_compiler.build.tortoise_store import TortoiseBuildStore  # requires initialized Tortoise

    return TortoiseBuildStore()


def create_synthesizer(
    generation_service: Optional[GenerationService] = None,
    *,
    settings: Optional[Sketch2AgentConfig] = None,
) -> CodeSynthesizer:
    settings = settings or default_config
    return CodeSynthesizer(
        generation_service or LLMGenerationService(model=settings.default_llm_model),
        agent_templates_enabled=settings.agent_templates_enabled,
        agent_model=settings.agent_llm_model,
    )


def create_build_coordinator(
    store: BuildStore,
    *,
    generation_service: Optional[GenerationService] = None,
    settings: Optional[Sketch2AgentConfig] = None,
) -> BuildCoordinator:
    settings = settings or default_config
    return BuildCoordinator(
        store,
        create_synthesizer(generation_service, settings=settings),
        BuildSettings.from_config(settings),
    )


def create_execution_engine(store: BuildStore, *, settings: Optional[Sketch2AgentConfig] = None) -> ExecutionEngine:
    settings = settings or default_config
    return ExecutionEngine(store, ExecutionSettings.from_config(settings))


__all__ = [
    "create_build_coordinator",
    "create_execution_engine",
    "create_store",
    "create_synthesizer",
]
