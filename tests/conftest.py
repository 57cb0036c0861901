import pytest

from tests.shared_data import FakeGenerationService, configure_test_logging
from workflow_compiler.build.coordinator import BuildCoordinator, BuildSettings
from workflow_compiler.build.store import InMemoryBuildStore
from workflow_compiler.runtime.engine import ExecutionEngine, ExecutionSettings
from workflow_compiler.synthesis.synthesizer import CodeSynthesizer


configure_test_logging()


@pytest.fixture
def store() -> InMemoryBuildStore:
    return InMemoryBuildStore()


@pytest.fixture
def generation_service() -> FakeGenerationService:
    return FakeGenerationService()


@pytest.fixture
def build_settings() -> BuildSettings:
    return BuildSettings(synthesis_timeout_seconds=5.0, synthesis_max_retries=1)


@pytest.fixture
def coordinator(store, generation_service, build_settings) -> BuildCoordinator:
    return BuildCoordinator(store, CodeSynthesizer(generation_service), build_settings, worker_id="builder-test")


@pytest.fixture
def engine(store) -> ExecutionEngine:
    return ExecutionEngine(store, ExecutionSettings(max_concurrency=4, max_super_steps=20))
