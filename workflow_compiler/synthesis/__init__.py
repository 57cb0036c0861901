from workflow_compiler.synthesis.behaviors import (
    Behavior,
    BehaviorDefinition,
    BehaviorKind,
    NodeContext,
    ROUTE_KEY,
    load_behaviors,
)
from workflow_compiler.synthesis.service import GeneratedCode, GenerationRequest, GenerationService, LLMGenerationService
from workflow_compiler.synthesis.synthesizer import CodeSynthesizer

__all__ = [
    "Behavior",
    "BehaviorDefinition",
    "BehaviorKind",
    "CodeSynthesizer",
    "GeneratedCode",
    "GenerationRequest",
    "GenerationService",
    "LLMGenerationService",
    "NodeContext",
    "ROUTE_KEY",
    "load_behaviors",
]
