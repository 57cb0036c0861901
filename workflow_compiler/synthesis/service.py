"""
Boundary to the external code generation service.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from shared.logger import get_logger
from workflow_compiler.schema.models import NodeRole

logger = get_logger(__name__)


class RouteTarget(BaseModel):
    node_id: str
    caption: str
    function_name: str


class GenerationRequest(BaseModel):
    """What the generation service sees about one node."""

    node_id: str
    function_name: str
    caption: str
    role: NodeRole
    description: str = ""
    properties: Dict[str, Any] = Field(default_factory=dict)
    state_schema: Dict[str, str] = Field(default_factory=dict)
    declared_inputs: Dict[str, str] = Field(default_factory=dict)
    declared_outputs: Dict[str, str] = Field(default_factory=dict)
    route_targets: List[RouteTarget] = Field(default_factory=list)


class GeneratedCode(BaseModel):
    """Structured answer of the generation service."""

    function_name: str = Field(description="Name of the function defined in source_code")
    source_code: str = Field(description="Python module source defining exactly one function taking `state`")
    input_fields: Dict[str, str] = Field(default_factory=dict, description="State fields the function reads")
    output_fields: Dict[str, str] = Field(default_factory=dict, description="State fields the function returns")


class GenerationService(Protocol):
    async def generate(self, request: GenerationRequest) -> GeneratedCode:
        ...


_NODE_INSTRUCTIONS = """You write one Python function for a workflow node.

Contract:
- Define `def {function_name}(state: dict) -> dict:` (plain `def` or `async def`).
- `state` is a dict of the workflow's current fields. Never mutate it.
- Return a dict containing only the fields this node produces.
- Only these modules may be imported: collections, datetime, functools, itertools,
  json, math, random, re, statistics, string, textwrap, time, typing.
- No file, network or process access.
- Field types are one of: string, integer, number, boolean, object, array, any.
"""

_ROUTER_INSTRUCTIONS = """You write one Python function that routes a workflow.

Contract:
- Define `def {function_name}(state: dict) -> str:`.
- Return exactly one of these node ids: {targets}.
- Only these modules may be imported: collections, datetime, functools, itertools,
  json, math, random, re, statistics, string, textwrap, time, typing.
- `output_fields` must be empty.
"""


class LLMGenerationService:
    """Generation service backed by a chat model with structured output."""

    def __init__(self, llm_factory: Optional[Callable[..., Any]] = None, *, model: Optional[str] = None) -> None:
        if llm_factory is None:
            from shared.llm import get_llm

            llm_factory = get_llm
        self._llm_factory = llm_factory
        self._model = model

    async def generate(self, request: GenerationRequest) -> GeneratedCode:
        from langchain_core.messages import HumanMessage, SystemMessage

        if request.role == NodeRole.router:
            targets = ", ".join(
                f"{target.node_id} ({target.caption})" for target in request.route_targets
            )
            instructions = _ROUTER_INSTRUCTIONS.format(function_name=request.function_name, targets=targets)
        else:
            instructions = _NODE_INSTRUCTIONS.format(function_name=request.function_name)

        brief = {
            "node": request.caption,
            "description": request.description,
            "properties": request.properties,
            "workflow_state_schema": request.state_schema,
            "declared_inputs": request.declared_inputs,
            "declared_outputs": request.declared_outputs,
        }
        llm = self._llm_factory(model=self._model).with_structured_output(GeneratedCode)
        logger.info(
            "Requesting generated code",
            extra={"node_id": request.node_id, "function_name": request.function_name},
        )
        result = await llm.ainvoke(
            [
                SystemMessage(content=instructions),
                HumanMessage(content=json.dumps(brief, indent=2, default=str)),
            ]
        )
        return result


__all__ = [
    "GeneratedCode",
    "GenerationRequest",
    "GenerationService",
    "LLMGenerationService",
    "RouteTarget",
]
