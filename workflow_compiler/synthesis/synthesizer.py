"""
CodeSynthesizer: produce one Behavior per node, dispatched on the node's role.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from shared.logger import get_logger
from workflow_compiler.errors import SynthesisError
from workflow_compiler.schema.models import EdgeKind, FieldType, NodeRole, WorkflowGraph, WorkflowNode
from workflow_compiler.schema.state import StateSchema, merge_field_types, parse_field_declarations
from workflow_compiler.synthesis.behaviors import (
    AgentTemplateBehavior,
    Behavior,
    BehaviorDefinition,
    BehaviorKind,
    EndpointToolBehavior,
    GeneratedBehavior,
    RouterBehavior,
)
from workflow_compiler.synthesis.service import GeneratedCode, GenerationRequest, GenerationService, RouteTarget

logger = get_logger(__name__)


class CodeSynthesizer:
    def __init__(
        self,
        generation_service: GenerationService,
        *,
        agent_templates_enabled: bool = False,
        agent_model: Optional[str] = None,
        llm_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._generation_service = generation_service
        self._agent_templates_enabled = agent_templates_enabled
        self._agent_model = agent_model
        self._llm_factory = llm_factory
        self._strategies: Dict[NodeRole, Callable[[WorkflowNode, StateSchema, WorkflowGraph], Awaitable[Behavior]]] = {
            NodeRole.regular: self._synthesize_regular,
            NodeRole.agent: self._synthesize_agent,
            NodeRole.router: self._synthesize_router,
        }

    async def synthesize(self, node: WorkflowNode, state_schema: StateSchema, graph: WorkflowGraph) -> Behavior:
        """Return the behavior for `node`. Raises SynthesisError when none can be produced."""
        strategy = self._strategies[node.role]
        behavior = await strategy(node, state_schema, graph)
        logger.info(
            "Synthesized node behavior",
            extra={"node_id": node.id, "role": node.role.value, "behavior": behavior.kind.value},
        )
        return behavior

    # ------------------------------------------------------------------
    # Regular nodes
    # ------------------------------------------------------------------
    async def _synthesize_regular(
        self, node: WorkflowNode, state_schema: StateSchema, graph: WorkflowGraph
    ) -> Behavior:
        if node.properties.get("endpoint") and _is_tool_node(node.id, graph):
            return self._endpoint_tool(node)

        generated = await self._generation_service.generate(_request_for(node, state_schema, graph))
        inputs, outputs = _declared_fields(node, generated)
        return GeneratedBehavior(
            BehaviorDefinition(
                kind=BehaviorKind.generated,
                node_id=node.id,
                function_name=node.function_name,
                source_code=_checked_source(node, generated),
                input_fields=inputs,
                output_fields=outputs,
                config={"description": node.description},
            )
        )

    def _endpoint_tool(self, node: WorkflowNode) -> Behavior:
        output_field = node.properties.get("output_field") or next(iter(node.outputs), None)
        return EndpointToolBehavior(
            BehaviorDefinition(
                kind=BehaviorKind.endpoint_tool,
                node_id=node.id,
                function_name=node.function_name,
                input_fields=node.inputs,
                output_fields=node.outputs,
                config={
                    "endpoint": str(node.properties["endpoint"]),
                    "method": str(node.properties.get("method") or "POST").upper(),
                    "output_field": output_field,
                    "description": node.description or node.caption,
                },
            )
        )

    # ------------------------------------------------------------------
    # Agent nodes
    # ------------------------------------------------------------------
    async def _synthesize_agent(
        self, node: WorkflowNode, state_schema: StateSchema, graph: WorkflowGraph
    ) -> Behavior:
        if not self._agent_templates_enabled:
            raise SynthesisError(
                f"Agent node '{node.caption}' cannot be built: agent templates are disabled",
                node_id=node.id,
            )
        properties = node.properties
        input_field = str(properties.get("input_field") or next(iter(node.inputs), None) or "message")
        output_field = str(
            properties.get("output_field") or next(iter(node.outputs), None) or f"{node.function_name}_response"
        )
        system_prompt = properties.get("prompt") or properties.get("system_prompt") or node.description
        definition = BehaviorDefinition(
            kind=BehaviorKind.agent_template,
            node_id=node.id,
            function_name=node.function_name,
            input_fields={input_field: node.inputs.get(input_field, FieldType.string)},
            output_fields={output_field: FieldType.string},
            tool_node_ids=[tool.id for tool in graph.tools_of(node.id)],
            config={
                "model": properties.get("model") or self._agent_model,
                "system_prompt": str(system_prompt or ""),
                "input_field": input_field,
                "output_field": output_field,
                "endpoint": properties.get("endpoint"),
                "description": node.description or node.caption,
            },
        )
        return AgentTemplateBehavior(definition, llm_factory=self._llm_factory)

    # ------------------------------------------------------------------
    # Router nodes
    # ------------------------------------------------------------------
    async def _synthesize_router(
        self, node: WorkflowNode, state_schema: StateSchema, graph: WorkflowGraph
    ) -> Behavior:
        targets = graph.conditional_targets(node.id)
        aliases: Dict[str, str] = {}
        for target_id in targets:
            target = graph.node(target_id)
            aliases.setdefault(target.caption, target_id)
            aliases.setdefault(target.function_name, target_id)

        route_field = node.properties.get("route_field")
        if route_field:
            routes = _parse_routes(node, node.properties.get("routes"))
            resolved = {value: _resolve_target(node, ref, targets, aliases) for value, ref in routes.items()}
            default_ref = node.properties.get("default_route")
            default_route = _resolve_target(node, default_ref, targets, aliases) if default_ref else None
            return RouterBehavior(
                BehaviorDefinition(
                    kind=BehaviorKind.router,
                    node_id=node.id,
                    function_name=node.function_name,
                    input_fields={str(route_field): node.inputs.get(str(route_field), FieldType.any)},
                    targets=targets,
                    route_field=str(route_field),
                    routes=resolved,
                    default_route=default_route,
                    config={"target_aliases": aliases},
                )
            )

        generated = await self._generation_service.generate(_request_for(node, state_schema, graph))
        inputs, _ = _declared_fields(node, generated)
        return RouterBehavior(
            BehaviorDefinition(
                kind=BehaviorKind.router,
                node_id=node.id,
                function_name=node.function_name,
                source_code=_checked_source(node, generated),
                input_fields=inputs,
                targets=targets,
                config={"target_aliases": aliases, "description": node.description},
            )
        )


def _is_tool_node(node_id: str, graph: WorkflowGraph) -> bool:
    return bool(graph.incoming(node_id, [EdgeKind.tool]))


def _request_for(node: WorkflowNode, state_schema: StateSchema, graph: WorkflowGraph) -> GenerationRequest:
    return GenerationRequest(
        node_id=node.id,
        function_name=node.function_name,
        caption=node.caption,
        role=node.role,
        description=node.description,
        properties=dict(node.properties),
        state_schema=state_schema.describe(),
        declared_inputs={name: field_type.value for name, field_type in node.inputs.items()},
        declared_outputs={name: field_type.value for name, field_type in node.outputs.items()},
        route_targets=[
            RouteTarget(
                node_id=target_id,
                caption=graph.node(target_id).caption,
                function_name=graph.node(target_id).function_name,
            )
            for target_id in graph.conditional_targets(node.id)
        ],
    )


def _checked_source(node: WorkflowNode, generated: GeneratedCode) -> str:
    if generated.function_name != node.function_name:
        raise SynthesisError(
            f"Generated function for node '{node.id}' is named '{generated.function_name}', "
            f"expected '{node.function_name}'",
            node_id=node.id,
        )
    if not generated.source_code.strip():
        raise SynthesisError(f"Generation service returned no code for node '{node.id}'", node_id=node.id)
    return generated.source_code


def _declared_fields(node: WorkflowNode, generated: GeneratedCode):
    """Node declarations win; generated declarations fill in the rest."""
    try:
        generated_inputs = parse_field_declarations(generated.input_fields)
        generated_outputs = parse_field_declarations(generated.output_fields)
    except ValueError as exc:
        raise SynthesisError(f"Generated field declarations for node '{node.id}' are invalid: {exc}", node_id=node.id) from exc
    return (
        _overlay(node, generated_inputs, node.inputs),
        _overlay(node, generated_outputs, node.outputs),
    )


def _overlay(node: WorkflowNode, generated: Mapping[str, FieldType], declared: Mapping[str, FieldType]) -> Dict[str, FieldType]:
    merged = dict(generated)
    for name, field_type in declared.items():
        unified = merge_field_types(merged.get(name, FieldType.any), field_type)
        if unified is None:
            raise SynthesisError(
                f"Generated code for node '{node.id}' types field '{name}' as '{merged[name].value}' "
                f"but the node declares '{field_type.value}'",
                node_id=node.id,
            )
        merged[name] = unified
    return merged


def _parse_routes(node: WorkflowNode, raw: Any) -> Dict[str, str]:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SynthesisError(f"Router '{node.id}' has invalid routes JSON: {exc}", node_id=node.id) from exc
    if not isinstance(raw, Mapping) or not raw:
        raise SynthesisError(
            f"Router '{node.id}' declares route_field but no routes mapping",
            node_id=node.id,
        )
    return {str(value): str(ref) for value, ref in raw.items()}


def _resolve_target(node: WorkflowNode, ref: Any, targets, aliases: Mapping[str, str]) -> str:
    ref = str(ref)
    if ref in targets:
        return ref
    if ref in aliases:
        return aliases[ref]
    raise SynthesisError(
        f"Router '{node.id}' routes to '{ref}', which is not one of its conditional targets",
        node_id=node.id,
    )


__all__ = ["CodeSynthesizer"]
