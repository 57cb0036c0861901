"""
Stage 4 — Assemble the parsed graph and synthesized behaviors into a CompiledWorkflow.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional

from pydantic import ValidationError

from shared.logger import get_logger
from workflow_compiler.compiler.lower_control_flow import lower_transitions
from workflow_compiler.compiler.type_env import build_state_schema
from workflow_compiler.errors import CompileError
from workflow_compiler.runtime.execution import DOCUMENT_VERSION, CompiledWorkflow
from workflow_compiler.schema.models import WorkflowGraph
from workflow_compiler.synthesis.behaviors import Behavior, BehaviorDefinition, load_behaviors

logger = get_logger(__name__)


def compile_workflow(
    graph: WorkflowGraph,
    behaviors: Mapping[str, Behavior],
    *,
    workflow_id: str = "",
    router_decisions: bool = True,
) -> CompiledWorkflow:
    """
    Bind every node to its behavior and every control edge to a transition rule.

    Deterministic: the same (graph, behaviors) input always yields the same
    state schema and transition rules.
    """
    node_ids = graph.node_ids()
    missing = [node_id for node_id in node_ids if node_id not in behaviors]
    if missing:
        raise CompileError(f"No behavior bound for node(s): {', '.join(missing)}")
    unknown = sorted(set(behaviors) - set(node_ids))
    if unknown:
        raise CompileError(f"Behaviors supplied for unknown node(s): {', '.join(unknown)}")
    for node_id in node_ids:
        if behaviors[node_id].node_id != node_id:
            raise CompileError(
                f"Behavior for node '{behaviors[node_id].node_id}' was bound to node '{node_id}'"
            )

    state_schema = build_state_schema(graph, behaviors)
    transitions = lower_transitions(graph, router_decisions=router_decisions)

    bound: Dict[str, Behavior] = {}
    for node_id in node_ids:
        bound[node_id] = behaviors[node_id].bind(bound)

    compiled = CompiledWorkflow(
        workflow_id=workflow_id,
        graph=graph,
        behaviors=MappingProxyType(bound),
        state_schema=state_schema,
        transitions=transitions,
        router_decisions=router_decisions,
        chat_input_field=_chat_input_field(graph, bound),
        chat_output_field=_chat_output_field(graph, bound),
    )
    logger.info(
        "Compiled workflow",
        extra={
            "workflow_id": workflow_id,
            "nodes": len(node_ids),
            "transitions": len(transitions),
            "state_fields": len(state_schema.entries),
        },
    )
    return compiled


def load_compiled_workflow(
    document: Mapping[str, Any],
    *,
    llm_factory: Optional[Callable[..., Any]] = None,
) -> CompiledWorkflow:
    """Rehydrate a persisted CompiledWorkflow document into live behaviors."""
    if document.get("version") != DOCUMENT_VERSION:
        raise CompileError(f"Unsupported compiled workflow document version {document.get('version')!r}")
    try:
        graph = WorkflowGraph.model_validate(document["graph"])
        definitions = {
            node_id: BehaviorDefinition.model_validate(raw)
            for node_id, raw in document["behaviors"].items()
        }
    except (KeyError, ValidationError) as exc:
        raise CompileError(f"Compiled workflow document is invalid: {exc}") from exc
    return compile_workflow(
        graph,
        load_behaviors(definitions, llm_factory=llm_factory),
        workflow_id=str(document.get("workflow_id") or ""),
        router_decisions=bool(document.get("router_decisions", True)),
    )


def _chat_input_field(graph: WorkflowGraph, behaviors: Mapping[str, Behavior]) -> Optional[str]:
    for entry_id in graph.entry_ids:
        declared = list(graph.node(entry_id).inputs) or list(behaviors[entry_id].input_fields)
        if declared:
            return declared[0]
    return None


def _chat_output_field(graph: WorkflowGraph, behaviors: Mapping[str, Behavior]) -> Optional[str]:
    for exit_id in reversed(graph.exit_ids):
        declared = list(graph.node(exit_id).outputs) or list(behaviors[exit_id].output_fields)
        if declared:
            return declared[0]
    return None


__all__ = ["compile_workflow", "load_compiled_workflow"]
