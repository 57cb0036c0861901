"""
Stage 2 — Derive the workflow state schema from node declarations and behaviors.
"""

from __future__ import annotations

from typing import List, Mapping, Tuple

from workflow_compiler.schema.models import FieldType, WorkflowGraph
from workflow_compiler.schema.state import StateSchema
from workflow_compiler.synthesis.behaviors import Behavior


def build_state_schema(graph: WorkflowGraph, behaviors: Mapping[str, Behavior]) -> StateSchema:
    """
    Union of every field a node declares (`inputs` / `outputs` properties) or
    its behavior reads or writes. Raises CompileError on incompatible types.
    """
    declarations: List[Tuple[str, Mapping[str, FieldType]]] = []
    for node in graph.nodes:
        owner = f"'{node.caption}' ({node.id})"
        declarations.append((owner, node.inputs))
        declarations.append((owner, node.outputs))
        behavior = behaviors.get(node.id)
        if behavior is not None:
            declarations.append((owner, behavior.input_fields))
            declarations.append((owner, behavior.output_fields))
    return StateSchema.from_declarations(declarations)


__all__ = ["build_state_schema"]
