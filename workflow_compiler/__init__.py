"""
Public entrypoints for turning diagram exports into runnable workflows.

    graph = parse_graph(export)
    behaviors = {node.id: await synthesizer.synthesize(node, schema, graph) for node in graph.nodes}
    compiled = compile_workflow(graph, behaviors)
"""

from __future__ import annotations

from workflow_compiler.compiler.compile import compile_workflow, load_compiled_workflow
from workflow_compiler.compiler.parse import parse_graph
from workflow_compiler.runtime.execution import CompiledWorkflow

__all__ = ["CompiledWorkflow", "compile_workflow", "load_compiled_workflow", "parse_graph"]
