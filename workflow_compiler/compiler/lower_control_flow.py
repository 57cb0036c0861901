"""
Stage 3 — Lower control edges into transition rules.

Tool edges never become transitions; they only describe which tools an agent
owns. Rules keep the export's edge order, which is also the merge order the
engine uses inside a superstep.
"""

from __future__ import annotations

from typing import Tuple

from workflow_compiler.schema.models import EdgeKind, NodeRole, StrictModel, WorkflowGraph


class TransitionRule(StrictModel):
    source: str
    target: str
    kind: EdgeKind
    # target runs only when the source router selects it
    gated: bool = False
    # target sees only the source's output fields
    isolated: bool = False


def lower_transitions(graph: WorkflowGraph, *, router_decisions: bool = True) -> Tuple[TransitionRule, ...]:
    rules = []
    for edge in graph.edges:
        if not edge.is_control:
            continue
        source_role = graph.node(edge.source).role
        rules.append(
            TransitionRule(
                source=edge.source,
                target=edge.target,
                kind=edge.kind,
                gated=(
                    router_decisions
                    and edge.kind == EdgeKind.conditional
                    and source_role == NodeRole.router
                ),
                isolated=edge.kind == EdgeKind.dependency,
            )
        )
    return tuple(rules)


__all__ = ["TransitionRule", "lower_transitions"]
