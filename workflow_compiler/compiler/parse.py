"""
Stage 1 — Parse a diagram export into a validated, classified WorkflowGraph.
"""

from __future__ import annotations

import json
import re
from collections import Counter, deque
from typing import Any, Dict, List, Mapping, Set

from pydantic import ValidationError

from shared.logger import get_logger
from workflow_compiler.errors import (
    CycleError,
    DanglingEdgeError,
    DuplicateNodeError,
    NoEntryNode,
    ParseError,
)
from workflow_compiler.schema.models import (
    WIRE_EDGE_KINDS,
    EdgeKind,
    ExportNode,
    GraphExport,
    NodeRole,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
)
from workflow_compiler.schema.state import parse_field_declarations

logger = get_logger(__name__)


def sanitize_node_name(name: str) -> str:
    """Turn a node caption into a Python identifier usable as a function name."""
    if not name:
        return "unnamed_node"
    sanitized = re.sub(r"[^a-zA-Z0-9_]", "_", name.replace(" ", "_"))
    sanitized = re.sub(r"_+", "_", sanitized).strip("_")
    if sanitized and sanitized[0].isdigit():
        sanitized = f"node_{sanitized}"
    return sanitized or "unnamed_node"


def load_graph_export(payload: Any) -> GraphExport:
    """
    Accepts either a JSON string, a mapping or a GraphExport and returns a
    validated GraphExport instance.
    """
    if isinstance(payload, GraphExport):
        return payload
    if isinstance(payload, str):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Invalid graph JSON payload: {exc}") from exc
    elif isinstance(payload, Mapping):
        data = payload
    else:
        raise ParseError(
            f"Unsupported payload type {type(payload).__name__}; expected str or Mapping"
        )

    try:
        return GraphExport.model_validate(data)
    except ValidationError as exc:
        raise ParseError(f"Graph export validation failed: {exc}") from exc


def parse_graph(payload: Any, *, reject_cycles: bool = True) -> WorkflowGraph:
    """
    Validate and classify a raw graph export.

    Entry candidates are nodes without incoming execution/conditional/dependency
    edges (tool edges are ownership metadata and never count). Several entry
    candidates are accepted and all of them start the run. Nodes that cannot be
    reached from an entry are reported in `unreachable_ids` but not rejected.
    Nodes wired only as an agent's tools go to `tool_ids` instead of entries.
    """
    export = load_graph_export(payload)

    _check_unique_ids(export.nodes)
    node_ids = {node.id for node in export.nodes}

    edges: List[WorkflowEdge] = []
    for rel in export.relationships:
        kind = WIRE_EDGE_KINDS.get(rel.type)
        if kind is None:
            raise ParseError(
                f"Unsupported relationship type '{rel.type}' on edge {rel.from_id} -> {rel.to_id}; "
                f"expected one of {sorted(WIRE_EDGE_KINDS)}"
            )
        missing = [ref for ref in (rel.from_id, rel.to_id) if ref not in node_ids]
        if missing:
            raise DanglingEdgeError(
                f"Edge {rel.from_id} -> {rel.to_id} references unknown node(s): {', '.join(missing)}"
            )
        edges.append(WorkflowEdge(source=rel.from_id, target=rel.to_id, kind=kind))

    in_degree = Counter(edge.target for edge in edges if edge.is_control)
    tool_ids = [node.id for node in export.nodes if _is_tool_only(node.id, edges)]
    entry_ids = [
        node.id for node in export.nodes
        if in_degree[node.id] == 0 and node.id not in tool_ids
    ]
    if not entry_ids:
        raise NoEntryNode(
            "Workflow has no entry node: every node has an incoming execution, conditional or dependency edge"
        )

    if reject_cycles:
        cycle = _find_cycle(export.nodes, edges)
        if cycle:
            raise CycleError(f"Workflow contains a cycle: {' -> '.join(cycle)}")

    nodes = _build_nodes(export.nodes, edges)
    exit_ids = [
        node.id for node in nodes
        if node.id not in tool_ids
        and not any(edge.source == node.id and edge.is_control for edge in edges)
    ]
    reachable = _reachable_from(entry_ids, edges)
    unreachable_ids = [node.id for node in nodes if node.id not in reachable and node.id not in tool_ids]
    if unreachable_ids:
        logger.info(
            "Workflow graph has nodes unreachable from its entry nodes",
            extra={"unreachable": unreachable_ids},
        )

    return WorkflowGraph(
        nodes=nodes,
        edges=edges,
        entry_ids=entry_ids,
        exit_ids=exit_ids,
        unreachable_ids=unreachable_ids,
        tool_ids=tool_ids,
    )


def _is_tool_only(node_id: str, edges: List[WorkflowEdge]) -> bool:
    """Target of a tool edge that takes part in no control flow."""
    owned = False
    for edge in edges:
        if node_id not in (edge.source, edge.target):
            continue
        if edge.is_control:
            return False
        if edge.target == node_id:
            owned = True
    return owned


def _check_unique_ids(nodes: List[ExportNode]) -> None:
    counts = Counter(node.id for node in nodes)
    duplicates = sorted(node_id for node_id, count in counts.items() if count > 1)
    if duplicates:
        raise DuplicateNodeError(f"Duplicate node id(s): {', '.join(duplicates)}")


def _classify(node_id: str, edges: List[WorkflowEdge]) -> NodeRole:
    outgoing = Counter(edge.kind for edge in edges if edge.source == node_id)
    is_agent = outgoing[EdgeKind.tool] >= 1
    is_router = outgoing[EdgeKind.conditional] >= 2
    if is_agent and is_router:
        logger.warning(
            "Node owns tools and has conditional branches; classifying as agent",
            extra={"node_id": node_id},
        )
    if is_agent:
        return NodeRole.agent
    if is_router:
        return NodeRole.router
    return NodeRole.regular


def _build_nodes(raw_nodes: List[ExportNode], edges: List[WorkflowEdge]) -> List[WorkflowNode]:
    nodes: List[WorkflowNode] = []
    used_names: Set[str] = set()
    next_suffix: Dict[str, int] = {}
    for raw in raw_nodes:
        base_name = sanitize_node_name(raw.caption or f"node_{raw.id}")
        function_name = base_name
        # a suffixed name can collide with a later literal caption, so keep counting
        while function_name in used_names:
            next_suffix[base_name] = next_suffix.get(base_name, 1) + 1
            function_name = f"{base_name}_{next_suffix[base_name]}"
        used_names.add(function_name)

        properties = dict(raw.properties)
        try:
            inputs = parse_field_declarations(properties.get("inputs"))
            outputs = parse_field_declarations(properties.get("outputs"))
        except ValueError as exc:
            raise ParseError(f"Node '{raw.id}' has invalid field declarations: {exc}") from exc

        description = properties.get("description")
        nodes.append(
            WorkflowNode(
                id=raw.id,
                caption=raw.caption or function_name,
                function_name=function_name,
                role=_classify(raw.id, edges),
                description=str(description) if description is not None else "",
                properties=properties,
                inputs=inputs,
                outputs=outputs,
            )
        )
    return nodes


def _reachable_from(entry_ids: List[str], edges: List[WorkflowEdge]) -> Set[str]:
    seen: Set[str] = set(entry_ids)
    queue = deque(entry_ids)
    while queue:
        current = queue.popleft()
        for edge in edges:
            if edge.source == current and edge.is_control and edge.target not in seen:
                seen.add(edge.target)
                queue.append(edge.target)
    return seen


def _find_cycle(nodes: List[ExportNode], edges: List[WorkflowEdge]) -> List[str]:
    """Return one cycle among control edges as a closed path of node ids, or []."""
    adjacency: Dict[str, List[str]] = {node.id: [] for node in nodes}
    for edge in edges:
        if edge.is_control:
            adjacency[edge.source].append(edge.target)

    WHITE, GREY, BLACK = 0, 1, 2
    colour = {node_id: WHITE for node_id in adjacency}
    path: List[str] = []

    for start in adjacency:
        if colour[start] != WHITE:
            continue
        stack = [(start, iter(adjacency[start]))]
        colour[start] = GREY
        path.append(start)
        while stack:
            current, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                path.pop()
                colour[current] = BLACK
                continue
            if colour[child] == GREY:
                return path[path.index(child):] + [child]
            if colour[child] == WHITE:
                colour[child] = GREY
                path.append(child)
                stack.append((child, iter(adjacency[child])))
    return []


__all__ = ["load_graph_export", "parse_graph", "sanitize_node_name"]
