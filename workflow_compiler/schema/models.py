"""
Pydantic models for the diagram export (wire format) and the typed
intermediate representation produced by the parser.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# NOTE: Pydantic struggles with recursive type aliases when generating schemas,
# so we approximate JSONValue using non-recursive containers.
JSONPrimitive = Union[str, int, float, bool, None]
JSONValue = Union[JSONPrimitive, Dict[str, Any], List[Any]]


class StrictModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        populate_by_name=True,
        frozen=True,
    )


# -----------------------------
# Diagram export (inbound wire format)
# -----------------------------
class ExportNode(BaseModel):
    """A node as exported by the diagram editor. Layout/style keys are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    caption: str = ""
    properties: Dict[str, JSONValue] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("caption", mode="before")
    @classmethod
    def _coerce_caption(cls, value: Any) -> Any:
        return "" if value is None else value


class ExportRelationship(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    from_id: str = Field(alias="fromId", min_length=1)
    to_id: str = Field(alias="toId", min_length=1)
    type: str = ""

    @field_validator("from_id", "to_id", mode="before")
    @classmethod
    def _coerce_ref(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        return "" if value is None else value


class GraphExport(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    nodes: List[ExportNode] = Field(default_factory=list)
    relationships: List[ExportRelationship] = Field(default_factory=list)


# -----------------------------
# Intermediate representation
# -----------------------------
class NodeRole(str, Enum):
    regular = "regular"
    agent = "agent"
    router = "router"


class EdgeKind(str, Enum):
    execution = "execution"
    conditional = "conditional"
    dependency = "dependency"
    tool = "tool"


# Relationship `type` strings used by the diagram editor (case-sensitive).
WIRE_EDGE_KINDS: Dict[str, EdgeKind] = {
    "": EdgeKind.execution,
    "CONDITIONAL": EdgeKind.conditional,
    "DEPENDENCY": EdgeKind.dependency,
    "HAS_TOOL": EdgeKind.tool,
}

CONTROL_EDGE_KINDS = frozenset({EdgeKind.execution, EdgeKind.conditional, EdgeKind.dependency})


class FieldType(str, Enum):
    string = "string"
    integer = "integer"
    number = "number"
    boolean = "boolean"
    object = "object"
    array = "array"
    any = "any"


class WorkflowNode(StrictModel):
    id: str
    caption: str
    function_name: str
    role: NodeRole = NodeRole.regular
    description: str = ""
    properties: Dict[str, JSONValue] = Field(default_factory=dict)
    inputs: Dict[str, FieldType] = Field(default_factory=dict)
    outputs: Dict[str, FieldType] = Field(default_factory=dict)


class WorkflowEdge(StrictModel):
    source: str
    target: str
    kind: EdgeKind = EdgeKind.execution

    @property
    def is_control(self) -> bool:
        return self.kind in CONTROL_EDGE_KINDS


class WorkflowGraph(StrictModel):
    """Validated, classified graph. Node and edge order follows the export."""

    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge]
    entry_ids: List[str]
    exit_ids: List[str]
    unreachable_ids: List[str] = Field(default_factory=list)
    # nodes connected only as an agent's tools; never scheduled on their own
    tool_ids: List[str] = Field(default_factory=list)

    def node(self, node_id: str) -> WorkflowNode:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def node_ids(self) -> List[str]:
        return [node.id for node in self.nodes]

    def outgoing(self, node_id: str, kinds: Optional[Iterable[EdgeKind]] = None) -> List[WorkflowEdge]:
        allowed = CONTROL_EDGE_KINDS if kinds is None else frozenset(kinds)
        return [edge for edge in self.edges if edge.source == node_id and edge.kind in allowed]

    def incoming(self, node_id: str, kinds: Optional[Iterable[EdgeKind]] = None) -> List[WorkflowEdge]:
        allowed = CONTROL_EDGE_KINDS if kinds is None else frozenset(kinds)
        return [edge for edge in self.edges if edge.target == node_id and edge.kind in allowed]

    def tools_of(self, node_id: str) -> List[WorkflowNode]:
        return [self.node(edge.target) for edge in self.outgoing(node_id, [EdgeKind.tool])]

    def conditional_targets(self, node_id: str) -> List[str]:
        return [edge.target for edge in self.outgoing(node_id, [EdgeKind.conditional])]

    def topological_order(self) -> List[str]:
        """
        Kahn's algorithm over control edges, seeded in export order. Nodes that
        sit on (or behind) a cycle are appended at the end in export order.
        """
        in_degree = {node.id: len(self.incoming(node.id)) for node in self.nodes}
        ready = [node.id for node in self.nodes if in_degree[node.id] == 0]
        order: List[str] = []
        while ready:
            current = ready.pop(0)
            order.append(current)
            for edge in self.outgoing(current):
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    ready.append(edge.target)
        seen = set(order)
        order.extend(node.id for node in self.nodes if node.id not in seen)
        return order


__all__ = [
    "CONTROL_EDGE_KINDS",
    "EdgeKind",
    "ExportNode",
    "ExportRelationship",
    "FieldType",
    "GraphExport",
    "JSONValue",
    "NodeRole",
    "WIRE_EDGE_KINDS",
    "WorkflowEdge",
    "WorkflowGraph",
    "WorkflowNode",
]
