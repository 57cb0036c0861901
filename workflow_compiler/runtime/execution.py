"""
The compiled, execution-ready workflow artifact.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from workflow_compiler.compiler.lower_control_flow import TransitionRule
from workflow_compiler.schema.models import WorkflowGraph
from workflow_compiler.schema.state import StateSchema
from workflow_compiler.synthesis.behaviors import Behavior

DOCUMENT_VERSION = 1


@dataclass(frozen=True)
class CompiledWorkflow:
    """
    Immutable once built; concurrent executions share a single instance and
    only read from it.
    """

    workflow_id: str
    graph: WorkflowGraph
    behaviors: Mapping[str, Behavior]
    state_schema: StateSchema
    transitions: Tuple[TransitionRule, ...]
    router_decisions: bool = True
    chat_input_field: Optional[str] = None
    chat_output_field: Optional[str] = None
    _incoming: Mapping[str, Tuple[TransitionRule, ...]] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        incoming: Dict[str, List[TransitionRule]] = {node_id: [] for node_id in self.graph.node_ids()}
        for rule in self.transitions:
            incoming[rule.target].append(rule)
        object.__setattr__(self, "_incoming", {node_id: tuple(rules) for node_id, rules in incoming.items()})

    def incoming(self, node_id: str) -> Tuple[TransitionRule, ...]:
        return self._incoming.get(node_id, ())

    def to_document(self) -> Dict[str, Any]:
        """JSON-serializable form persisted by the build store."""
        return {
            "version": DOCUMENT_VERSION,
            "workflow_id": self.workflow_id,
            "graph": self.graph.model_dump(mode="json"),
            "behaviors": {
                node_id: behavior.to_definition().model_dump(mode="json")
                for node_id, behavior in self.behaviors.items()
            },
            "state_schema": self.state_schema.describe(),
            "transitions": [rule.model_dump(mode="json") for rule in self.transitions],
            "router_decisions": self.router_decisions,
            "chat_input_field": self.chat_input_field,
            "chat_output_field": self.chat_output_field,
        }


__all__ = ["CompiledWorkflow", "DOCUMENT_VERSION"]
