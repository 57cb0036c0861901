"""
Typed progress events emitted by the execution engine, in strict temporal order.
Every stream ends with exactly one `workflow_end` or one `error` event.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class _Event(BaseModel):
    execution_id: str

    def to_sse(self) -> str:
        """Format as a Server-Sent Event."""
        payload = json.dumps(self.model_dump(mode="json"), default=str)
        return f"event: {self.type}\ndata: {payload}\n\n"


class WorkflowStartEvent(_Event):
    type: Literal["workflow_start"] = "workflow_start"
    workflow_id: str
    thread_id: Optional[str] = None
    entry_nodes: List[str] = Field(default_factory=list)


class NodeStartEvent(_Event):
    type: Literal["node_start"] = "node_start"
    node: str
    name: str
    step: int


class TokenEvent(_Event):
    type: Literal["token"] = "token"
    node: str
    content: str


class NodeEndEvent(_Event):
    type: Literal["node_end"] = "node_end"
    node: str
    name: str
    step: int
    status: str
    duration_ms: float
    error: Optional[str] = None


class StateUpdateEvent(_Event):
    type: Literal["state_update"] = "state_update"
    step: int
    updated_fields: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    state: Dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: str
    status: Literal["failed", "cancelled"] = "failed"
    node: Optional[str] = None


class WorkflowEndEvent(_Event):
    type: Literal["workflow_end"] = "workflow_end"
    final_state: Dict[str, Any] = Field(default_factory=dict)
    super_steps: int
    execution_time_ms: float
    chat_output_field: Optional[str] = None
    trajectory: Dict[str, Any] = Field(default_factory=dict)


ExecutionEvent = Union[
    WorkflowStartEvent,
    NodeStartEvent,
    TokenEvent,
    NodeEndEvent,
    StateUpdateEvent,
    ErrorEvent,
    WorkflowEndEvent,
]

TERMINAL_EVENT_TYPES = frozenset({"workflow_end", "error"})


__all__ = [
    "ErrorEvent",
    "ExecutionEvent",
    "NodeEndEvent",
    "NodeStartEvent",
    "StateUpdateEvent",
    "TERMINAL_EVENT_TYPES",
    "TokenEvent",
    "WorkflowEndEvent",
    "WorkflowStartEvent",
]
