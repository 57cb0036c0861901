"""
Execution records: one per execution request, frozen once written.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from workflow_compiler.schema.models import StrictModel


class ExecutionStatus(str, Enum):
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class StepStatus(str, Enum):
    completed = "completed"
    failed = "failed"


def snapshot(value: Any) -> Any:
    """Deep, JSON-safe copy of state handed to or returned from a node."""
    return json.loads(json.dumps(value, default=str))


class TrajectoryStep(StrictModel):
    step: int
    node_id: str
    name: str
    status: StepStatus
    started_at: datetime
    duration_ms: float
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    tokens_generated: int = 0


class ExecutionRecord(StrictModel):
    execution_id: str
    workflow_id: str
    thread_id: Optional[str] = None
    status: ExecutionStatus
    input_state: Dict[str, Any] = Field(default_factory=dict)
    final_state: Dict[str, Any] = Field(default_factory=dict)
    trajectory: List[TrajectoryStep] = Field(default_factory=list)
    super_steps: int = 0
    skipped: List[str] = Field(default_factory=list)
    unresolved: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    failed_node: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    execution_time_ms: float = 0.0

    def trajectory_document(self) -> Dict[str, Any]:
        """Summary shape consumed by the editor's trajectory panel."""
        return {
            "execution_path": [
                {
                    "step": index,
                    "node": step.node_id,
                    "name": step.name,
                    "super_step": step.step,
                    "status": step.status.value,
                    "duration_ms": step.duration_ms,
                }
                for index, step in enumerate(self.trajectory, start=1)
            ],
            "node_details": [
                {
                    "node": step.node_id,
                    "duration_ms": step.duration_ms,
                    "input": step.input,
                    "output": step.output,
                    "error": step.error,
                    "tokens_generated": step.tokens_generated,
                }
                for step in self.trajectory
            ],
            "summary": {
                "total_steps": len(self.trajectory),
                "total_duration_ms": self.execution_time_ms,
                "nodes_executed": len({step.node_id for step in self.trajectory}),
                "total_tokens": sum(step.tokens_generated for step in self.trajectory),
                "super_steps": self.super_steps,
            },
        }


__all__ = ["ExecutionRecord", "ExecutionStatus", "StepStatus", "TrajectoryStep", "snapshot"]
