"""
Build lifecycle records.
"""

from __future__ import annotations

import re
import secrets
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import Field

from workflow_compiler.schema.models import NodeRole, StrictModel

WORKFLOW_ID_PREFIX = "wf_"
EXECUTION_ID_PREFIX = "exec_"

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _base36(value: int) -> str:
    digits = []
    while True:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
        if value == 0:
            return "".join(reversed(digits))


def make_workflow_id(name: str) -> str:
    """`wf_<name slug>_<base36 millis><random>`"""
    slug = re.sub(r"[^a-z0-9]+", "_", (name or "").lower()).strip("_")[:40] or "workflow"
    return f"{WORKFLOW_ID_PREFIX}{slug}_{_base36(int(time.time() * 1000))}{secrets.token_hex(2)}"


def make_execution_id() -> str:
    return f"{EXECUTION_ID_PREFIX}{secrets.token_hex(8)}"


class BuildStatus(str, Enum):
    pending = "pending"
    building = "building"
    ready = "ready"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildStatus.ready, BuildStatus.failed)


class NodeBuildStatus(str, Enum):
    pending = "pending"
    building = "building"
    built = "built"
    failed = "failed"


class BuildProgress(StrictModel):
    total_nodes: int = 0
    completed_nodes: int = 0
    current_task: Optional[str] = None


class NodeBuildResult(StrictModel):
    node_id: str
    name: str
    role: NodeRole = NodeRole.regular
    status: NodeBuildStatus = NodeBuildStatus.pending
    error: Optional[str] = None


class BuildRecord(StrictModel):
    """Snapshot of one workflow's build. Updated with `model_copy(update=...)`."""

    workflow_id: str
    name: str
    status: BuildStatus = BuildStatus.pending
    graph_export: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    progress: BuildProgress = Field(default_factory=BuildProgress)
    nodes_built: List[NodeBuildResult] = Field(default_factory=list)
    error: Optional[str] = None
    chat_input_field: Optional[str] = None
    chat_output_field: Optional[str] = None
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def status_snapshot(self) -> Dict[str, Any]:
        """Shape returned to status consumers."""
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "status": self.status.value,
            "progress": self.progress.model_dump(mode="json"),
            "nodes_built": [result.model_dump(mode="json") for result in self.nodes_built],
            "error": self.error,
            "chat_input_field": self.chat_input_field,
            "chat_output_field": self.chat_output_field,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


__all__ = [
    "BuildProgress",
    "BuildRecord",
    "BuildStatus",
    "EXECUTION_ID_PREFIX",
    "NodeBuildResult",
    "NodeBuildStatus",
    "WORKFLOW_ID_PREFIX",
    "make_execution_id",
    "make_workflow_id",
    "utcnow",
]
