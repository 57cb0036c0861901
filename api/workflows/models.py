from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ProblemDetails(BaseModel):
    type: str
    title: str
    status: int
    detail: str


class WorkflowCreateRequest(BaseModel):
    name: str = Field("Untitled workflow", min_length=1, max_length=255)
    graph_export: Dict[str, Any]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowCreateResponse(BaseModel):
    workflow_id: str
    name: str
    status: str
    total_nodes: int


class BuildProgressModel(BaseModel):
    total_nodes: int
    completed_nodes: int
    current_task: Optional[str] = None


class NodeBuildModel(BaseModel):
    node_id: str
    name: str
    role: str
    status: str
    error: Optional[str] = None


class BuildStatusResponse(BaseModel):
    workflow_id: str
    name: str
    status: str
    progress: BuildProgressModel
    nodes_built: List[NodeBuildModel] = Field(default_factory=list)
    error: Optional[str] = None
    chat_input_field: Optional[str] = None
    chat_output_field: Optional[str] = None


class ExecuteConfig(BaseModel):
    memory_enabled: bool = False


class ExecuteRequest(BaseModel):
    input: Dict[str, Any] = Field(default_factory=dict)
    thread_id: Optional[str] = None
    config: ExecuteConfig = Field(default_factory=ExecuteConfig)
    # chosen by the caller so the run can be cancelled while `/execute` is still waiting
    execution_id: Optional[str] = Field(None, pattern=r"^[A-Za-z0-9_\-]{1,64}$")


class ExecutionResponse(BaseModel):
    execution_id: str
    workflow_id: str
    thread_id: Optional[str] = None
    status: str
    final_state: Dict[str, Any] = Field(default_factory=dict)
    super_steps: int = 0
    execution_time_ms: float = 0.0
    chat_output_field: Optional[str] = None
    trajectory: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    failed_node: Optional[str] = None


class CancelResponse(BaseModel):
    execution_id: str
    cancelled: bool
