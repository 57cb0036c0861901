from workflow_compiler.runtime.execution import CompiledWorkflow
from workflow_compiler.runtime.records import ExecutionRecord, ExecutionStatus, TrajectoryStep

__all__ = [
    "CompiledWorkflow",
    "ExecutionRecord",
    "ExecutionStatus",
    "TrajectoryStep",
]
