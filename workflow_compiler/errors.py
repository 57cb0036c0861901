"""
Shared exception hierarchy for the workflow compiler, build pipeline and
execution engine.
"""

from __future__ import annotations

from typing import Any, Optional


class WorkflowCompilerError(Exception):
    """Base class for all compiler related errors."""


class ParseError(WorkflowCompilerError):
    """Raised when a graph export is malformed or structurally invalid."""


class NoEntryNode(ParseError):
    """Raised when every node has an incoming control-flow edge."""


class DanglingEdgeError(ParseError):
    """Raised when an edge references a node id that does not exist."""


class DuplicateNodeError(ParseError):
    """Raised when two nodes share the same id."""


class CycleError(ParseError):
    """Raised when control-flow edges form a cycle and cycles are rejected."""


class SynthesisError(WorkflowCompilerError):
    """Raised when a behavior cannot be produced for a node."""

    def __init__(self, message: str, *, node_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.node_id = node_id


class SynthesisTimeout(SynthesisError):
    """Raised when the generation service does not answer in time."""


class CompileError(WorkflowCompilerError):
    """Raised when the parsed graph and behaviors cannot be assembled (schema conflicts, missing behaviors)."""


class BuildError(WorkflowCompilerError):
    """Base class for build lifecycle errors."""


class WorkflowNotFound(BuildError):
    """Raised when no build record exists for a workflow id."""


class BuildInProgress(BuildError):
    """Raised when a build is requested for a workflow that is already building."""


class BuildAlreadyFinished(BuildError):
    """Raised when a build is requested for a workflow in a terminal state."""


class BuildLeaseLost(BuildError):
    """Raised when a builder writes to a build whose lease it no longer holds."""


class WorkflowNotReady(WorkflowCompilerError):
    """Raised when an execution is attempted before the workflow build is ready."""


class ExecutionError(WorkflowCompilerError):
    """Raised when a node behavior fails during a run. `record` holds the halted execution when known."""

    def __init__(self, message: str, *, node_id: Optional[str] = None, record: Optional[Any] = None) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.record = record


class ExecutionCancelled(ExecutionError):
    """Raised when a caller cancels an in-flight execution."""
