"""
Superstep execution engine.

Each superstep runs every node whose control predecessors have all resolved
and at least one of whose incoming transitions is active. All nodes of a
superstep finish (or fail) before the next runnable set is computed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple

from shared.logger import get_logger
from workflow_compiler.build.models import BuildStatus, make_execution_id, utcnow
from workflow_compiler.build.store import BuildStore
from workflow_compiler.compiler.compile import load_compiled_workflow
from workflow_compiler.errors import (
    ExecutionCancelled,
    ExecutionError,
    WorkflowNotFound,
    WorkflowNotReady,
)
from workflow_compiler.runtime.events import (
    ErrorEvent,
    ExecutionEvent,
    NodeEndEvent,
    NodeStartEvent,
    StateUpdateEvent,
    TokenEvent,
    WorkflowEndEvent,
    WorkflowStartEvent,
)
from workflow_compiler.runtime.execution import CompiledWorkflow
from workflow_compiler.runtime.records import (
    ExecutionRecord,
    ExecutionStatus,
    StepStatus,
    TrajectoryStep,
    snapshot,
)
from workflow_compiler.schema.state import INTERNAL_STATE_PREFIX
from workflow_compiler.synthesis.behaviors import ROUTE_KEY, NodeContext

logger = get_logger(__name__)

EventSink = Callable[[ExecutionEvent], Awaitable[None]]
RecordSink = Callable[[ExecutionRecord], Awaitable[None]]


@dataclass(frozen=True)
class ExecutionSettings:
    max_concurrency: int = 8
    max_super_steps: int = 100

    @classmethod
    def from_config(cls, config) -> "ExecutionSettings":
        return cls(
            max_concurrency=config.execution_max_concurrency,
            max_super_steps=config.execution_max_super_steps,
        )


class _NodeState(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    skipped = "skipped"


CANCELLED_MESSAGE = "Execution cancelled by caller"


def _public(state: Mapping[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in state.items() if not key.startswith(INTERNAL_STATE_PREFIX)}


async def _discard(_: ExecutionEvent) -> None:
    return None


class _Run:
    """Mutable bookkeeping for one execution. Never shared between executions."""

    def __init__(
        self,
        compiled: CompiledWorkflow,
        input_state: Mapping[str, Any],
        *,
        execution_id: str,
        thread_id: Optional[str],
        emit: EventSink,
        cancel_event: asyncio.Event,
        settings: ExecutionSettings,
        persist: RecordSink,
        release: Callable[[], None],
    ) -> None:
        self.compiled = compiled
        self.execution_id = execution_id
        self.thread_id = thread_id
        self.emit = emit
        self.cancel_event = cancel_event
        self.settings = settings
        self.persist = persist
        self.release = release
        self.input_state = _public(input_state)
        self.state: Dict[str, Any] = dict(self.input_state)
        # tool-only nodes run inside their agent, never as workflow steps
        self.node_states: Dict[str, _NodeState] = {
            node_id: _NodeState.pending
            for node_id in compiled.graph.node_ids()
            if node_id not in compiled.graph.tool_ids
        }
        self.outputs: Dict[str, Dict[str, Any]] = {}
        self.routes: Dict[str, str] = {}
        self.trajectory: List[TrajectoryStep] = []
        self.tokens: Dict[str, int] = {}
        self.super_steps = 0
        self.started_at = utcnow()
        self.clock = time.perf_counter()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def _edge_state(self, source: str, target: str, gated: bool) -> Optional[bool]:
        """None while the source is unresolved, else whether the transition fires."""
        source_state = self.node_states[source]
        if source_state == _NodeState.pending:
            return None
        if source_state != _NodeState.completed:
            return False
        if gated:
            return self.routes.get(source) == target
        return True

    def next_frontier(self) -> Tuple[List[str], List[str]]:
        """Return (runnable, newly skipped) node ids in graph order."""
        newly_skipped: List[str] = []
        changed = True
        while changed:
            changed = False
            for node_id, node_state in self.node_states.items():
                if node_state != _NodeState.pending:
                    continue
                rules = self.compiled.incoming(node_id)
                if not rules:
                    continue
                states = [self._edge_state(rule.source, rule.target, rule.gated) for rule in rules]
                if None not in states and not any(states):
                    self.node_states[node_id] = _NodeState.skipped
                    newly_skipped.append(node_id)
                    changed = True

        runnable = []
        for node_id, node_state in self.node_states.items():
            if node_state != _NodeState.pending:
                continue
            rules = self.compiled.incoming(node_id)
            if not rules:
                if self.super_steps == 0:
                    runnable.append(node_id)
                continue
            states = [self._edge_state(rule.source, rule.target, rule.gated) for rule in rules]
            if None not in states and any(states):
                runnable.append(node_id)
        return runnable, newly_skipped

    def visible_state(self, node_id: str) -> Dict[str, Any]:
        """
        Full accumulated state, unless every active incoming transition is a
        dependency edge: then only the sources' declared outputs are visible.
        """
        active = [
            rule
            for rule in self.compiled.incoming(node_id)
            if self._edge_state(rule.source, rule.target, rule.gated)
        ]
        if not active or not all(rule.isolated for rule in active):
            return dict(self.state)

        narrowed: Dict[str, Any] = {}
        for rule in active:
            produced = self.outputs.get(rule.source, {})
            declared = self.compiled.behaviors[rule.source].output_fields
            for key, value in produced.items():
                if not declared or key in declared:
                    narrowed[key] = value
        return narrowed

    # ------------------------------------------------------------------
    # Node execution
    # ------------------------------------------------------------------
    async def _on_token(self, node_id: str, content: str) -> None:
        self.tokens[node_id] = self.tokens.get(node_id, 0) + 1
        await self.emit(TokenEvent(execution_id=self.execution_id, node=node_id, content=content))

    async def run_node(
        self, node_id: str, semaphore: asyncio.Semaphore
    ) -> Tuple[str, Dict[str, Any], Optional[str], TrajectoryStep]:
        node = self.compiled.graph.node(node_id)
        behavior = self.compiled.behaviors[node_id]
        node_input = self.visible_state(node_id)
        step = self.super_steps
        async with semaphore:
            await self.emit(
                NodeStartEvent(execution_id=self.execution_id, node=node_id, name=node.function_name, step=step)
            )
            started_at = utcnow()
            started = time.perf_counter()
            output: Dict[str, Any] = {}
            error: Optional[str] = None
            try:
                output = await behavior.ainvoke(
                    node_input,
                    NodeContext(node_id=node_id, execution_id=self.execution_id, token_sink=self._on_token),
                )
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "Node behavior raised",
                    extra={"execution_id": self.execution_id, "node_id": node_id, "error": error},
                )
            duration_ms = round((time.perf_counter() - started) * 1000, 3)

        status = StepStatus.failed if error else StepStatus.completed
        trajectory_step = TrajectoryStep(
            step=step,
            node_id=node_id,
            name=node.function_name,
            status=status,
            started_at=started_at,
            duration_ms=duration_ms,
            input=snapshot(node_input),
            output=snapshot(_public(output)),
            error=error,
            tokens_generated=self.tokens.get(node_id, 0),
        )
        await self.emit(
            NodeEndEvent(
                execution_id=self.execution_id,
                node=node_id,
                name=node.function_name,
                step=step,
                status=status.value,
                duration_ms=duration_ms,
                error=error,
            )
        )
        return node_id, output, error, trajectory_step

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    async def execute(self) -> ExecutionRecord:
        graph = self.compiled.graph
        await self.emit(
            WorkflowStartEvent(
                execution_id=self.execution_id,
                workflow_id=self.compiled.workflow_id,
                thread_id=self.thread_id,
                entry_nodes=list(graph.entry_ids),
            )
        )
        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrency))
        skipped: List[str] = []

        while True:
            # runs after every barrier too, so a cancel during the final superstep is honored
            if self.cancel_event.is_set():
                return await self.finish(ExecutionStatus.cancelled, skipped, error=CANCELLED_MESSAGE)
            runnable, newly_skipped = self.next_frontier()
            skipped.extend(newly_skipped)
            if not runnable:
                break
            if self.super_steps >= self.settings.max_super_steps:
                return await self.finish(
                    ExecutionStatus.failed,
                    skipped,
                    error=f"Execution exceeded {self.settings.max_super_steps} supersteps",
                )

            self.super_steps += 1
            # barrier: the next frontier is computed only after every node here settles
            results = await asyncio.gather(*(self.run_node(node_id, semaphore) for node_id in runnable))

            updated: List[str] = []
            failure: Optional[Tuple[str, str]] = None
            # merge and record in declaration order, not completion order
            for node_id, output, error, trajectory_step in results:
                self.trajectory.append(trajectory_step)
                if error is not None:
                    self.node_states[node_id] = _NodeState.failed
                    failure = failure or (node_id, error)
                    continue
                route = output.get(ROUTE_KEY)
                if route is not None:
                    self.routes[node_id] = str(route)
                public_output = _public(output)
                self.outputs[node_id] = public_output
                self.state.update(public_output)
                updated.extend(key for key in public_output if key not in updated)
                self.node_states[node_id] = _NodeState.completed

            await self.emit(
                StateUpdateEvent(
                    execution_id=self.execution_id,
                    step=self.super_steps,
                    updated_fields=updated,
                    skipped=newly_skipped,
                    state=snapshot(self.state),
                )
            )
            if failure is not None:
                node_id, error = failure
                return await self.finish(ExecutionStatus.failed, skipped, error=error, failed_node=node_id)

        return await self.finish(ExecutionStatus.completed, skipped)

    async def finish(
        self,
        status: ExecutionStatus,
        skipped: List[str],
        *,
        error: Optional[str] = None,
        failed_node: Optional[str] = None,
    ) -> ExecutionRecord:
        # from here on `cancel` no longer reaches this run
        self.release()
        if status == ExecutionStatus.completed and self.cancel_event.is_set():
            status, error = ExecutionStatus.cancelled, CANCELLED_MESSAGE
        unresolved = [
            node_id for node_id, node_state in self.node_states.items()
            if node_state == _NodeState.pending
        ] if status == ExecutionStatus.completed else []
        record = ExecutionRecord(
            execution_id=self.execution_id,
            workflow_id=self.compiled.workflow_id,
            thread_id=self.thread_id,
            status=status,
            input_state=snapshot(self.input_state),
            final_state=snapshot(self.state),
            trajectory=list(self.trajectory),
            super_steps=self.super_steps,
            skipped=list(skipped),
            unresolved=unresolved,
            error=error,
            failed_node=failed_node,
            started_at=self.started_at,
            finished_at=utcnow(),
            execution_time_ms=round((time.perf_counter() - self.clock) * 1000, 3),
        )
        # stored before the terminal event, so a failed write cannot follow workflow_end
        await self.persist(record)
        if status == ExecutionStatus.completed:
            await self.emit(
                WorkflowEndEvent(
                    execution_id=self.execution_id,
                    final_state=record.final_state,
                    super_steps=record.super_steps,
                    execution_time_ms=record.execution_time_ms,
                    chat_output_field=self.compiled.chat_output_field,
                    trajectory=record.trajectory_document(),
                )
            )
        else:
            await self.emit(
                ErrorEvent(
                    execution_id=self.execution_id,
                    error=error or status.value,
                    status="cancelled" if status == ExecutionStatus.cancelled else "failed",
                    node=failed_node,
                )
            )
        return record


_STREAM_DONE = object()


class ExecutionEngine:
    """
    Runs ready workflows. Compiled workflows are cached per workflow id and
    shared read-only between concurrent executions.
    """

    def __init__(
        self,
        store: BuildStore,
        settings: Optional[ExecutionSettings] = None,
        *,
        llm_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._store = store
        self._settings = settings or ExecutionSettings()
        self._llm_factory = llm_factory
        self._compiled: Dict[str, CompiledWorkflow] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._detached: Set[asyncio.Task] = set()

    async def load(self, workflow_id: str) -> CompiledWorkflow:
        """Return the compiled workflow, or raise WorkflowNotReady unless its build is ready."""
        record = await self._store.get(workflow_id)
        if record is None:
            raise WorkflowNotFound(f"Workflow '{workflow_id}' not found")
        if record.status != BuildStatus.ready:
            raise WorkflowNotReady(f"Workflow '{workflow_id}' is {record.status.value}, not ready")

        compiled = self._compiled.get(workflow_id)
        if compiled is None:
            document = await self._store.load_compiled(workflow_id)
            if document is None:
                raise WorkflowNotReady(f"Workflow '{workflow_id}' is ready but has no compiled artifact")
            compiled = load_compiled_workflow(document, llm_factory=self._llm_factory)
            self._compiled[workflow_id] = compiled
        return compiled

    async def execute(
        self,
        workflow_id: str,
        input_state: Mapping[str, Any],
        thread_id: Optional[str] = None,
        *,
        execution_id: Optional[str] = None,
    ) -> ExecutionRecord:
        """
        Run to completion. Raises ExecutionError (or ExecutionCancelled) carrying
        the halted record when a node fails or the caller cancels.
        """
        compiled = await self._load_reachable(workflow_id, execution_id)
        record = await self.run_compiled(
            compiled, input_state, thread_id=thread_id, execution_id=execution_id
        )
        if record.status == ExecutionStatus.cancelled:
            raise ExecutionCancelled(record.error or "Execution cancelled", record=record)
        if record.status == ExecutionStatus.failed:
            raise ExecutionError(record.error or "Execution failed", node_id=record.failed_node, record=record)
        return record

    async def stream(
        self,
        workflow_id: str,
        input_state: Mapping[str, Any],
        thread_id: Optional[str] = None,
        *,
        execution_id: Optional[str] = None,
    ) -> AsyncIterator[ExecutionEvent]:
        """
        Readiness is checked before returning, so WorkflowNotReady surfaces to
        the caller instead of inside the event stream.
        """
        compiled = await self._load_reachable(workflow_id, execution_id)
        return self._events(compiled, input_state, thread_id, execution_id or make_execution_id())

    async def _load_reachable(self, workflow_id: str, execution_id: Optional[str]) -> CompiledWorkflow:
        """Load the workflow with a caller-chosen execution id already cancellable."""
        if execution_id is None:
            return await self.load(workflow_id)
        self.prepare_cancellation(execution_id)
        try:
            return await self.load(workflow_id)
        except Exception:
            self._release(execution_id)
            raise

    async def _events(
        self,
        compiled: CompiledWorkflow,
        input_state: Mapping[str, Any],
        thread_id: Optional[str],
        execution_id: str,
    ) -> AsyncIterator[ExecutionEvent]:
        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(
            self.run_compiled(
                compiled, input_state, thread_id=thread_id, execution_id=execution_id, emit=queue.put
            )
        )
        task.add_done_callback(lambda _: queue.put_nowait(_STREAM_DONE))
        try:
            while True:
                event = await queue.get()
                if event is _STREAM_DONE:
                    break
                yield event
            task.result()
        finally:
            if not task.done():
                # consumer went away; the run stops at its next superstep boundary and records itself cancelled
                self.cancel(execution_id)
                self._detached.add(task)
                task.add_done_callback(self._detached.discard)

    async def run_compiled(
        self,
        compiled: CompiledWorkflow,
        input_state: Mapping[str, Any],
        *,
        thread_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        emit: Optional[EventSink] = None,
    ) -> ExecutionRecord:
        execution_id = execution_id or make_execution_id()
        cancel_event = self._cancel_events.setdefault(execution_id, asyncio.Event())
        run = _Run(
            compiled,
            input_state,
            execution_id=execution_id,
            thread_id=thread_id,
            emit=emit or _discard,
            cancel_event=cancel_event,
            settings=self._settings,
            persist=self._store.save_execution,
            release=lambda: self._release(execution_id),
        )
        await self._store.save_execution(
            ExecutionRecord(
                execution_id=execution_id,
                workflow_id=compiled.workflow_id,
                thread_id=thread_id,
                status=ExecutionStatus.running,
                input_state=snapshot(run.input_state),
                started_at=run.started_at,
            )
        )
        logger.info(
            "Execution started",
            extra={"workflow_id": compiled.workflow_id, "execution_id": execution_id, "thread_id": thread_id},
        )
        try:
            record = await run.execute()
        finally:
            self._release(execution_id)
        logger.info(
            "Execution finished",
            extra={
                "workflow_id": compiled.workflow_id,
                "execution_id": execution_id,
                "status": record.status.value,
                "super_steps": record.super_steps,
            },
        )
        return record

    def cancel(self, execution_id: str) -> bool:
        """Ask an in-flight execution to stop before its next superstep."""
        event = self._cancel_events.get(execution_id)
        if event is None:
            return False
        event.set()
        logger.info("Execution cancellation requested", extra={"execution_id": execution_id})
        return True

    def prepare_cancellation(self, execution_id: str) -> None:
        """Register an execution id before it starts so `cancel` can reach it immediately."""
        self._cancel_events.setdefault(execution_id, asyncio.Event())

    def is_active(self, execution_id: str) -> bool:
        return execution_id in self._cancel_events

    def _release(self, execution_id: str) -> None:
        self._cancel_events.pop(execution_id, None)


__all__ = ["ExecutionEngine", "ExecutionSettings"]
