from __future__ import annotations

import json
from typing import Any, AsyncGenerator, AsyncIterator, Dict, NoReturn, Optional

from fastapi import BackgroundTasks, HTTPException

from api.workflows import models as api_models
from shared.logger import get_logger
from workflow_compiler.build.coordinator import BuildCoordinator
from workflow_compiler.build.models import BuildRecord
from workflow_compiler.build.store import BuildStore
from workflow_compiler.errors import (
    BuildAlreadyFinished,
    BuildError,
    BuildInProgress,
    ExecutionError,
    ParseError,
    WorkflowCompilerError,
    WorkflowNotFound,
    WorkflowNotReady,
)
from workflow_compiler.runtime.engine import ExecutionEngine
from workflow_compiler.runtime.events import ExecutionEvent
from workflow_compiler.runtime.records import ExecutionRecord

logger = get_logger(__name__)

NOT_FOUND_PROBLEM = "https://docs.sketch2agent.dev/problems/not-found"
CONFLICT_PROBLEM = "https://docs.sketch2agent.dev/problems/conflict"
INVALID_GRAPH_PROBLEM = "https://docs.sketch2agent.dev/problems/invalid-graph"
EXECUTION_PROBLEM = "https://docs.sketch2agent.dev/problems/execution"

# Most specific first.
_PROBLEM_MAP = (
    (WorkflowNotFound, 404, NOT_FOUND_PROBLEM, "Workflow not found"),
    (BuildInProgress, 409, CONFLICT_PROBLEM, "Build already in progress"),
    (BuildAlreadyFinished, 409, CONFLICT_PROBLEM, "Build already finished"),
    (WorkflowNotReady, 409, CONFLICT_PROBLEM, "Workflow not ready"),
    (BuildError, 409, CONFLICT_PROBLEM, "Build conflict"),
    (ParseError, 422, INVALID_GRAPH_PROBLEM, "Invalid graph export"),
)


class ProblemException(HTTPException):
    """HTTPException whose body is rendered as problem details by the app."""

    def __init__(self, problem: api_models.ProblemDetails) -> None:
        super().__init__(status_code=problem.status, detail=problem.detail)
        self.problem = problem


def _raise_problem(*, type_uri: str, title: str, detail: str, status: int) -> NoReturn:
    raise ProblemException(api_models.ProblemDetails(type=type_uri, title=title, status=status, detail=detail))


def raise_for_error(exc: WorkflowCompilerError) -> NoReturn:
    for error_type, status, type_uri, title in _PROBLEM_MAP:
        if isinstance(exc, error_type):
            _raise_problem(type_uri=type_uri, title=title, detail=str(exc), status=status)
    _raise_problem(type_uri=EXECUTION_PROBLEM, title="Workflow error", detail=str(exc), status=400)


def _status_response(record: BuildRecord) -> api_models.BuildStatusResponse:
    return api_models.BuildStatusResponse.model_validate(record.status_snapshot())


def _execution_response(record: ExecutionRecord, chat_output_field: Optional[str]) -> api_models.ExecutionResponse:
    return api_models.ExecutionResponse(
        execution_id=record.execution_id,
        workflow_id=record.workflow_id,
        thread_id=record.thread_id,
        status=record.status.value,
        final_state=record.final_state,
        super_steps=record.super_steps,
        execution_time_ms=record.execution_time_ms,
        chat_output_field=chat_output_field,
        trajectory=record.trajectory_document(),
        error=record.error,
        failed_node=record.failed_node,
    )


# ----------------------------------------------------------------------
# Build lifecycle
# ----------------------------------------------------------------------
async def create_workflow(
    coordinator: BuildCoordinator, payload: api_models.WorkflowCreateRequest
) -> api_models.WorkflowCreateResponse:
    try:
        record = await coordinator.submit(payload.graph_export, name=payload.name, metadata=payload.metadata)
    except WorkflowCompilerError as exc:
        raise_for_error(exc)
    return api_models.WorkflowCreateResponse(
        workflow_id=record.workflow_id,
        name=record.name,
        status=record.status.value,
        total_nodes=record.progress.total_nodes,
    )


async def get_status(coordinator: BuildCoordinator, workflow_id: str) -> api_models.BuildStatusResponse:
    try:
        record = await coordinator.status(workflow_id)
    except WorkflowCompilerError as exc:
        raise_for_error(exc)
    return _status_response(record)


async def start_build(
    coordinator: BuildCoordinator, workflow_id: str, background_tasks: BackgroundTasks
) -> api_models.BuildStatusResponse:
    """Claim the build now (so conflicts surface as 409) and run it after responding."""
    try:
        record = await coordinator.request_build(workflow_id)
    except WorkflowCompilerError as exc:
        raise_for_error(exc)
    background_tasks.add_task(coordinator.run_build, record)
    return _status_response(record)


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------
async def _prepare_input(store: BuildStore, workflow_id: str, payload: api_models.ExecuteRequest) -> Dict[str, Any]:
    """
    The engine keeps no memory between calls; with memory enabled the prior
    final state of the thread is carried under the new input here.
    """
    state: Dict[str, Any] = {}
    if payload.config.memory_enabled and payload.thread_id:
        previous = await store.latest_execution_for_thread(workflow_id, payload.thread_id)
        if previous is not None:
            state.update(previous.final_state)
    state.update(payload.input)
    return state


async def _check_execution_id(engine: ExecutionEngine, store: BuildStore, payload: api_models.ExecuteRequest) -> None:
    execution_id = payload.execution_id
    if execution_id is None:
        return
    if engine.is_active(execution_id) or await store.get_execution(execution_id) is not None:
        _raise_problem(
            type_uri=CONFLICT_PROBLEM,
            title="Execution already exists",
            detail=f"Execution '{execution_id}' already exists",
            status=409,
        )


async def execute_workflow(
    engine: ExecutionEngine,
    store: BuildStore,
    workflow_id: str,
    payload: api_models.ExecuteRequest,
) -> api_models.ExecutionResponse:
    try:
        compiled = await engine.load(workflow_id)
        await _check_execution_id(engine, store, payload)
        input_state = await _prepare_input(store, workflow_id, payload)
        record = await engine.execute(
            workflow_id, input_state, thread_id=payload.thread_id, execution_id=payload.execution_id
        )
    except ExecutionError as exc:
        if exc.record is None:
            raise_for_error(exc)
        logger.info(
            "Execution halted",
            extra={"workflow_id": workflow_id, "execution_id": exc.record.execution_id, "error": str(exc)},
        )
        return _execution_response(exc.record, compiled.chat_output_field)
    except WorkflowCompilerError as exc:
        raise_for_error(exc)
    return _execution_response(record, compiled.chat_output_field)


async def stream_workflow(
    engine: ExecutionEngine,
    store: BuildStore,
    workflow_id: str,
    payload: api_models.ExecuteRequest,
) -> AsyncIterator[str]:
    """Open the event stream; readiness errors raise before any byte is sent."""
    try:
        await _check_execution_id(engine, store, payload)
        input_state = await _prepare_input(store, workflow_id, payload)
        events = await engine.stream(
            workflow_id, input_state, thread_id=payload.thread_id, execution_id=payload.execution_id
        )
    except WorkflowCompilerError as exc:
        raise_for_error(exc)
    return _sse_events(events)


async def _sse_events(events: AsyncIterator[ExecutionEvent]) -> AsyncGenerator[str, None]:
    try:
        async for event in events:
            yield event.to_sse()
    except Exception as exc:
        logger.exception("Error during execution streaming")
        yield _format_sse_event("error", {"type": "error", "error": str(exc), "status": "failed"})


def _format_sse_event(event_type: str, data: Any) -> str:
    """Format data as a Server-Sent Event."""
    try:
        json_data = json.dumps(data, default=str)
    except (TypeError, ValueError) as e:
        json_data = json.dumps({"error": f"Serialization error: {e}"})

    return f"event: {event_type}\ndata: {json_data}\n\n"


async def get_execution(store: BuildStore, execution_id: str) -> api_models.ExecutionResponse:
    record = await store.get_execution(execution_id)
    if record is None:
        _raise_problem(
            type_uri=NOT_FOUND_PROBLEM,
            title="Execution not found",
            detail=f"Execution '{execution_id}' not found",
            status=404,
        )
    build = await store.get(record.workflow_id)
    return _execution_response(record, build.chat_output_field if build else None)


async def cancel_execution(engine: ExecutionEngine, store: BuildStore, execution_id: str) -> api_models.CancelResponse:
    if engine.cancel(execution_id):
        return api_models.CancelResponse(execution_id=execution_id, cancelled=True)
    if await store.get_execution(execution_id) is None:
        _raise_problem(
            type_uri=NOT_FOUND_PROBLEM,
            title="Execution not found",
            detail=f"Execution '{execution_id}' not found",
            status=404,
        )
    # already finished
    return api_models.CancelResponse(execution_id=execution_id, cancelled=False)
