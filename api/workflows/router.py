from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Request, status
from fastapi.responses import StreamingResponse

from api.workflows import models as api_models
from api.workflows import services
from workflow_compiler.build.coordinator import BuildCoordinator
from workflow_compiler.build.store import BuildStore
from workflow_compiler.runtime.engine import ExecutionEngine


router = APIRouter(prefix="/v1/workflow", tags=["workflows"])


def _coordinator(request: Request) -> BuildCoordinator:
    return request.app.state.coordinator


def _engine(request: Request) -> ExecutionEngine:
    return request.app.state.engine


def _store(request: Request) -> BuildStore:
    return request.app.state.build_store


@router.post("/create", response_model=api_models.WorkflowCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(request: Request, payload: api_models.WorkflowCreateRequest):
    """Submit a diagram export; the build is picked up by a worker or started via /build."""
    return await services.create_workflow(_coordinator(request), payload)


@router.get("/status/{workflow_id}", response_model=api_models.BuildStatusResponse)
async def get_status(request: Request, workflow_id: str):
    return await services.get_status(_coordinator(request), workflow_id)


@router.post(
    "/{workflow_id}/build",
    response_model=api_models.BuildStatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_build(request: Request, workflow_id: str, background_tasks: BackgroundTasks):
    return await services.start_build(_coordinator(request), workflow_id, background_tasks)


@router.post("/{workflow_id}/execute", response_model=api_models.ExecutionResponse)
async def execute_workflow(request: Request, workflow_id: str, payload: api_models.ExecuteRequest):
    return await services.execute_workflow(_engine(request), _store(request), workflow_id, payload)


@router.post("/{workflow_id}/execute/stream")
async def execute_workflow_stream(request: Request, workflow_id: str, payload: api_models.ExecuteRequest):
    """
    Execute and stream progress as Server-Sent Events: workflow_start, node_start,
    token, node_end, state_update, then exactly one workflow_end or error.
    """
    events = await services.stream_workflow(_engine(request), _store(request), workflow_id, payload)
    return StreamingResponse(
        events,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/executions/{execution_id}", response_model=api_models.ExecutionResponse)
async def get_execution(request: Request, execution_id: str):
    return await services.get_execution(_store(request), execution_id)


@router.post("/executions/{execution_id}/cancel", response_model=api_models.CancelResponse)
async def cancel_execution(request: Request, execution_id: str):
    return await services.cancel_execution(_engine(request), _store(request), execution_id)
