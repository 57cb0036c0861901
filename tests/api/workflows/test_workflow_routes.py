"""
HTTP surface: submission, build trigger, status, execution and SSE streaming.
"""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from tests.shared_data import LINEAR_EXPORT, FakeGenerationService, FinalSaveFailingStore, code, edge, export, node
from workflow_compiler.build.store import InMemoryBuildStore

PREFIX = "/api/v1/workflow"


@pytest.fixture
def client(generation_service):
    app = create_app(store=InMemoryBuildStore(), generation_service=generation_service)
    with TestClient(app) as test_client:
        yield test_client


def _create(client, payload=LINEAR_EXPORT, name="Linear") -> str:
    response = client.post(f"{PREFIX}/create", json={"name": name, "graph_export": payload})
    assert response.status_code == 201, response.text
    return response.json()["workflow_id"]


def _create_and_build(client, payload=LINEAR_EXPORT) -> str:
    workflow_id = _create(client, payload)
    response = client.post(f"{PREFIX}/{workflow_id}/build")
    assert response.status_code == 202, response.text
    return workflow_id


class TestBuildRoutes:
    def test_create_returns_pending_workflow(self, client):
        response = client.post(f"{PREFIX}/create", json={"name": "Linear", "graph_export": LINEAR_EXPORT})

        assert response.status_code == 201
        body = response.json()
        assert body["workflow_id"].startswith("wf_linear_")
        assert body["status"] == "pending"
        assert body["total_nodes"] == 2

    def test_create_rejects_malformed_export(self, client):
        response = client.post(
            f"{PREFIX}/create", json={"name": "Broken", "graph_export": {"nodes": [{"caption": "no id"}]}}
        )
        assert response.status_code == 422
        body = response.json()
        assert body["title"] == "Invalid graph export"
        assert isinstance(body["detail"], str)

    def test_build_then_status(self, client):
        workflow_id = _create_and_build(client)

        response = client.get(f"{PREFIX}/status/{workflow_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ready"
        assert body["progress"] == {"total_nodes": 2, "completed_nodes": 2, "current_task": None}
        assert [item["status"] for item in body["nodes_built"]] == ["built", "built"]
        assert body["chat_output_field"] == "result"

    def test_second_build_request_conflicts(self, client):
        workflow_id = _create_and_build(client)

        response = client.post(f"{PREFIX}/{workflow_id}/build")

        assert response.status_code == 409
        assert response.json()["status"] == 409

    def test_unknown_workflow(self, client):
        assert client.get(f"{PREFIX}/status/wf_missing").status_code == 404
        assert client.post(f"{PREFIX}/wf_missing/build").status_code == 404
        assert client.post(f"{PREFIX}/wf_missing/execute", json={"input": {}}).status_code == 404


class TestExecutionRoutes:
    def test_execute_before_build_conflicts(self, client):
        workflow_id = _create(client)

        response = client.post(f"{PREFIX}/{workflow_id}/execute", json={"input": {}})

        assert response.status_code == 409
        body = response.json()
        assert body["title"] == "Workflow not ready"
        assert response.headers["content-type"].startswith("application/problem+json")
        assert "not ready" in body["detail"]

    def test_execute(self, client):
        workflow_id = _create_and_build(client)

        response = client.post(f"{PREFIX}/{workflow_id}/execute", json={"input": {"note": "hi"}})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["final_state"] == {"note": "hi", "raw_data": "hello", "result": "HELLO"}
        assert body["chat_output_field"] == "result"
        assert body["super_steps"] == 2
        assert body["trajectory"]["summary"]["nodes_executed"] == 2

        fetched = client.get(f"{PREFIX}/executions/{body['execution_id']}")
        assert fetched.status_code == 200
        assert fetched.json()["final_state"] == body["final_state"]

    def test_failed_node_is_reported_in_the_response(self, client, generation_service):
        generation_service.answers["process"] = code("process", 'raise RuntimeError("downstream unavailable")')
        workflow_id = _create_and_build(client)

        response = client.post(f"{PREFIX}/{workflow_id}/execute", json={"input": {}})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "failed"
        assert body["failed_node"] == "2"
        assert "downstream unavailable" in body["error"]

    def test_memory_carries_thread_state(self, client):
        workflow_id = _create_and_build(client)
        client.post(f"{PREFIX}/{workflow_id}/execute", json={"input": {"note": "first"}, "thread_id": "t-1"})

        remembered = client.post(
            f"{PREFIX}/{workflow_id}/execute",
            json={"input": {"turn": 2}, "thread_id": "t-1", "config": {"memory_enabled": True}},
        ).json()
        forgotten = client.post(
            f"{PREFIX}/{workflow_id}/execute",
            json={"input": {"turn": 3}, "thread_id": "t-1"},
        ).json()

        assert remembered["final_state"]["note"] == "first"
        assert remembered["final_state"]["turn"] == 2
        assert "note" not in forgotten["final_state"]

    def test_stream(self, client):
        workflow_id = _create_and_build(client)

        with client.stream("POST", f"{PREFIX}/{workflow_id}/execute/stream", json={"input": {}}) as response:
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            body = "".join(response.iter_text())

        event_types = [line.removeprefix("event: ") for line in body.splitlines() if line.startswith("event: ")]
        assert event_types[0] == "workflow_start"
        assert event_types[-1] == "workflow_end"
        assert event_types.count("node_start") == 2

    def test_stream_has_one_terminal_event_when_final_save_fails(self, generation_service):
        app = create_app(store=FinalSaveFailingStore(), generation_service=generation_service)
        with TestClient(app) as client:
            workflow_id = _create_and_build(client)
            with client.stream("POST", f"{PREFIX}/{workflow_id}/execute/stream", json={"input": {}}) as response:
                body = "".join(response.iter_text())

        event_types = [line.removeprefix("event: ") for line in body.splitlines() if line.startswith("event: ")]
        assert event_types[0] == "workflow_start"
        assert event_types[-1] == "error"
        assert [kind for kind in event_types if kind in ("workflow_end", "error")] == ["error"]

    def test_stream_before_build_conflicts(self, client):
        workflow_id = _create(client)

        response = client.post(f"{PREFIX}/{workflow_id}/execute/stream", json={"input": {}})

        assert response.status_code == 409

    def test_executions_not_found(self, client):
        assert client.get(f"{PREFIX}/executions/exec_missing").status_code == 404
        assert client.post(f"{PREFIX}/executions/exec_missing/cancel").status_code == 404

    def test_cancel_finished_execution(self, client):
        workflow_id = _create_and_build(client)
        execution_id = client.post(f"{PREFIX}/{workflow_id}/execute", json={"input": {}}).json()["execution_id"]

        response = client.post(f"{PREFIX}/executions/{execution_id}/cancel")

        assert response.status_code == 200
        assert response.json() == {"execution_id": execution_id, "cancelled": False}

    def test_caller_chosen_execution_id(self, client):
        workflow_id = _create_and_build(client)
        request = {"input": {}, "execution_id": "exec-from-client-1"}

        body = client.post(f"{PREFIX}/{workflow_id}/execute", json=request).json()
        assert body["execution_id"] == "exec-from-client-1"
        assert client.get(f"{PREFIX}/executions/exec-from-client-1").json()["status"] == "completed"

        reused = client.post(f"{PREFIX}/{workflow_id}/execute", json=request)
        assert reused.status_code == 409
        assert reused.json()["title"] == "Execution already exists"

        invalid = client.post(f"{PREFIX}/{workflow_id}/execute", json={"input": {}, "execution_id": "no spaces"})
        assert invalid.status_code == 422

    def test_router_workflow_end_to_end(self, client):
        payload = export(
            [
                node("c", "classify", route_field="kind", routes={"x": "handler_a", "y": "handler_b"}),
                node("a", "handler_a"),
                node("b", "handler_b"),
            ],
            [edge("c", "a", "CONDITIONAL"), edge("c", "b", "CONDITIONAL")],
        )
        workflow_id = _create_and_build(client, payload)

        body = client.post(f"{PREFIX}/{workflow_id}/execute", json={"input": {"kind": "y"}}).json()

        assert body["final_state"]["handled_by"] == "b"
        assert [entry["node"] for entry in body["trajectory"]["execution_path"]] == ["c", "b"]


class TestHealth:
    def test_health(self):
        service = FakeGenerationService()
        with TestClient(create_app(store=InMemoryBuildStore(), generation_service=service)) as client:
            assert client.get("/health").json()["status"] == "ok"
