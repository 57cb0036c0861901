"""
TortoiseBuildStore against an in-memory sqlite database.
"""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from tortoise import Tortoise

from shared.database.config import build_tortoise_config
from workflow_compiler.build.models import BuildRecord, BuildStatus, NodeBuildResult, utcnow
from workflow_compiler.build.tortoise_store import TortoiseBuildStore
from workflow_compiler.errors import BuildError, BuildLeaseLost, WorkflowNotFound
from workflow_compiler.runtime.records import ExecutionRecord, ExecutionStatus


@pytest_asyncio.fixture
async def tortoise_store():
    await Tortoise.init(config=build_tortoise_config("sqlite://:memory:"))
    await Tortoise.generate_schemas()
    try:
        yield TortoiseBuildStore()
    finally:
        await Tortoise.close_connections()


def _record(workflow_id: str = "wf_test_1") -> BuildRecord:
    return BuildRecord(
        workflow_id=workflow_id,
        name="test",
        graph_export={"nodes": [{"id": "1", "caption": "a", "properties": {}}], "relationships": []},
        nodes_built=[NodeBuildResult(node_id="1", name="a")],
    )


def _execution(execution_id: str, status: ExecutionStatus, final_state=None) -> ExecutionRecord:
    return ExecutionRecord(
        execution_id=execution_id,
        workflow_id="wf_test_1",
        thread_id="thread-1",
        status=status,
        final_state=final_state or {},
        started_at=utcnow(),
        finished_at=utcnow(),
    )


class TestBuildRecords:
    @pytest.mark.asyncio
    async def test_create_get_save(self, tortoise_store):
        created = await tortoise_store.create(_record())
        assert created.status == BuildStatus.pending
        assert created.nodes_built[0].node_id == "1"

        with pytest.raises(BuildError):
            await tortoise_store.create(_record())

        saved = await tortoise_store.save(created.model_copy(update={"error": "nope", "status": BuildStatus.failed}))
        assert saved.status == BuildStatus.failed
        assert (await tortoise_store.get("wf_test_1")).error == "nope"
        assert await tortoise_store.get("wf_missing") is None

        with pytest.raises(WorkflowNotFound):
            await tortoise_store.save(_record("wf_missing"))

    @pytest.mark.asyncio
    async def test_claim_is_compare_and_set(self, tortoise_store):
        await tortoise_store.create(_record())

        claims = await asyncio.gather(
            tortoise_store.claim("wf_test_1", "worker-a", 60),
            tortoise_store.claim("wf_test_1", "worker-b", 60),
        )

        winners = [claim for claim in claims if claim is not None]
        assert len(winners) == 1
        assert winners[0].status == BuildStatus.building
        assert winners[0].lease_owner in {"worker-a", "worker-b"}
        assert await tortoise_store.claim("wf_test_1", "worker-c", 60) is None

    @pytest.mark.asyncio
    async def test_claim_next_prefers_pending_then_expired_leases(self, tortoise_store):
        await tortoise_store.create(_record("wf_a"))
        await tortoise_store.create(_record("wf_b"))

        first = await tortoise_store.claim_next("worker-a", 60)
        second = await tortoise_store.claim_next("worker-a", 60)
        assert {first.workflow_id, second.workflow_id} == {"wf_a", "wf_b"}
        assert await tortoise_store.claim_next("worker-b", 60) is None

        expired = second.model_copy(update={"lease_expires_at": utcnow() - timedelta(seconds=5)})
        await tortoise_store.save(expired)
        reclaimed = await tortoise_store.claim_next("worker-b", 60)
        assert reclaimed.workflow_id == second.workflow_id
        assert reclaimed.lease_owner == "worker-b"

    @pytest.mark.asyncio
    async def test_writes_require_the_current_lease(self, tortoise_store):
        await tortoise_store.create(_record())
        stale = await tortoise_store.claim("wf_test_1", "worker-a", -1)
        current = await tortoise_store.claim_next("worker-b", 60)
        assert current.lease_owner == "worker-b"

        with pytest.raises(BuildLeaseLost):
            await tortoise_store.save(stale.model_copy(update={"error": "stale"}), owner="worker-a", lease_seconds=60)
        assert await tortoise_store.renew_lease("wf_test_1", "worker-a", 60) is False
        assert await tortoise_store.renew_lease("wf_test_1", "worker-b", 60) is True

        saved = await tortoise_store.save(
            current.model_copy(update={"error": "progress"}), owner="worker-b", lease_seconds=60
        )
        assert saved.error == "progress"
        assert saved.lease_owner == "worker-b"

        with pytest.raises(WorkflowNotFound):
            await tortoise_store.save(_record("wf_missing"), owner="worker-b")

    @pytest.mark.asyncio
    async def test_compiled_document(self, tortoise_store):
        await tortoise_store.create(_record())
        assert await tortoise_store.load_compiled("wf_test_1") is None

        await tortoise_store.save_compiled("wf_test_1", {"version": 1, "workflow_id": "wf_test_1"})
        assert (await tortoise_store.load_compiled("wf_test_1"))["version"] == 1

        with pytest.raises(WorkflowNotFound):
            await tortoise_store.save_compiled("wf_missing", {})


class TestExecutionRecords:
    @pytest.mark.asyncio
    async def test_save_execution_overwrites(self, tortoise_store):
        await tortoise_store.save_execution(_execution("exec_1", ExecutionStatus.running))
        await tortoise_store.save_execution(_execution("exec_1", ExecutionStatus.completed, {"answer": 42}))

        stored = await tortoise_store.get_execution("exec_1")
        assert stored.status == ExecutionStatus.completed
        assert stored.final_state == {"answer": 42}
        assert await tortoise_store.get_execution("exec_missing") is None

    @pytest.mark.asyncio
    async def test_latest_completed_execution_for_thread(self, tortoise_store):
        await tortoise_store.save_execution(_execution("exec_1", ExecutionStatus.completed, {"turn": 1}))
        await tortoise_store.save_execution(_execution("exec_2", ExecutionStatus.completed, {"turn": 2}))
        await tortoise_store.save_execution(_execution("exec_3", ExecutionStatus.failed, {"turn": 3}))

        latest = await tortoise_store.latest_execution_for_thread("wf_test_1", "thread-1")
        assert latest.final_state == {"turn": 2}
        assert await tortoise_store.latest_execution_for_thread("wf_test_1", "other") is None
