"""
BuildStore backed by Tortoise ORM (postgres via asyncpg, or sqlite).
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

from tortoise.exceptions import IntegrityError
from tortoise.expressions import Q
from tortoise.transactions import in_transaction

from shared.database.workflow_models import WorkflowBuild, WorkflowExecution
from workflow_compiler.build.models import BuildProgress, BuildRecord, BuildStatus, NodeBuildResult, utcnow
from workflow_compiler.errors import BuildError, BuildLeaseLost, WorkflowNotFound
from workflow_compiler.runtime.records import ExecutionRecord, ExecutionStatus


def _to_record(row: WorkflowBuild) -> BuildRecord:
    return BuildRecord(
        workflow_id=row.workflow_id,
        name=row.name,
        status=row.status,
        graph_export=row.graph_export or {},
        metadata=row.metadata or {},
        progress=BuildProgress.model_validate(row.progress or {}),
        nodes_built=[NodeBuildResult.model_validate(item) for item in row.nodes_built or []],
        error=row.error,
        chat_input_field=row.chat_input_field,
        chat_output_field=row.chat_output_field,
        lease_owner=row.lease_owner,
        lease_expires_at=row.lease_expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _mutable_fields(record: BuildRecord) -> Dict[str, Any]:
    return {
        "name": record.name,
        "status": record.status,
        "progress": record.progress.model_dump(mode="json"),
        "nodes_built": [item.model_dump(mode="json") for item in record.nodes_built],
        "error": record.error,
        "chat_input_field": record.chat_input_field,
        "chat_output_field": record.chat_output_field,
        "lease_owner": record.lease_owner,
        "lease_expires_at": record.lease_expires_at,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
    }


class TortoiseBuildStore:
    async def create(self, record: BuildRecord) -> BuildRecord:
        try:
            row = await WorkflowBuild.create(
                workflow_id=record.workflow_id,
                graph_export=record.graph_export,
                metadata=record.metadata,
                **_mutable_fields(record),
            )
        except IntegrityError as exc:
            raise BuildError(f"Workflow '{record.workflow_id}' already exists") from exc
        return _to_record(row)

    async def get(self, workflow_id: str) -> Optional[BuildRecord]:
        row = await WorkflowBuild.get_or_none(workflow_id=workflow_id)
        return _to_record(row) if row else None

    async def save(
        self,
        record: BuildRecord,
        *,
        owner: Optional[str] = None,
        lease_seconds: Optional[int] = None,
    ) -> BuildRecord:
        if owner is None:
            row = await WorkflowBuild.get_or_none(workflow_id=record.workflow_id)
            if row is None:
                raise WorkflowNotFound(f"Workflow '{record.workflow_id}' not found")
            row.update_from_dict(_mutable_fields(record))
            await row.save()
            return _to_record(row)

        now = utcnow()
        values = _mutable_fields(record)
        values["updated_at"] = now
        if record.lease_owner is not None and lease_seconds is not None:
            values["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
        elif record.lease_owner is not None:
            # keep whatever a renewal already wrote
            values.pop("lease_expires_at")
        # conditional write: matches nothing once another worker took the lease
        updated = await WorkflowBuild.filter(
            workflow_id=record.workflow_id, status=BuildStatus.building, lease_owner=owner
        ).update(**values)
        if not updated:
            if not await WorkflowBuild.exists(workflow_id=record.workflow_id):
                raise WorkflowNotFound(f"Workflow '{record.workflow_id}' not found")
            raise BuildLeaseLost(
                f"Worker '{owner}' no longer holds the build lease for '{record.workflow_id}'"
            )
        return await self.get(record.workflow_id)

    async def renew_lease(self, workflow_id: str, owner: str, lease_seconds: int) -> bool:
        now = utcnow()
        updated = await WorkflowBuild.filter(
            workflow_id=workflow_id, status=BuildStatus.building, lease_owner=owner
        ).update(lease_expires_at=now + timedelta(seconds=lease_seconds), updated_at=now)
        return bool(updated)

    async def claim(self, workflow_id: str, owner: str, lease_seconds: int) -> Optional[BuildRecord]:
        now = utcnow()
        # compare-and-set: only one caller's UPDATE matches the pending row
        updated = await WorkflowBuild.filter(workflow_id=workflow_id, status=BuildStatus.pending).update(
            status=BuildStatus.building,
            lease_owner=owner,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
            started_at=now,
        )
        if not updated:
            return None
        return await self.get(workflow_id)

    async def claim_next(self, owner: str, lease_seconds: int) -> Optional[BuildRecord]:
        now = utcnow()
        async with in_transaction() as conn:
            row = await (
                WorkflowBuild.filter(
                    Q(status=BuildStatus.pending)
                    | Q(status=BuildStatus.building, lease_expires_at__lte=now)
                )
                .order_by("created_at", "id")
                .using_db(conn)
                .select_for_update(skip_locked=True)
                .first()
            )
            if row is None:
                return None
            row.status = BuildStatus.building
            row.lease_owner = owner
            row.lease_expires_at = now + timedelta(seconds=lease_seconds)
            row.started_at = row.started_at or now
            await row.save(
                update_fields=["status", "lease_owner", "lease_expires_at", "started_at", "updated_at"],
                using_db=conn,
            )
        return _to_record(row)

    async def save_compiled(self, workflow_id: str, document: Dict[str, Any]) -> None:
        updated = await WorkflowBuild.filter(workflow_id=workflow_id).update(compiled=document)
        if not updated:
            raise WorkflowNotFound(f"Workflow '{workflow_id}' not found")

    async def load_compiled(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        row = await WorkflowBuild.get_or_none(workflow_id=workflow_id)
        return row.compiled if row else None

    async def save_execution(self, record: ExecutionRecord) -> None:
        await WorkflowExecution.update_or_create(
            execution_id=record.execution_id,
            defaults={
                "workflow_id": record.workflow_id,
                "thread_id": record.thread_id,
                "status": record.status,
                "record": record.model_dump(mode="json"),
            },
        )

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        row = await WorkflowExecution.get_or_none(execution_id=execution_id)
        return ExecutionRecord.model_validate(row.record) if row else None

    async def latest_execution_for_thread(self, workflow_id: str, thread_id: str) -> Optional[ExecutionRecord]:
        row = await (
            WorkflowExecution.filter(
                workflow_id=workflow_id,
                thread_id=thread_id,
                status=ExecutionStatus.completed,
            )
            .order_by("-created_at", "-id")
            .first()
        )
        return ExecutionRecord.model_validate(row.record) if row else None


__all__ = ["TortoiseBuildStore"]
