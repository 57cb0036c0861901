"""
Persistence boundary for build records, compiled workflows and execution records.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

from workflow_compiler.build.models import BuildRecord, BuildStatus, utcnow
from workflow_compiler.errors import BuildError, BuildLeaseLost, WorkflowNotFound
from workflow_compiler.runtime.records import ExecutionRecord, ExecutionStatus


class BuildStore(Protocol):
    async def create(self, record: BuildRecord) -> BuildRecord:
        ...

    async def get(self, workflow_id: str) -> Optional[BuildRecord]:
        ...

    async def save(
        self,
        record: BuildRecord,
        *,
        owner: Optional[str] = None,
        lease_seconds: Optional[int] = None,
    ) -> BuildRecord:
        """
        Overwrite the stored record. With `owner`, the write only lands while
        that worker still holds the build lease (BuildLeaseLost otherwise), and
        `lease_seconds` extends the lease of a record that keeps one.
        """
        ...

    async def renew_lease(self, workflow_id: str, owner: str, lease_seconds: int) -> bool:
        """Extend the lease held by `owner`. False when another worker took the build over."""
        ...

    async def claim(self, workflow_id: str, owner: str, lease_seconds: int) -> Optional[BuildRecord]:
        """Atomically move a pending build to building. None when the build is not pending."""
        ...

    async def claim_next(self, owner: str, lease_seconds: int) -> Optional[BuildRecord]:
        """Claim the oldest pending build, or a building one whose lease expired."""
        ...

    async def save_compiled(self, workflow_id: str, document: Dict[str, Any]) -> None:
        ...

    async def load_compiled(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def save_execution(self, record: ExecutionRecord) -> None:
        ...

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        ...

    async def latest_execution_for_thread(self, workflow_id: str, thread_id: str) -> Optional[ExecutionRecord]:
        """Most recent completed execution for the thread."""
        ...


def _claimed(record: BuildRecord, owner: str, lease_seconds: int, now: datetime) -> BuildRecord:
    return record.model_copy(
        update={
            "status": BuildStatus.building,
            "lease_owner": owner,
            "lease_expires_at": now + timedelta(seconds=lease_seconds),
            "started_at": record.started_at or now,
            "updated_at": now,
        }
    )


def _holds_lease(record: BuildRecord, owner: str) -> bool:
    return record.status == BuildStatus.building and record.lease_owner == owner


class InMemoryBuildStore:
    """Process-local store for tests and single-process development."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._builds: Dict[str, BuildRecord] = {}
        self._compiled: Dict[str, Dict[str, Any]] = {}
        self._executions: Dict[str, ExecutionRecord] = {}

    async def create(self, record: BuildRecord) -> BuildRecord:
        async with self._lock:
            if record.workflow_id in self._builds:
                raise BuildError(f"Workflow '{record.workflow_id}' already exists")
            self._builds[record.workflow_id] = record
            return record

    async def get(self, workflow_id: str) -> Optional[BuildRecord]:
        return self._builds.get(workflow_id)

    async def save(
        self,
        record: BuildRecord,
        *,
        owner: Optional[str] = None,
        lease_seconds: Optional[int] = None,
    ) -> BuildRecord:
        async with self._lock:
            stored = self._builds.get(record.workflow_id)
            if stored is None:
                raise WorkflowNotFound(f"Workflow '{record.workflow_id}' not found")
            if owner is not None and not _holds_lease(stored, owner):
                raise BuildLeaseLost(
                    f"Worker '{owner}' no longer holds the build lease for '{record.workflow_id}'"
                )
            now = utcnow()
            update: Dict[str, Any] = {"updated_at": now}
            if record.lease_owner is not None and lease_seconds is not None:
                update["lease_expires_at"] = now + timedelta(seconds=lease_seconds)
            elif record.lease_owner is not None and owner is not None:
                # the caller's copy may predate a renewal
                update["lease_expires_at"] = stored.lease_expires_at
            record = record.model_copy(update=update)
            self._builds[record.workflow_id] = record
            return record

    async def renew_lease(self, workflow_id: str, owner: str, lease_seconds: int) -> bool:
        async with self._lock:
            stored = self._builds.get(workflow_id)
            if stored is None or not _holds_lease(stored, owner):
                return False
            now = utcnow()
            self._builds[workflow_id] = stored.model_copy(
                update={"lease_expires_at": now + timedelta(seconds=lease_seconds), "updated_at": now}
            )
            return True

    async def claim(self, workflow_id: str, owner: str, lease_seconds: int) -> Optional[BuildRecord]:
        async with self._lock:
            record = self._builds.get(workflow_id)
            if record is None or record.status != BuildStatus.pending:
                return None
            claimed = _claimed(record, owner, lease_seconds, utcnow())
            self._builds[workflow_id] = claimed
            return claimed

    async def claim_next(self, owner: str, lease_seconds: int) -> Optional[BuildRecord]:
        async with self._lock:
            now = utcnow()
            candidates = [
                record
                for record in self._builds.values()
                if record.status == BuildStatus.pending
                or (
                    record.status == BuildStatus.building
                    and record.lease_expires_at is not None
                    and record.lease_expires_at <= now
                )
            ]
            if not candidates:
                return None
            record = min(candidates, key=lambda item: item.created_at)
            claimed = _claimed(record, owner, lease_seconds, now)
            self._builds[record.workflow_id] = claimed
            return claimed

    async def save_compiled(self, workflow_id: str, document: Dict[str, Any]) -> None:
        self._compiled[workflow_id] = document

    async def load_compiled(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        return self._compiled.get(workflow_id)

    async def save_execution(self, record: ExecutionRecord) -> None:
        self._executions[record.execution_id] = record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return self._executions.get(execution_id)

    async def latest_execution_for_thread(self, workflow_id: str, thread_id: str) -> Optional[ExecutionRecord]:
        matches = [
            record
            for record in self._executions.values()
            if record.workflow_id == workflow_id
            and record.thread_id == thread_id
            and record.status == ExecutionStatus.completed
        ]
        if not matches:
            return None
        return max(matches, key=lambda record: record.finished_at or record.started_at)


__all__ = ["BuildStore", "InMemoryBuildStore"]
