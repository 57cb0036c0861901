"""
BuildCoordinator: owns the build lifecycle of a submitted workflow:

    pending -> building -> ready | failed

Claiming a build is a compare-and-set on the stored status, so two workers
(or two API requests) can never build the same workflow at once. The claim
carries a lease that a heartbeat renews while the build runs, and every write
the builder makes only lands while it still holds that lease. Synthesis is
best-effort: a node that fails is recorded and the remaining nodes are still
attempted, then the build is marked failed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
from uuid import uuid4

from shared.logger import get_logger
from workflow_compiler.build.models import (
    BuildProgress,
    BuildRecord,
    BuildStatus,
    NodeBuildResult,
    NodeBuildStatus,
    make_workflow_id,
    utcnow,
)
from workflow_compiler.build.store import BuildStore
from workflow_compiler.compiler.compile import compile_workflow
from workflow_compiler.compiler.parse import load_graph_export, parse_graph, sanitize_node_name
from workflow_compiler.errors import (
    BuildAlreadyFinished,
    BuildInProgress,
    BuildLeaseLost,
    CompileError,
    ParseError,
    SynthesisError,
    SynthesisTimeout,
    WorkflowNotFound,
)
from workflow_compiler.schema.models import WorkflowGraph, WorkflowNode
from workflow_compiler.schema.state import StateSchema
from workflow_compiler.synthesis.behaviors import Behavior
from workflow_compiler.synthesis.synthesizer import CodeSynthesizer

logger = get_logger(__name__)


@dataclass(frozen=True)
class BuildSettings:
    lease_seconds: int = 900
    synthesis_timeout_seconds: float = 120.0
    synthesis_max_retries: int = 2
    reject_cycles: bool = True
    router_decisions_enabled: bool = True

    @classmethod
    def from_config(cls, config) -> "BuildSettings":
        return cls(
            lease_seconds=config.build_lease_seconds,
            synthesis_timeout_seconds=config.synthesis_timeout_seconds,
            synthesis_max_retries=config.synthesis_max_retries,
            reject_cycles=config.reject_cycles,
            router_decisions_enabled=config.router_decisions_enabled,
        )


class BuildCoordinator:
    def __init__(
        self,
        store: BuildStore,
        synthesizer: CodeSynthesizer,
        settings: Optional[BuildSettings] = None,
        *,
        worker_id: Optional[str] = None,
    ) -> None:
        self.store = store
        self.synthesizer = synthesizer
        self.settings = settings or BuildSettings()
        self.worker_id = worker_id or f"builder-{uuid4().hex[:8]}"

    # ------------------------------------------------------------------
    # Submission and status
    # ------------------------------------------------------------------
    async def submit(
        self,
        graph_export: Any,
        *,
        name: str,
        metadata: Optional[Mapping[str, Any]] = None,
        workflow_id: Optional[str] = None,
    ) -> BuildRecord:
        """
        Store a new pending build. Only the wire shape is checked here; graph
        structure is validated when the build runs and reported on the record.
        """
        export = load_graph_export(graph_export)
        record = BuildRecord(
            workflow_id=workflow_id or make_workflow_id(name),
            name=name,
            graph_export=export.model_dump(mode="json", by_alias=True),
            metadata=dict(metadata or {}),
            progress=BuildProgress(total_nodes=len(export.nodes), current_task="Waiting for a builder"),
            nodes_built=[
                NodeBuildResult(node_id=node.id, name=sanitize_node_name(node.caption or f"node_{node.id}"))
                for node in export.nodes
            ],
        )
        record = await self.store.create(record)
        logger.info(
            "Workflow submitted",
            extra={"workflow_id": record.workflow_id, "nodes": len(export.nodes)},
        )
        return record

    async def status(self, workflow_id: str) -> BuildRecord:
        record = await self.store.get(workflow_id)
        if record is None:
            raise WorkflowNotFound(f"Workflow '{workflow_id}' not found")
        return record

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------
    async def request_build(self, workflow_id: str) -> BuildRecord:
        """
        Claim the build for this worker. Raises BuildInProgress when another
        caller holds it and BuildAlreadyFinished for ready/failed workflows.
        """
        claimed = await self.store.claim(workflow_id, self.worker_id, self.settings.lease_seconds)
        if claimed is not None:
            logger.info("Build claimed", extra={"workflow_id": workflow_id, "worker_id": self.worker_id})
            return claimed

        record = await self.status(workflow_id)
        if record.status == BuildStatus.building:
            logger.info(
                "Build request rejected; build already running",
                extra={"workflow_id": workflow_id, "lease_owner": record.lease_owner},
            )
            raise BuildInProgress(f"Workflow '{workflow_id}' is already building")
        raise BuildAlreadyFinished(
            f"Workflow '{workflow_id}' is {record.status.value}; submit a new workflow to rebuild"
        )

    async def claim_next(self) -> Optional[BuildRecord]:
        return await self.store.claim_next(self.worker_id, self.settings.lease_seconds)

    async def build(self, workflow_id: str) -> BuildRecord:
        """Claim and run the build for `workflow_id` in the caller's task."""
        return await self.run_build(await self.request_build(workflow_id))

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def run_build(self, record: BuildRecord) -> BuildRecord:
        """
        Run a claimed build while a heartbeat keeps its lease alive. If the
        lease is lost anyway the build stops writing and the record as stored
        by the new owner is returned.
        """
        stop = asyncio.Event()
        heartbeat = asyncio.create_task(self._keep_lease(record.workflow_id, stop))
        try:
            return await self._run_pipeline(record)
        except BuildLeaseLost:
            logger.warning(
                "Build lease lost; abandoning build",
                extra={"workflow_id": record.workflow_id, "worker_id": self.worker_id},
            )
            return await self.status(record.workflow_id)
        finally:
            stop.set()
            await heartbeat

    async def _keep_lease(self, workflow_id: str, stop: asyncio.Event) -> None:
        interval = max(self.settings.lease_seconds / 3, 0.05)
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            renewed = await self.store.renew_lease(workflow_id, self.worker_id, self.settings.lease_seconds)
            if not renewed:
                logger.warning(
                    "Build lease could not be renewed",
                    extra={"workflow_id": workflow_id, "worker_id": self.worker_id},
                )
                return

    async def _run_pipeline(self, record: BuildRecord) -> BuildRecord:
        workflow_id = record.workflow_id
        try:
            graph = parse_graph(record.graph_export, reject_cycles=self.settings.reject_cycles)
            state_schema = StateSchema.from_declarations(
                (node.id, fields) for node in graph.nodes for fields in (node.inputs, node.outputs)
            )
        except (ParseError, CompileError) as exc:
            return await self.fail(record, f"{type(exc).__name__}: {exc}")

        order = graph.topological_order()
        results: Dict[str, NodeBuildResult] = {
            node.id: NodeBuildResult(node_id=node.id, name=node.function_name, role=node.role)
            for node in graph.nodes
        }
        record = await self._update(
            record,
            results,
            progress=BuildProgress(total_nodes=len(order), completed_nodes=0, current_task="Synthesizing nodes"),
        )

        behaviors: Dict[str, Behavior] = {}
        for completed, node_id in enumerate(order, start=1):
            node = graph.node(node_id)
            results[node_id] = results[node_id].model_copy(update={"status": NodeBuildStatus.building})
            record = await self._update(
                record,
                results,
                progress=record.progress.model_copy(update={"current_task": f"Synthesizing {node.function_name}"}),
            )
            try:
                behavior = await self._synthesize(node, state_schema, graph)
                state_schema = state_schema.with_fields(behavior.input_fields, owner=node.id).with_fields(
                    behavior.output_fields, owner=node.id
                )
            except (SynthesisError, CompileError) as exc:
                logger.warning(
                    "Node synthesis failed",
                    extra={"workflow_id": workflow_id, "node_id": node_id, "error": str(exc)},
                )
                results[node_id] = results[node_id].model_copy(
                    update={"status": NodeBuildStatus.failed, "error": str(exc)}
                )
            else:
                behaviors[node_id] = behavior
                results[node_id] = results[node_id].model_copy(update={"status": NodeBuildStatus.built})
            record = await self._update(
                record,
                results,
                progress=record.progress.model_copy(update={"completed_nodes": completed}),
            )

        failed = [result for result in results.values() if result.status == NodeBuildStatus.failed]
        if failed:
            names = ", ".join(result.name for result in failed)
            return await self.fail(record, f"{len(failed)} node(s) failed to build: {names}")

        try:
            compiled = compile_workflow(
                graph,
                behaviors,
                workflow_id=workflow_id,
                router_decisions=self.settings.router_decisions_enabled,
            )
        except CompileError as exc:
            return await self.fail(record, f"CompileError: {exc}")

        if not await self.store.renew_lease(workflow_id, self.worker_id, self.settings.lease_seconds):
            raise BuildLeaseLost(f"Worker '{self.worker_id}' lost the build lease for '{workflow_id}'")
        await self.store.save_compiled(workflow_id, compiled.to_document())
        record = await self.store.save(
            record.model_copy(
                update={
                    "status": BuildStatus.ready,
                    "progress": record.progress.model_copy(update={"current_task": None}),
                    "chat_input_field": compiled.chat_input_field,
                    "chat_output_field": compiled.chat_output_field,
                    "error": None,
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "completed_at": utcnow(),
                }
            ),
            owner=self.worker_id,
        )
        logger.info("Build ready", extra={"workflow_id": workflow_id, "nodes": len(order)})
        return record

    async def fail(self, record: BuildRecord, error: str) -> BuildRecord:
        record = await self.store.save(
            record.model_copy(
                update={
                    "status": BuildStatus.failed,
                    "error": error,
                    "progress": record.progress.model_copy(update={"current_task": None}),
                    "lease_owner": None,
                    "lease_expires_at": None,
                    "completed_at": utcnow(),
                }
            ),
            owner=self.worker_id,
        )
        logger.warning("Build failed", extra={"workflow_id": record.workflow_id, "error": error})
        return record

    async def _update(
        self,
        record: BuildRecord,
        results: Mapping[str, NodeBuildResult],
        *,
        progress: BuildProgress,
    ) -> BuildRecord:
        return await self.store.save(
            record.model_copy(update={"progress": progress, "nodes_built": list(results.values())}),
            owner=self.worker_id,
            lease_seconds=self.settings.lease_seconds,
        )

    async def _synthesize(self, node: WorkflowNode, state_schema: StateSchema, graph: WorkflowGraph) -> Behavior:
        """Per-node timeout with a bounded number of retries on timeout."""
        attempts = self.settings.synthesis_max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.synthesizer.synthesize(node, state_schema, graph),
                    timeout=self.settings.synthesis_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Generation service timed out",
                    extra={"node_id": node.id, "attempt": attempt, "max_attempts": attempts},
                )
            except SynthesisError:
                raise
            except Exception as exc:
                raise SynthesisError(
                    f"Generation failed for node '{node.caption}': {type(exc).__name__}: {exc}",
                    node_id=node.id,
                ) from exc
        raise SynthesisTimeout(
            f"Generation for node '{node.caption}' timed out after {attempts} attempt(s) "
            f"of {self.settings.synthesis_timeout_seconds}s",
            node_id=node.id,
        )


__all__ = ["BuildCoordinator", "BuildSettings"]
