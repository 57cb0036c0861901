from tortoise import fields, models

from workflow_compiler.build.models import BuildStatus
from workflow_compiler.runtime.records import ExecutionStatus


class WorkflowBuild(models.Model):
    """Build record plus the compiled workflow document once ready."""

    id = fields.IntField(primary_key=True)
    workflow_id = fields.CharField(max_length=128, unique=True, db_index=True)
    name = fields.CharField(max_length=255)
    status = fields.CharEnumField(BuildStatus, max_length=20, default=BuildStatus.pending)
    graph_export = fields.JSONField()
    metadata = fields.JSONField(null=True)
    progress = fields.JSONField(null=True)
    nodes_built = fields.JSONField(null=True)
    error = fields.TextField(null=True)
    chat_input_field = fields.CharField(max_length=255, null=True)
    chat_output_field = fields.CharField(max_length=255, null=True)
    compiled = fields.JSONField(null=True)
    lease_owner = fields.CharField(max_length=64, null=True)
    lease_expires_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)
    started_at = fields.DatetimeField(null=True)
    completed_at = fields.DatetimeField(null=True)

    class Meta:
        table = "workflow_builds"
        ordering = ("created_at", "id")

    def __str__(self) -> str:
        return f"WorkflowBuild<{self.workflow_id}:{self.status}>"


class WorkflowExecution(models.Model):
    """One execution request; `record` holds the serialized ExecutionRecord."""

    id = fields.IntField(primary_key=True)
    execution_id = fields.CharField(max_length=64, unique=True, db_index=True)
    workflow_id = fields.CharField(max_length=128, db_index=True)
    thread_id = fields.CharField(max_length=255, null=True, db_index=True)
    status = fields.CharEnumField(ExecutionStatus, max_length=20, default=ExecutionStatus.running)
    record = fields.JSONField()
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "workflow_executions"
        ordering = ("-created_at", "id")

    def __str__(self) -> str:
        return f"WorkflowExecution<{self.execution_id}:{self.status}>"


__all__ = ["WorkflowBuild", "WorkflowExecution"]
