"""Workflow definitions module."""

from workflows.bulk_sync_workflow import BulkSyncWorkflow, BulkSyncWorkflowInput

__all__ = ["BulkSyncWorkflow", "BulkSyncWorkflowInput"]
