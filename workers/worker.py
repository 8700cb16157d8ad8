"""Worker for the ERP sync engine.

Connects to Temporal Cloud, polls the sync task queue and executes the
bulk sync workflow and sync activities.

Run with --queue <name> to override the task queue.
Run with --start-bulk to also start (or attach to) the periodic bulk sync
workflow for one organization and entity type.
"""

import argparse
import asyncio
import logging

from temporalio.client import Client
from temporalio.common import WorkflowIDReusePolicy
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.worker import Worker

from core.config import SyncSettings, get_temporal_client, load_settings
from core.observability.logging import configure_logging, get_logger
from core.sync.models import EntityType, SyncDirection
from workflows.bulk_sync_workflow import BulkSyncWorkflow, BulkSyncWorkflowInput
from activities.sync import run_bulk_sync, sync_entity

logger = get_logger(__name__)

SYNC_ACTIVITIES = [
    run_bulk_sync,
    sync_entity,
]

SYNC_WORKFLOWS = [
    BulkSyncWorkflow,
]


def bulk_workflow_id(organization_id: str, entity_type: str) -> str:
    """One periodic workflow per organization and entity type."""
    return f"bulk-sync-{organization_id}-{entity_type}"


async def start_bulk_sync(
    client: Client,
    settings: SyncSettings,
    organization_id: str,
    principal_id: str,
    entity_type: str,
    direction: str = "auto",
) -> str:
    """Start the periodic bulk sync workflow unless it is already running."""
    workflow_id = bulk_workflow_id(organization_id, entity_type)
    try:
        await client.start_workflow(
            BulkSyncWorkflow.run,
            BulkSyncWorkflowInput(
                organization_id=organization_id,
                principal_id=principal_id,
                entity_type=entity_type,
                direction=direction,
                interval_minutes=settings.bulk_interval_minutes,
            ),
            id=workflow_id,
            task_queue=settings.task_queue,
            id_reuse_policy=WorkflowIDReusePolicy.ALLOW_DUPLICATE,
        )
        logger.info(f"Started bulk sync workflow {workflow_id}")
    except WorkflowAlreadyStartedError:
        logger.info(f"Bulk sync workflow {workflow_id} already running")
    return workflow_id


async def run_worker(settings: SyncSettings, queue: str = None, start_bulk: dict = None):
    """Start worker listening on the sync task queue.

    Raises:
        Exception: If connection to Temporal Cloud fails
    """
    client = await get_temporal_client(settings)
    logger.info(f"Connected to Temporal Cloud: {client.namespace}")

    task_queue = queue or settings.task_queue
    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=SYNC_WORKFLOWS,
        activities=SYNC_ACTIVITIES,
    )
    logger.info(f"Worker created for queue '{task_queue}':")
    logger.info(f"  - Workflows: {len(SYNC_WORKFLOWS)}")
    logger.info(f"  - Activities: {len(SYNC_ACTIVITIES)}")

    if start_bulk:
        await start_bulk_sync(client, settings, **start_bulk)

    logger.info("Worker running... (Ctrl+C to stop)")
    try:
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


def main():
    """Entry point for worker with CLI args."""
    settings = load_settings()
    configure_logging(
        level=getattr(logging, settings.log_level, logging.INFO),
        json_format=settings.log_json,
    )

    parser = argparse.ArgumentParser(description="ERP Sync Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=settings.task_queue,
        help=f"Task queue to poll (default: {settings.task_queue})"
    )
    parser.add_argument(
        "--start-bulk",
        action="store_true",
        help="Start the periodic bulk sync workflow for --organization/--entity-type"
    )
    parser.add_argument("--organization", help="Organization id for --start-bulk")
    parser.add_argument("--principal", default="system", help="Principal id for --start-bulk")
    parser.add_argument(
        "--entity-type",
        choices=[e.value for e in EntityType],
        default=EntityType.SALES_DOCUMENT.value,
    )
    parser.add_argument(
        "--direction",
        choices=[d.value for d in SyncDirection],
        default=SyncDirection.AUTO.value,
    )

    args = parser.parse_args()
    start_bulk = None
    if args.start_bulk:
        if not args.organization:
            parser.error("--start-bulk requires --organization")
        start_bulk = {
            "organization_id": args.organization,
            "principal_id": args.principal,
            "entity_type": args.entity_type,
            "direction": args.direction,
        }

    asyncio.run(run_worker(settings, queue=args.queue, start_bulk=start_bulk))


if __name__ == "__main__":
    main()
