"""
Bulk update pipeline components.

This package contains everything that runs between an accepted upload
and an updated destination table:

Modules:
    contract: Allow-listed description of the destination table
    job_store: Persistence of job and job-error records
    progress: Per-job publish/subscribe channel for progress events
    schema_guard: Header and destination column-set checks
    staging: Per-job temporary staging table and COPY loader
    validator: Referential validation against reference tables
    updater: Chunked, audited application to the destination table
    runner: One job's pipeline, stage by stage
    worker_pool: Bounded asyncio worker pool with admission policy
    orchestrator: Submission, status, errors, subscriptions, cancellation
    scheduler: APScheduler housekeeping (spooled upload cleanup)

Architecture:
    Each job runs start-to-finish in one pool worker:

    1. Schema Guard - header and destination must match the contract
    2. Staging Loader - COPY the file into a temporary table
    3. Referential Validator - record unknown values as JobError rows
    4. Chunked Updater - audit + update in bounded transactions

    A non-zero error count (above the configured threshold) stops the job
    before step 4.

Usage:
    from ingestion.orchestrator import JobOrchestrator

    orchestrator = JobOrchestrator.from_settings()
    await orchestrator.start()

    with open("upload.csv", "rb") as upload:
        job_id = await orchestrator.submit(upload, actor="alice")

    subscription = await orchestrator.subscribe(job_id)
    async for event in subscription:
        print(event.event, event.payload)
"""

__all__ = [
    "TableContract",
    "JobStore",
    "SqlJobStore",
    "ProgressChannel",
    "SchemaGuard",
    "StagingLoader",
    "ReferentialValidator",
    "ChunkedUpdater",
    "BulkUpdateRunner",
    "WorkerPool",
    "JobOrchestrator",
]
