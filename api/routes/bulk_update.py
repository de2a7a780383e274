"""
Bulk update endpoints: submit, status, errors, progress stream, cancel
"""

from fastapi import APIRouter, Depends, File, Header, HTTPException, Request, UploadFile
from fastapi.responses import StreamingResponse
from typing import AsyncGenerator, Optional
from uuid import UUID
import json
import logging

from api.dependencies import get_orchestrator
from core.exceptions import CapacityError, JobNotFoundError
from ingestion.orchestrator import JobOrchestrator
from ingestion.progress import ProgressEvent, Subscription
from schemas.api import (
    CancelResponse,
    JobErrorListResponse,
    JobErrorResponse,
    JobStatusResponse,
    JobSubmitResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bulk-update", tags=["Bulk Update"])


def format_sse_event(event: ProgressEvent) -> str:
    """Render a progress event as one Server-Sent Events message."""
    payload = event.payload
    if isinstance(payload, (dict, list)):
        data = json.dumps(payload, default=str)
    else:
        data = "" if payload is None else str(payload)

    lines = [f"event: {event.event}"]
    lines.extend(f"data: {line}" for line in (data.splitlines() or [""]))
    return "\n".join(lines) + "\n\n"


@router.post("", response_model=JobSubmitResponse, status_code=202)
async def submit_upload(
    request: Request,
    file: UploadFile = File(..., description="CSV file with the key column and updatable columns"),
    actor: str = Header("anonymous", alias="X-Actor"),
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """
    Accept a CSV upload and start a bulk update job.

    Returns immediately with the job id; follow progress on
    `/bulk-update/{job_id}/events` or poll `/bulk-update/{job_id}`.
    """
    request_id = getattr(request.state, "request_id", "-")

    try:
        job_id = await orchestrator.submit(file.file, actor=actor, file_name=file.filename)
    except CapacityError as e:
        logger.warning(f"[{request_id}] Upload rejected: {e.message}")
        raise HTTPException(status_code=503, detail=e.message)
    finally:
        await file.close()

    logger.info(f"[{request_id}] POST /bulk-update - job {job_id} by {actor}")
    return JobSubmitResponse(job_id=job_id)


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """Current status, error count and timestamps of a job."""
    try:
        job = await orchestrator.get_status(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    return JobStatusResponse.model_validate(job)


@router.get("/{job_id}/errors", response_model=JobErrorListResponse)
async def list_job_errors(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """All validation errors recorded for a job."""
    try:
        errors = await orchestrator.list_errors(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    return JobErrorListResponse(
        job_id=job_id,
        total=len(errors),
        errors=[JobErrorResponse.model_validate(error) for error in errors],
    )


@router.get("/{job_id}/events")
async def stream_job_events(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
) -> StreamingResponse:
    """
    Stream progress of a job via Server-Sent Events.

    Events: `status`, `step`, `validation`, `validation.complete`,
    `updating`, `updating.chunk`. Only events published after connecting
    are delivered; the stream ends after the job's final `status` event.

    Example (JavaScript):
    ```javascript
    const es = new EventSource('/bulk-update/<job_id>/events');
    es.addEventListener('status', e => console.log('Status:', e.data));
    es.addEventListener('updating', e => console.log('Update:', e.data));
    ```
    """
    try:
        subscription = await orchestrator.subscribe(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    async def event_generator(subscription: Optional[Subscription]) -> AsyncGenerator[str, None]:
        if subscription is None:
            return
        try:
            async for event in subscription:
                yield format_sse_event(event)
        finally:
            # Client disconnects cancel the generator; detach either way
            subscription.close()

    return StreamingResponse(
        event_generator(subscription),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(
    job_id: UUID,
    orchestrator: JobOrchestrator = Depends(get_orchestrator)
):
    """Request cancellation; honoured before the update phase and between chunks."""
    try:
        await orchestrator.get_status(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")

    return CancelResponse(job_id=job_id, cancelled=orchestrator.cancel(job_id))
