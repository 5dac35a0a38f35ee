"""Transcription job endpoints."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, File, Form, HTTPException, Query, UploadFile

from transcription_engine.api.dependencies import ServiceDep
from transcription_engine.api.response_models import (
    DeleteResponse,
    HealthResponse,
    StorageEventResponse,
    SubmitResponse,
    SweepResponse,
    TranscriptionListResponse,
    TranscriptionResponse,
)
from transcription_engine.jobs.models import JobSource, JobStatus
from transcription_engine.jobs.submitter import MAX_UPLOAD_BYTES
from transcription_engine.queue.consumer import StorageEvent
from transcription_engine.utils.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["transcriptions"])


@router.post("/transcriptions", response_model=SubmitResponse, status_code=202)
async def submit_transcription(
    service: ServiceDep,
    file: Annotated[UploadFile, File()],
    source: Annotated[JobSource, Form()] = JobSource.FILE,
):
    """Accepts an audio file and starts transcribing it."""
    # Reject oversized uploads before buffering them
    if file.size is not None and file.size > MAX_UPLOAD_BYTES:
        raise ValidationError(
            f"File size too large ({file.size} bytes). Maximum size is 200MB.",
            field="audio",
        )
    audio = await file.read()
    job_id = await service.submit(
        audio, file.filename or "audio", source, file.content_type
    )
    return SubmitResponse(id=job_id)


@router.get("/transcriptions", response_model=TranscriptionListResponse)
async def list_transcriptions(
    service: ServiceDep,
    status: JobStatus | None = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
):
    """Returns the most recent jobs, optionally filtered by status."""
    jobs = await service.list_jobs(status, limit)
    return TranscriptionListResponse(
        transcriptions=[TranscriptionResponse.from_job(job) for job in jobs]
    )


@router.get("/transcriptions/{job_id}", response_model=TranscriptionResponse)
async def get_transcription(job_id: str, service: ServiceDep):
    """Returns one job, checking the provider if it is still running."""
    job = await service.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Transcription not found")
    return TranscriptionResponse.from_job(job)


@router.delete("/transcriptions/{job_id}", response_model=DeleteResponse)
async def delete_transcription(job_id: str, service: ServiceDep):
    """Hard-deletes a job."""
    if not await service.remove(job_id):
        raise HTTPException(status_code=404, detail="Transcription not found")
    return DeleteResponse(id=job_id, deleted=True)


@router.post("/reconcile", response_model=SweepResponse)
async def reconcile(service: ServiceDep):
    """Runs one reconciliation sweep."""
    return SweepResponse.from_result(await service.reconcile())


@router.post("/storage-events", response_model=StorageEventResponse)
async def storage_event(service: ServiceDep, body: Annotated[dict[str, Any], Body()]):
    """Starts or completes a job from an object store write notification."""
    try:
        event = StorageEvent.from_message_body(body)
    except ValueError as exc:
        raise ValidationError(str(exc), field="body") from exc

    job_name = None
    if event.is_write:
        job_name = await service.handle_object_write(event.object_key)
    return StorageEventResponse(object_key=event.object_key, job_name=job_name)


@router.get("/healthz", response_model=HealthResponse)
async def healthz():
    return HealthResponse()
