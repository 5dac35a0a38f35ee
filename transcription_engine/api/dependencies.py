"""FastAPI dependency injection configuration."""

from typing import Annotated

from fastapi import Depends, Request

from transcription_engine.jobs.service import TranscriptionService


def get_service(request: Request) -> TranscriptionService:
    """Returns the service built at application startup."""
    return request.app.state.service


ServiceDep = Annotated[TranscriptionService, Depends(get_service)]
