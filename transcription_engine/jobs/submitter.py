"""Job submission: validate, store the blob, record the row, start the job.

Two start modes are supported. In ``explicit`` mode the submitter starts
the managed-service job itself right after the upload. In
``storage-trigger`` mode it returns after the upload and the job is started
by start_for_object() when the object store's write notification arrives.
In both modes the IN_PROGRESS row is written before the upload so that a
notification can never observe an object without a row.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import PurePosixPath
from typing import Any
from urllib.parse import quote, unquote

from transcription_engine.asr.interface import TranscriptionProvider
from transcription_engine.jobs.models import (
    JobSource,
    JobStatus,
    TranscriptionJob,
    failure_update,
    format_timestamp,
    utcnow,
)
from transcription_engine.jobs.naming import (
    StartTrigger,
    compose_job_name,
    extension_of,
    job_id_from_key,
    new_object_key,
)
from transcription_engine.storage.metadata_store import MetadataStoreClient
from transcription_engine.storage.object_store import ObjectStoreClient
from transcription_engine.utils.errors import (
    JobStartError,
    TransientIOError,
    ValidationError,
)
from transcription_engine.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 200 * 1024 * 1024

DEFAULT_LANGUAGE_CODE = "en-US"
DEFAULT_MAX_SPEAKER_LABELS = 2

# Supported extension -> content type stored with the object
SUPPORTED_MEDIA: dict[str, str] = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
}

MEDIA_TYPE_ALIASES: dict[str, str] = {
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/mp4": "mp4",
    "video/mp4": "mp4",
}

# Audio containers the managed service cannot read
UNSUPPORTED_AUDIO_EXTENSIONS = frozenset(
    {"webm", "ogg", "oga", "opus", "flac", "aac", "weba"}
)

_UNDECLARED_TYPES = {"", "application/octet-stream"}


class StartMode(str, Enum):
    EXPLICIT = "explicit"
    STORAGE_TRIGGER = "storage-trigger"


def resolve_media(filename: str, content_type: str | None) -> tuple[str, str]:
    """Validate the declared media type and pick the object extension.

    Codec parameters (``audio/wav; codecs=1``) are ignored. When no type is
    declared it is inferred from the filename extension.

    Returns:
        Tuple of (extension, content type to store).

    Raises:
        ValidationError: If the media type is not supported.
    """
    declared = (content_type or "").split(";", 1)[0].strip().lower()
    file_ext = extension_of(filename)

    if declared in _UNDECLARED_TYPES:
        if file_ext not in SUPPORTED_MEDIA:
            raise ValidationError(
                f"Unsupported audio file '{filename}'. "
                f"Supported formats: {', '.join(SUPPORTED_MEDIA)}",
                field="filename",
            )
        return file_ext, SUPPORTED_MEDIA[file_ext]

    alias_ext = MEDIA_TYPE_ALIASES.get(declared)
    if alias_ext is None:
        raise ValidationError(
            f"Unsupported media type '{declared}'. "
            f"Supported formats: {', '.join(SUPPORTED_MEDIA)}",
            field="content_type",
        )
    extension = file_ext if file_ext in SUPPORTED_MEDIA else alias_ext
    return extension, SUPPORTED_MEDIA[extension]


class JobSubmitter:
    """Accepts audio and gets a managed-service job running for it.

    Reads configuration from environment variables:
        TRANSCRIPTION_START_MODE, TRANSCRIPTION_LANGUAGE_CODE,
        MAX_SPEAKER_LABELS
    """

    def __init__(
        self,
        object_store: ObjectStoreClient,
        metadata_store: MetadataStoreClient,
        provider: TranscriptionProvider,
        start_mode: StartMode | str | None = None,
        language_code: str | None = None,
        max_speaker_labels: int | None = None,
    ) -> None:
        self._object_store = object_store
        self._store = metadata_store
        self._provider = provider

        mode = start_mode or os.environ.get(
            "TRANSCRIPTION_START_MODE", StartMode.EXPLICIT.value
        )
        try:
            self.start_mode = StartMode(mode)
        except ValueError as exc:
            raise ValidationError(
                f"Invalid TRANSCRIPTION_START_MODE: {mode!r}",
                field="TRANSCRIPTION_START_MODE",
            ) from exc

        self.language_code = language_code or os.environ.get(
            "TRANSCRIPTION_LANGUAGE_CODE", DEFAULT_LANGUAGE_CODE
        )
        if max_speaker_labels is None:
            max_speaker_labels = int(
                os.environ.get("MAX_SPEAKER_LABELS", DEFAULT_MAX_SPEAKER_LABELS)
            )
        self.max_speaker_labels = max_speaker_labels

    async def submit(
        self,
        audio: bytes,
        filename: str,
        source: JobSource = JobSource.FILE,
        content_type: str | None = None,
    ) -> str:
        """Submit audio for transcription.

        Args:
            audio: The audio blob.
            filename: Name of the file as the user knows it.
            source: Microphone recording or uploaded file.
            content_type: Declared MIME type; inferred from filename if None.

        Returns:
            The canonical job id.

        Raises:
            ValidationError: Bad input; nothing was written.
            TransientIOError: Storage failure; a row may exist and is FAILED
                if the upload itself failed.
            JobStartError: The provider rejected the job; the row is FAILED.
        """
        extension, media_type = resolve_media(filename, content_type)
        if not audio:
            raise ValidationError("Audio file is empty", field="audio")
        if len(audio) > MAX_UPLOAD_BYTES:
            raise ValidationError(
                f"File size too large ({len(audio)} bytes). Maximum size is "
                "200MB; split longer recordings into 1-hour segments.",
                field="audio",
            )

        key = new_object_key(extension)
        job_id = job_id_from_key(key)
        credential = self._object_store.get_write_credential(
            key,
            media_type,
            MAX_UPLOAD_BYTES,
            metadata={"originalfilename": quote(filename), "source": source.value},
        )

        job_name = None
        if self.start_mode is StartMode.EXPLICIT:
            job_name = compose_job_name(job_id, StartTrigger.EXPLICIT)

        await self._store.put_record(
            TranscriptionJob.new(
                job_id,
                original_file_name=filename,
                source=source,
                audio_object_key=key,
                job_name=job_name,
            )
        )
        logger.info(
            "Created job row",
            extra={"job_id": job_id, "job_name": job_name, "stage": "submit"},
        )

        try:
            await self._object_store.upload(credential, audio, filename)
        except TransientIOError as exc:
            await self._mark_failed(job_id, f"Upload failed: {exc}")
            raise

        if job_name is not None:
            await self._start(job_id, key, job_name)
        return job_id

    async def start_for_object(self, object_key: str) -> str | None:
        """Start a job for an object the store just reported as written.

        Returns:
            The managed-service job name, or None if the object was skipped.

        Raises:
            TransientIOError: If the object or the row cannot be read.
            JobStartError: The provider rejected the job; the row is FAILED.
        """
        extension = extension_of(object_key)
        job_id = job_id_from_key(object_key)

        if extension not in SUPPORTED_MEDIA:
            if extension in UNSUPPORTED_AUDIO_EXTENSIONS:
                logger.warning(
                    "Unsupported audio format .%s, marking job failed",
                    extension,
                    extra={"job_id": job_id, "stage": "storage_trigger"},
                )
                await self._mark_failed(
                    job_id,
                    f"Unsupported audio format .{extension}. "
                    "Please upload mp3, wav, m4a or mp4.",
                )
            else:
                logger.info(
                    "Ignoring non-audio object %s",
                    object_key,
                    extra={"stage": "storage_trigger"},
                )
            return None

        existing = await self._store.get_record(job_id)
        if existing is not None and (existing.is_terminal or existing.job_name):
            logger.info(
                "Job already started or finished, ignoring notification",
                extra={"job_id": job_id, "job_name": existing.job_name},
            )
            return None

        metadata = await self._read_metadata(object_key)
        original_file_name = (
            unquote(metadata.get("originalfilename", ""))
            or PurePosixPath(object_key).name
        )
        try:
            source = JobSource(metadata.get("source", ""))
        except ValueError:
            source = (
                JobSource.MICROPHONE if "recording" in object_key else JobSource.FILE
            )

        job_name = compose_job_name(job_id, StartTrigger.STORAGE, suffix=extension)
        if existing is None:
            await self._store.put_record(
                TranscriptionJob.new(
                    job_id,
                    original_file_name=original_file_name,
                    source=source,
                    audio_object_key=object_key,
                    job_name=job_name,
                )
            )
        await self._start(job_id, object_key, job_name)
        return job_name

    @retry_with_backoff(max_retries=3, base_delay=1.0)
    async def _read_metadata(self, object_key: str) -> dict[str, str]:
        # The object may not be readable immediately after the notification
        return self._object_store.head_metadata(object_key)

    async def _start(self, job_id: str, object_key: str, job_name: str) -> None:
        """Start the provider job and record its handle on the row.

        Raises:
            JobStartError: On any start failure; the row is marked FAILED.
        """
        try:
            media = self._object_store.media_location(object_key)
            managed = await self._provider.start_job(
                job_name,
                media,
                self.language_code,
                self.max_speaker_labels,
                job_id=job_id,
            )
        except (JobStartError, TransientIOError) as exc:
            logger.error(
                "Failed to start transcription job: %s",
                exc,
                extra={"job_id": job_id, "job_name": job_name, "error": str(exc)},
            )
            await self._mark_failed(job_id, f"Failed to start transcription: {exc}")
            if isinstance(exc, JobStartError):
                raise
            raise JobStartError(
                f"Failed to start transcription: {exc}",
                job_id=job_id,
                provider=self._provider.name,
            ) from exc

        fields: dict[str, Any] = {
            "jobName": job_name,
            "updatedAt": format_timestamp(utcnow()),
        }
        if managed.provider_job_id:
            fields["providerJobId"] = managed.provider_job_id
        await self._store.update_fields(
            job_id, fields, if_status=JobStatus.IN_PROGRESS
        )
        logger.info(
            "Started transcription job",
            extra={"job_id": job_id, "job_name": job_name, "stage": "start"},
        )

    async def _mark_failed(self, job_id: str, reason: str) -> None:
        """Move an IN_PROGRESS row to FAILED; a secondary failure is only logged."""
        try:
            await self._store.update_fields(
                job_id, failure_update(reason), if_status=JobStatus.IN_PROGRESS
            )
        except TransientIOError as exc:
            logger.error(
                "Could not mark job failed: %s",
                exc,
                extra={"job_id": job_id, "error": str(exc)},
            )
