"""Job naming and canonical id derivation.

The managed service only knows jobs by name. Names are composed as
``<prefix>-<jobId>-<epochMillis>[-<suffix>]`` where the prefix tells a
storage-triggered start (``transcription-job``) from an explicit one
(``manual-transcription``). derive_job_id() inverts the composition; it is
pure and total because the poller and the reconciliation sweep both match
rows by its output.
"""

from __future__ import annotations

import re
import time
import uuid
from enum import Enum
from pathlib import PurePosixPath

STORAGE_PREFIX = "transcription-job"
EXPLICIT_PREFIX = "manual-transcription"

# Storage-triggered names always carry a suffix; "audio" when the key has no extension
DEFAULT_SUFFIX = "audio"

KNOWN_MEDIA_SUFFIXES = ("mp3", "wav", "m4a", "mp4", "webm", "ogg")

# The managed service writes its result as <job name>.json
TRANSCRIPT_ARTIFACT_SUFFIX = ".json"


class StartTrigger(str, Enum):
    """How the managed-service job was started."""

    STORAGE = "storage"
    EXPLICIT = "explicit"


_PREFIXES: dict[StartTrigger, str] = {
    StartTrigger.STORAGE: STORAGE_PREFIX,
    StartTrigger.EXPLICIT: EXPLICIT_PREFIX,
}

# transcription-job-<id>-<ms>-<ext>
_STORAGE_PATTERN = re.compile(
    r"^transcription-job-(?P<job_id>.+)-(?P<epoch_ms>\d+)"
    r"-(?P<suffix>[A-Za-z0-9]*[A-Za-z][A-Za-z0-9]*)$"
)
# transcription-job-<id>-<ext>-<ms>, produced by sanitising the whole object key
_LEGACY_STORAGE_PATTERN = re.compile(
    r"^transcription-job-(?P<job_id>.+)"
    r"-(?P<suffix>[A-Za-z0-9]*[A-Za-z][A-Za-z0-9]*)-(?P<epoch_ms>\d+)$"
)
# manual-transcription-<id>-<ms>
_EXPLICIT_PATTERN = re.compile(
    r"^manual-transcription-(?P<job_id>.+)-(?P<epoch_ms>\d+)$"
)

_NAME_PATTERNS = (_STORAGE_PATTERN, _LEGACY_STORAGE_PATTERN, _EXPLICIT_PATTERN)

_KNOWN_SUFFIX_TAIL = re.compile(
    r"-(?:" + "|".join(KNOWN_MEDIA_SUFFIXES) + r")(?:-\d+)?$"
)
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def epoch_millis() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def compose_job_name(
    job_id: str,
    trigger: StartTrigger,
    epoch_ms: int | None = None,
    suffix: str | None = None,
) -> str:
    """Build the managed-service job name for a canonical job id.

    Args:
        job_id: Canonical job id.
        trigger: Storage-triggered or explicit start.
        epoch_ms: Timestamp component; defaults to now.
        suffix: Media extension for storage-triggered names. Ignored for
            explicit starts.

    Returns:
        The composed job name.

    Raises:
        ValueError: If job_id is empty.
    """
    if not job_id:
        raise ValueError("job_id is required")
    if epoch_ms is None:
        epoch_ms = epoch_millis()

    name = f"{_PREFIXES[trigger]}-{job_id}-{epoch_ms}"
    if trigger is StartTrigger.STORAGE:
        cleaned = _NON_ALNUM.sub("", suffix or "").lower()
        if not cleaned or cleaned.isdigit():
            cleaned = DEFAULT_SUFFIX
        name = f"{name}-{cleaned}"
    return name


def derive_job_id(job_name: str) -> str:
    """Map a managed-service job name back to its canonical job id.

    Tries the storage-triggered pattern, the legacy key-sanitised storage
    pattern, then the explicit-start pattern. An unparseable name yields the
    job name with known prefixes and media suffixes stripped.

    Never raises.
    """
    if not job_name:
        return ""

    for pattern in _NAME_PATTERNS:
        match = pattern.match(job_name)
        if match:
            return match.group("job_id")

    stripped = job_name
    for prefix in (f"{STORAGE_PREFIX}-", f"{EXPLICIT_PREFIX}-"):
        if stripped.startswith(prefix):
            stripped = stripped[len(prefix):]
            break
    return _KNOWN_SUFFIX_TAIL.sub("", stripped) or stripped


def media_suffix(job_name: str) -> str:
    """Media extension carried by a storage-triggered job name, if any."""
    for pattern in (_STORAGE_PATTERN, _LEGACY_STORAGE_PATTERN):
        match = pattern.match(job_name or "")
        if match:
            return match.group("suffix").lower()
    return ""


def job_id_from_key(object_key: str) -> str:
    """Canonical job id for an object key: its basename without extension.

    ``"3f2c...-1718000000000.wav"`` -> ``"3f2c...-1718000000000"``
    """
    name = PurePosixPath(object_key).name
    return name.split(".", 1)[0] or name


def extension_of(object_key: str) -> str:
    """Lowercased final extension of an object key, or an empty string."""
    suffix = PurePosixPath(object_key).suffix
    return suffix[1:].lower() if suffix else ""


def new_object_key(extension: str, epoch_ms: int | None = None) -> str:
    """Generate a fresh, unique object key ``<uuid4>-<epochMillis>.<ext>``."""
    if epoch_ms is None:
        epoch_ms = epoch_millis()
    return f"{uuid.uuid4()}-{epoch_ms}.{extension}"


def job_name_from_artifact(object_key: str) -> str | None:
    """Job name of a transcript artifact key (``<job name>.json``).

    Returns:
        The job name, or None when the key is not a transcript artifact
        written for a job this engine named.
    """
    name = PurePosixPath(object_key).name
    if not name.endswith(TRANSCRIPT_ARTIFACT_SUFFIX):
        return None
    job_name = name[: -len(TRANSCRIPT_ARTIFACT_SUFFIX)]
    if not job_name.startswith(tuple(f"{p}-" for p in _PREFIXES.values())):
        return None
    return job_name
