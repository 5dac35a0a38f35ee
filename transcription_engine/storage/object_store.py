"""S3-compatible object store client (Cloudflare R2 or AWS S3).

Issues presigned write credentials for fresh object keys, uploads blobs
through them, and reads objects, object metadata and provider transcript
artifacts back.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from urllib.parse import urlparse

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from transcription_engine.asr.interface import MediaLocation
from transcription_engine.jobs.naming import extension_of
from transcription_engine.utils.errors import StorageError

logger = logging.getLogger(__name__)

WRITE_CREDENTIAL_TTL_SECONDS = 300
READ_URL_TTL_SECONDS = 3600


@dataclass(frozen=True)
class WriteCredential:
    """A time-limited permission to write exactly one object key."""

    url: str
    fields: dict[str, str]
    key: str
    expires_at: datetime


def _error_code(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "Unknown")
    return type(exc).__name__


class ObjectStoreClient:
    """S3-compatible client for the audio bucket.

    Reads configuration from environment variables:
        OBJECT_STORE_ENDPOINT, AUDIO_BUCKET, OBJECT_STORE_ACCESS_KEY_ID,
        OBJECT_STORE_SECRET_ACCESS_KEY, OBJECT_STORE_REGION
    """

    def __init__(
        self,
        endpoint_url: str | None = None,
        bucket: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        region: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url or os.environ.get(
            "OBJECT_STORE_ENDPOINT", ""
        )
        self.bucket = bucket or os.environ.get("AUDIO_BUCKET", "")
        self.access_key_id = access_key_id or os.environ.get(
            "OBJECT_STORE_ACCESS_KEY_ID", ""
        )
        self.secret_access_key = secret_access_key or os.environ.get(
            "OBJECT_STORE_SECRET_ACCESS_KEY", ""
        )
        self.region = region or os.environ.get("OBJECT_STORE_REGION", "auto")

        if not self.bucket:
            raise StorageError("AUDIO_BUCKET is required", operation="init")

        client_kwargs: dict = {"region_name": self.region}
        # No endpoint means plain AWS S3 with the default credential chain
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url
        if self.access_key_id and self.secret_access_key:
            client_kwargs["aws_access_key_id"] = self.access_key_id
            client_kwargs["aws_secret_access_key"] = self.secret_access_key

        self._client = boto3.client("s3", **client_kwargs)
        self._http = http_client or httpx.AsyncClient(timeout=60.0)

    async def close(self) -> None:
        """Close the HTTP client used for uploads."""
        await self._http.aclose()

    def get_write_credential(
        self,
        key: str,
        content_type: str,
        max_bytes: int,
        metadata: dict[str, str] | None = None,
        expires_in: int = WRITE_CREDENTIAL_TTL_SECONDS,
    ) -> WriteCredential:
        """Create a presigned POST credential for a single object key.

        The credential pins the key, the content type and the metadata, and
        limits the body to ``max_bytes``.

        Args:
            key: Object key the credential is valid for.
            content_type: MIME type the upload must declare.
            max_bytes: Upper bound on the object size.
            metadata: User metadata stored with the object.
            expires_in: Credential lifetime in seconds (default 300).

        Returns:
            WriteCredential with the POST URL and the form fields to send.

        Raises:
            StorageError: If the credential cannot be generated.
        """
        fields: dict[str, str] = {"Content-Type": content_type}
        conditions: list = [
            {"Content-Type": content_type},
            ["content-length-range", 1, max_bytes],
        ]
        for name, value in (metadata or {}).items():
            meta_key = f"x-amz-meta-{name.lower()}"
            fields[meta_key] = value
            conditions.append({meta_key: value})

        try:
            presigned = self._client.generate_presigned_post(
                Bucket=self.bucket,
                Key=key,
                Fields=fields,
                Conditions=conditions,
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(
                f"Failed to create write credential for '{key}': "
                f"{_error_code(exc)}",
                operation="get_write_credential",
            ) from exc

        return WriteCredential(
            url=presigned["url"],
            fields=dict(presigned["fields"]),
            key=key,
            expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
        )

    async def upload(
        self, credential: WriteCredential, data: bytes, filename: str = "audio"
    ) -> None:
        """Upload a blob with a presigned POST credential.

        Raises:
            StorageError: If the credential has expired or the upload fails.
        """
        if datetime.now(UTC) >= credential.expires_at:
            raise StorageError(
                f"Write credential for '{credential.key}' has expired",
                operation="upload",
            )

        content_type = credential.fields.get(
            "Content-Type", "application/octet-stream"
        )
        try:
            response = await self._http.post(
                credential.url,
                data=credential.fields,
                files={"file": (filename, data, content_type)},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise StorageError(
                f"Upload of '{credential.key}' failed: "
                f"HTTP {exc.response.status_code}",
                operation="upload",
            ) from exc
        except httpx.RequestError as exc:
            raise StorageError(
                f"Upload of '{credential.key}' failed: {exc}",
                operation="upload",
            ) from exc

        logger.info(
            "Uploaded %d bytes to %s",
            len(data),
            credential.key,
            extra={"stage": "upload"},
        )

    def fetch_object(self, key: str, bucket: str | None = None) -> bytes:
        """Retrieve an object by key.

        Args:
            key: The object key.
            bucket: Bucket to read from; defaults to the audio bucket.

        Returns:
            Raw bytes of the object.

        Raises:
            StorageError: If the object cannot be retrieved.
        """
        bucket = bucket or self.bucket
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(
                f"Failed to fetch object '{bucket}/{key}': {_error_code(exc)}",
                operation="fetch_object",
            ) from exc

    def fetch_uri(self, uri: str) -> bytes:
        """Retrieve an object by ``s3://bucket/key`` or path-style HTTPS URL.

        Raises:
            StorageError: If the URI cannot be parsed or the object read.
        """
        parsed = urlparse(uri)
        path = parsed.path.lstrip("/")
        if parsed.scheme == "s3":
            bucket, key = parsed.netloc, path
        elif parsed.scheme in ("http", "https") and "/" in path:
            bucket, key = path.split("/", 1)
        else:
            raise StorageError(
                f"Unsupported object URI: {uri}", operation="fetch_uri"
            )
        if not bucket or not key:
            raise StorageError(
                f"Unsupported object URI: {uri}", operation="fetch_uri"
            )
        return self.fetch_object(key, bucket=bucket)

    def head_metadata(self, key: str) -> dict[str, str]:
        """Read an object's user metadata and content type.

        Returns:
            Lowercased user metadata plus ``content-type``.

        Raises:
            StorageError: If the object does not exist (yet) or cannot be read.
        """
        try:
            response = self._client.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(
                f"Failed to read metadata for '{key}': {_error_code(exc)}",
                operation="head_metadata",
            ) from exc

        metadata = {k.lower(): v for k, v in response.get("Metadata", {}).items()}
        if response.get("ContentType"):
            metadata["content-type"] = response["ContentType"]
        return metadata

    def media_location(self, key: str) -> MediaLocation:
        """Describe where a provider can read an uploaded object.

        Raises:
            StorageError: If the read URL cannot be generated.
        """
        try:
            url = self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=READ_URL_TTL_SECONDS,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(
                f"Failed to create read URL for '{key}': {_error_code(exc)}",
                operation="media_location",
            ) from exc

        return MediaLocation(
            uri=f"s3://{self.bucket}/{key}",
            media_format=extension_of(key),
            url=url,
        )
