"""Queue consumer for object store write notifications.

Polls a Cloudflare Queue via the HTTP pull API. The audio and transcripts
buckets publish an event notification for every object write; each message
is validated, dispatched (audio objects start a job, transcript artifacts
complete one), then acked or nacked.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from transcription_engine.utils.errors import JobStartError, TransientIOError

logger = logging.getLogger(__name__)

WRITE_ACTIONS = frozenset({"PutObject", "CompleteMultipartUpload", "CopyObject"})

# Lease long enough to cover the metadata read retries and the provider start
VISIBILITY_TIMEOUT_MS = 120_000

DispatchFn = Callable[[str], Awaitable[Any]]


@dataclass
class StorageEvent:
    """Validated object store event notification."""

    bucket: str
    object_key: str
    action: str

    @property
    def is_write(self) -> bool:
        return self.action in WRITE_ACTIONS

    @classmethod
    def from_message_body(cls, body: dict[str, Any]) -> StorageEvent:
        """Deserialize and validate an event notification body.

        Args:
            body: Raw message body dict from queue.

        Returns:
            Validated StorageEvent.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        if not isinstance(body, dict):
            raise ValueError("Message body must be an object")

        obj = body.get("object")
        if not isinstance(obj, dict):
            raise ValueError("Missing or invalid 'object' in message")

        key = obj.get("key")
        if not key or not isinstance(key, str):
            raise ValueError("Missing or invalid 'object.key' in message")

        action = body.get("action")
        if not action or not isinstance(action, str):
            raise ValueError("Missing or invalid 'action' in message")

        bucket = body.get("bucket", "")
        if not isinstance(bucket, str):
            raise ValueError("Invalid 'bucket' in message")

        return cls(bucket=bucket, object_key=key, action=action)


@dataclass
class QueueMessage:
    """A message received from a Cloudflare Queue."""

    message_id: str
    lease_id: str
    body: dict[str, Any]


class StorageEventConsumer:
    """Cloudflare Queues HTTP pull consumer for storage write events.

    Configuration from environment variables:
        CF_QUEUE_API_URL, CF_QUEUE_ID_STORAGE_EVENTS, CF_API_TOKEN
    """

    def __init__(
        self,
        queue_api_url: str | None = None,
        queue_id: str | None = None,
        cf_api_token: str | None = None,
        poll_interval: float = 5.0,
        batch_size: int = 10,
    ) -> None:
        self.queue_api_url = (
            queue_api_url or os.environ.get("CF_QUEUE_API_URL", "")
        ).rstrip("/")
        self.queue_id = queue_id or os.environ.get("CF_QUEUE_ID_STORAGE_EVENTS", "")
        self.cf_api_token = cf_api_token or os.environ.get("CF_API_TOKEN", "")
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self._running = False

    @property
    def enabled(self) -> bool:
        return bool(self.queue_api_url and self.queue_id and self.cf_api_token)

    def _headers(self) -> dict[str, str]:
        """Build authentication headers for Cloudflare API."""
        return {
            "Authorization": f"Bearer {self.cf_api_token}",
            "Content-Type": "application/json",
        }

    def _url(self, action: str) -> str:
        return f"{self.queue_api_url}/queues/{self.queue_id}/messages/{action}"

    async def _pull_messages(self, client: httpx.AsyncClient) -> list[QueueMessage]:
        """Pull a batch of messages.

        Returns:
            List of QueueMessage objects. Empty list on error or no messages.
        """
        try:
            response = await client.post(
                self._url("pull"),
                headers=self._headers(),
                json={
                    "batch_size": self.batch_size,
                    "visibility_timeout_ms": VISIBILITY_TIMEOUT_MS,
                },
                timeout=30.0,
            )
            response.raise_for_status()
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            logger.error("Queue pull failed for %s: %s", self.queue_id, exc)
            return []

        data = response.json()
        messages_data = data.get("result", {}).get("messages", [])

        messages: list[QueueMessage] = []
        for msg in messages_data:
            try:
                body = msg["body"]
                # The HTTP pull API delivers JSON bodies as strings
                if isinstance(body, str):
                    body = json.loads(body)
                messages.append(
                    QueueMessage(
                        message_id=msg["id"],
                        lease_id=msg["lease_id"],
                        body=body,
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Malformed queue message structure: %s", exc)

        return messages

    async def _settle_message(
        self, action: str, lease_id: str, client: httpx.AsyncClient
    ) -> None:
        """Ack or nack one message; failures are logged only.

        Args:
            action: "ack" or "nack".
            lease_id: The lease ID of the message.
            client: Shared httpx client.
        """
        try:
            response = await client.post(
                self._url(action),
                headers=self._headers(),
                json={f"{action}s": [{"lease_id": lease_id}]},
                timeout=30.0,
            )
            response.raise_for_status()
        except (httpx.HTTPStatusError, httpx.RequestError) as exc:
            logger.error("%s failed for lease %s: %s", action.capitalize(), lease_id, exc)

    async def _process_message(
        self,
        message: QueueMessage,
        dispatch_fn: DispatchFn,
        client: httpx.AsyncClient,
    ) -> None:
        """Validate, dispatch, and ack/nack a single message.

        Transient failures are nacked so the queue redelivers them. A
        rejected job start is acked: its row has already been marked FAILED.
        """
        try:
            event = StorageEvent.from_message_body(message.body)
        except ValueError as exc:
            logger.warning("Invalid message %s: %s", message.message_id, exc)
            await self._settle_message("nack", message.lease_id, client)
            return

        if not event.is_write:
            logger.info("Ignoring %s event for %s", event.action, event.object_key)
            await self._settle_message("ack", message.lease_id, client)
            return

        logger.info(
            "Processing storage event: action=%s key=%s",
            event.action,
            event.object_key,
            extra={"stage": "storage_trigger"},
        )

        try:
            await dispatch_fn(event.object_key)
        except JobStartError as exc:
            logger.error(
                "Job start rejected for %s: %s",
                event.object_key,
                exc,
                extra={"job_id": exc.job_id, "error": str(exc)},
            )
            await self._settle_message("ack", message.lease_id, client)
        except TransientIOError as exc:
            logger.warning(
                "Transient failure for %s, returning to queue: %s",
                event.object_key,
                exc,
                extra={"error": str(exc)},
            )
            await self._settle_message("nack", message.lease_id, client)
        else:
            await self._settle_message("ack", message.lease_id, client)

    async def poll_once(self, dispatch_fn: DispatchFn) -> int:
        """Execute a single poll cycle.

        Args:
            dispatch_fn: Async callable(object_key).

        Returns:
            Number of messages processed.
        """
        processed = 0
        async with httpx.AsyncClient() as client:
            for msg in await self._pull_messages(client):
                await self._process_message(msg, dispatch_fn, client)
                processed += 1
        return processed

    async def run(self, dispatch_fn: DispatchFn) -> None:
        """Start the polling loop. Runs until stopped.

        Args:
            dispatch_fn: Async callable(object_key).
        """
        self._running = True
        logger.info("Storage event consumer starting poll loop")

        while self._running:
            try:
                count = await self.poll_once(dispatch_fn)
                if count > 0:
                    logger.info("Processed %d messages this cycle", count)
            except Exception:
                logger.error("Unexpected error in poll cycle", exc_info=True)

            await asyncio.sleep(self.poll_interval)

    def stop(self) -> None:
        """Signal the polling loop to stop."""
        self._running = False
        logger.info("Storage event consumer stopping")
