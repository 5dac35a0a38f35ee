"""Service entry point for the transcription job engine.

Serves the HTTP API with uvicorn and, when a storage event queue is
configured, runs the StorageEventConsumer alongside it. Shuts both down
gracefully on SIGTERM.
"""

import asyncio
import logging
import os

import uvicorn

from transcription_engine.api.app import create_app
from transcription_engine.jobs.service import TranscriptionService
from transcription_engine.observability.logger import configure_logging
from transcription_engine.queue.consumer import StorageEventConsumer

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 10


async def _run(service: TranscriptionService, consumer: StorageEventConsumer) -> None:
    """Run the API server and the storage event consumer concurrently.

    uvicorn owns SIGTERM/SIGINT handling; once the server has drained, the
    consumer is stopped and the service's clients are closed.
    """
    port = int(os.environ.get("PORT", "8080"))
    config = uvicorn.Config(
        create_app(service),
        host="0.0.0.0",
        port=port,
        log_config=None,
        timeout_graceful_shutdown=SHUTDOWN_TIMEOUT_SECONDS,
    )
    server = uvicorn.Server(config)
    logger.info("API server listening on port %d", port)

    consumer_task = None
    if consumer.enabled:
        consumer_task = asyncio.create_task(consumer.run(service.handle_object_write))
    else:
        logger.info("Storage event queue not configured, consumer disabled")

    try:
        await server.serve()
    finally:
        logger.info("Shutting down")
        consumer.stop()
        if consumer_task is not None:
            consumer_task.cancel()
            try:
                await asyncio.wait_for(consumer_task, SHUTDOWN_TIMEOUT_SECONDS)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
        await service.close()


def main() -> None:
    """Start the API server and storage event consumer."""
    configure_logging()
    logger.info("Transcription job engine starting")

    service = TranscriptionService.from_env()
    consumer = StorageEventConsumer()

    asyncio.run(_run(service, consumer))


if __name__ == "__main__":
    main()
