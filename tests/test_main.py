"""Tests for transcription_engine.main shutdown behavior."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from transcription_engine.main import SHUTDOWN_TIMEOUT_SECONDS, _run


def _service():
    service = MagicMock()
    service.close = AsyncMock()
    return service


class TestRun:
    """Tests for the server/consumer lifecycle in _run()."""

    def test_shutdown_timeout_within_platform_grace_period(self) -> None:
        assert 0 < SHUTDOWN_TIMEOUT_SECONDS < 30

    @pytest.mark.asyncio
    async def test_consumer_started_and_stopped(self) -> None:
        service = _service()
        consumer = MagicMock()
        consumer.enabled = True
        started = asyncio.Event()
        dispatched_to = []

        async def hanging_run(dispatch_fn):
            dispatched_to.append(dispatch_fn)
            started.set()
            await asyncio.sleep(9999)

        consumer.run = hanging_run

        async def serve():
            await started.wait()

        with patch("transcription_engine.main.uvicorn.Server") as mock_server:
            mock_server.return_value.serve = serve
            await asyncio.wait_for(_run(service, consumer), timeout=2.0)

        assert dispatched_to == [service.handle_object_write]
        consumer.stop.assert_called_once()
        service.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disabled_consumer_not_started(self) -> None:
        service = _service()
        consumer = MagicMock()
        consumer.enabled = False

        with patch("transcription_engine.main.uvicorn.Server") as mock_server:
            mock_server.return_value.serve = AsyncMock()
            await _run(service, consumer)

        consumer.run.assert_not_called()
        service.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_server_config(self, monkeypatch) -> None:
        monkeypatch.setenv("PORT", "9090")
        consumer = MagicMock()
        consumer.enabled = False

        with patch("transcription_engine.main.uvicorn") as mock_uvicorn:
            mock_uvicorn.Server.return_value.serve = AsyncMock()
            await _run(_service(), consumer)

        kwargs = mock_uvicorn.Config.call_args.kwargs
        assert kwargs["port"] == 9090
        assert kwargs["log_config"] is None
        assert kwargs["timeout_graceful_shutdown"] == SHUTDOWN_TIMEOUT_SECONDS

    @pytest.mark.asyncio
    async def test_service_closed_when_server_fails(self) -> None:
        service = _service()
        consumer = MagicMock()
        consumer.enabled = False

        with patch("transcription_engine.main.uvicorn.Server") as mock_server:
            mock_server.return_value.serve = AsyncMock(side_effect=OSError("port in use"))
            with pytest.raises(OSError):
                await _run(service, consumer)

        service.close.assert_awaited_once()
