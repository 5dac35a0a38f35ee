"""Client-facing HTTP API."""

from transcription_engine.api.app import create_app

__all__ = ["create_app"]
