"""Managed transcription service providers."""

from transcription_engine.asr.registry import get_transcription_provider

__all__ = ["get_transcription_provider"]
