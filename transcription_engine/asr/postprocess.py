"""Transcript post-processing: the fields stored on a completed job.

Reduces a Transcript to its display text, mean per-word confidence, and
duration (end time of the last recognized word).
"""

from dataclasses import dataclass

from transcription_engine.asr.interface import Transcript


@dataclass(frozen=True)
class TranscriptSummary:
    """Values written to a TranscriptionJob row on completion."""

    text: str
    confidence: float
    duration_seconds: float


def summarize_transcript(transcript: Transcript) -> TranscriptSummary:
    """Compute text, confidence and duration for a transcript.

    Text is the provider's rendered transcript when present, otherwise the
    recognized words joined by spaces. Confidence is the mean over recognized
    words, clamped to [0, 1]; 0.0 when nothing was recognized.

    Args:
        transcript: Parsed provider transcript.

    Returns:
        TranscriptSummary. Empty text for transcripts without speech.
    """
    words = transcript.words
    text = transcript.text.strip() or " ".join(
        word.text for word in words if word.text
    )

    if words:
        confidence = sum(word.confidence for word in words) / len(words)
        confidence = min(max(confidence, 0.0), 1.0)
        duration = max(words[-1].end_time, 0.0)
    else:
        confidence = 0.0
        duration = 0.0

    return TranscriptSummary(
        text=text,
        confidence=confidence,
        duration_seconds=duration,
    )
