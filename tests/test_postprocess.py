"""Tests for transcript summarisation."""

import pytest

from transcription_engine.asr.interface import Transcript, TranscriptSegment, TranscriptWord
from transcription_engine.asr.postprocess import summarize_transcript


def _word(text: str, start: float, end: float, confidence: float) -> TranscriptWord:
    return TranscriptWord(text=text, start_time=start, end_time=end, confidence=confidence)


class TestSummarizeTranscript:
    """Tests for summarize_transcript()."""

    def test_hello_world(self) -> None:
        transcript = Transcript(
            segments=[
                TranscriptSegment(
                    speaker_label="Speaker 1",
                    words=[_word("hello", 0.0, 0.5, 0.9), _word("world", 0.6, 1.2, 0.95)],
                )
            ],
            raw_response={},
        )
        summary = summarize_transcript(transcript)

        assert summary.text == "hello world"
        assert summary.confidence == pytest.approx(0.925)
        assert summary.duration_seconds == 1.2

    def test_prefers_rendered_text(self) -> None:
        transcript = Transcript(
            segments=[
                TranscriptSegment(speaker_label="Speaker 1", words=[_word("hi", 0.0, 0.3, 1.0)])
            ],
            raw_response={},
            text="Hi.",
        )
        assert summarize_transcript(transcript).text == "Hi."

    def test_duration_is_last_word_end_across_speakers(self) -> None:
        transcript = Transcript(
            segments=[
                TranscriptSegment(speaker_label="Speaker 1", words=[_word("a", 0.0, 1.0, 0.5)]),
                TranscriptSegment(speaker_label="Speaker 2", words=[_word("b", 1.0, 2.5, 0.7)]),
            ],
            raw_response={},
        )
        summary = summarize_transcript(transcript)
        assert summary.duration_seconds == 2.5
        assert summary.confidence == pytest.approx(0.6)

    def test_empty_transcript(self) -> None:
        summary = summarize_transcript(Transcript(segments=[], raw_response={}))
        assert summary.text == ""
        assert summary.confidence == 0.0
        assert summary.duration_seconds == 0.0

    def test_confidence_clamped(self) -> None:
        transcript = Transcript(
            segments=[
                TranscriptSegment(speaker_label="Speaker 1", words=[_word("x", 0.0, 0.1, 1.7)])
            ],
            raw_response={},
        )
        assert summarize_transcript(transcript).confidence == 1.0
