"""Tests for transcription_engine.observability.logger module."""

import json
import logging

from transcription_engine.observability.logger import (
    StructuredJsonFormatter,
    configure_logging,
)


def _record(msg: str = "hello %s", args=("world",), level=logging.INFO, **extra):
    record = logging.LogRecord(
        name="transcription_engine.test",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredJsonFormatter:
    """Tests for the JSON log line format."""

    def test_envelope_fields(self):
        parsed = json.loads(StructuredJsonFormatter().format(_record()))

        assert parsed["message"] == "hello world"
        assert parsed["severity"] == "INFO"
        assert parsed["logger"] == "transcription_engine.test"
        assert parsed["timestamp"].endswith("Z")

    def test_job_extras_included(self):
        record = _record(job_id="abc", job_name="manual-transcription-abc-1", attempt=3)
        parsed = json.loads(StructuredJsonFormatter().format(record))

        assert parsed["job_id"] == "abc"
        assert parsed["job_name"] == "manual-transcription-abc-1"
        assert parsed["attempt"] == 3

    def test_none_extras_omitted(self):
        parsed = json.loads(StructuredJsonFormatter().format(_record(job_id=None)))
        assert "job_id" not in parsed

    def test_severity_mapping(self):
        parsed = json.loads(
            StructuredJsonFormatter().format(_record(level=logging.WARNING))
        )
        assert parsed["severity"] == "WARNING"

    def test_exception_rendered(self):
        try:
            raise RuntimeError("kaput")
        except RuntimeError:
            import sys

            record = _record()
            record.exc_info = sys.exc_info()
        parsed = json.loads(StructuredJsonFormatter().format(record))
        assert parsed["exception"] == "kaput"


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_idempotent(self):
        root = logging.getLogger()
        before = list(root.handlers)
        try:
            configure_logging()
            configure_logging()
            structured = [
                h for h in root.handlers
                if isinstance(h.formatter, StructuredJsonFormatter)
            ]
            assert len(structured) == 1
        finally:
            for handler in list(root.handlers):
                if handler not in before:
                    root.removeHandler(handler)
