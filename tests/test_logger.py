# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import json
import logging
import os
from collections.abc import Generator
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from loguru import logger
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags

from coreason_oidc.utils.logger import configure_logging, redact_state


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None, None, None]:
    yield
    with patch.dict(os.environ, {}, clear=False):
        for name in ("COREASON_OIDC_LOG_LEVEL", "COREASON_OIDC_LOG_JSON", "COREASON_OIDC_LOG_FILE"):
            os.environ.pop(name, None)
        configure_logging()


def test_redact_state() -> None:
    assert redact_state("abcdefghijkl") == "abcdef..."
    assert redact_state("") == "<none>"
    assert redact_state(None) == "<none>"


def test_level_from_environment(capsys: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_OIDC_LOG_LEVEL": "warning"}):
        configure_logging()
        logger.info("quiet message")
        logger.warning("loud message")

    captured = capsys.readouterr()
    assert "quiet message" not in captured.err
    assert "loud message" in captured.err


def test_invalid_level_defaults_to_info(capsys: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_OIDC_LOG_LEVEL": "LOUDEST"}):
        configure_logging()
        logger.debug("debug message")
        logger.info("info message")

    captured = capsys.readouterr()
    assert "info message" in captured.err
    assert "debug message" not in captured.err


def test_json_output(capsys: pytest.CaptureFixture[str]) -> None:
    with patch.dict(os.environ, {"COREASON_OIDC_LOG_JSON": "true"}):
        configure_logging()
        logger.info("structured message")

    captured = capsys.readouterr()
    record = json.loads(captured.out.strip().splitlines()[-1])
    assert record["record"]["message"] == "structured message"
    assert captured.err == ""


def test_file_sink(tmp_path: Path) -> None:
    log_file = tmp_path / "oidc.log"
    with patch.dict(os.environ, {"COREASON_OIDC_LOG_FILE": str(log_file)}):
        configure_logging()
        logger.info("written to file")
        logger.complete()

    assert "written to file" in log_file.read_text()


def test_stdlib_records_forwarded() -> None:
    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(message.record["message"]), level="INFO")
    try:
        logging.getLogger("httpx").warning("from the standard library")
    finally:
        logger.remove(sink_id)

    assert "from the standard library" in messages


def test_trace_ids_injected() -> None:
    records: list[dict[str, Any]] = []
    sink_id = logger.add(lambda message: records.append(message.record), level="INFO")
    span_context = SpanContext(
        trace_id=0x1234ABCD, span_id=0x42, is_remote=False, trace_flags=TraceFlags(TraceFlags.SAMPLED)
    )
    try:
        with trace.use_span(NonRecordingSpan(span_context)):
            logger.info("inside span")
        logger.info("outside span")
    finally:
        logger.remove(sink_id)

    assert records[0]["extra"]["trace_id"] == format(0x1234ABCD, "032x")
    assert records[0]["extra"]["span_id"] == format(0x42, "016x")
    assert "trace_id" not in records[1]["extra"]
