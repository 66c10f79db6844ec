"""
Tests for zkv_relay.logging_config.
"""
from __future__ import annotations

import json
import logging

import pytest

from zkv_relay.logging_config import (
    RelayContextFilter,
    StructuredFormatter,
    attestation_id_var,
    log_stage,
    stage_var,
)


def make_record(message: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="zkv_relay.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )


class TestStructuredFormatter:
    """Tests for StructuredFormatter."""

    def test_includes_relay_context(self):
        token = stage_var.set("retrieval")
        id_token = attestation_id_var.set(7)
        try:
            record = make_record()
            RelayContextFilter().filter(record)
            data = json.loads(StructuredFormatter().format(record))
        finally:
            stage_var.reset(token)
            attestation_id_var.reset(id_token)

        assert data["message"] == "hello"
        assert data["stage"] == "retrieval"
        assert data["attestation_id"] == 7

    def test_omits_missing_context(self):
        record = make_record()
        RelayContextFilter().filter(record)
        data = json.loads(StructuredFormatter().format(record))

        assert "stage" not in data
        assert "attestation_id" not in data


class TestLogStage:
    """Tests for log_stage."""

    @pytest.mark.asyncio
    async def test_sets_and_restores_context(self, caplog):
        caplog.set_level(logging.INFO, logger="zkv_relay.logging_config")

        async with log_stage("relay", attestation_id=7):
            assert stage_var.get() == "relay"
            assert attestation_id_var.get() == 7

        assert stage_var.get() is None
        assert attestation_id_var.get() is None
        assert "Stage relay completed" in caplog.text

    @pytest.mark.asyncio
    async def test_logs_failure(self, caplog):
        caplog.set_level(logging.WARNING, logger="zkv_relay.logging_config")

        with pytest.raises(RuntimeError):
            async with log_stage("retrieval"):
                raise RuntimeError("boom")

        assert "Stage retrieval failed" in caplog.text
        assert "boom" in caplog.text
