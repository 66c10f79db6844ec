"""Structured logging configuration with relay context.

This module provides:
- Context variables for the current stage and attestation id
- A logging filter that stamps them onto every record
- A JSON formatter for structured logs
- A stage context manager that logs start, completion and duration
"""
from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

logger = logging.getLogger(__name__)

# Context variables for relay tracking
stage_var: ContextVar[Optional[str]] = ContextVar("stage", default=None)
attestation_id_var: ContextVar[Optional[int]] = ContextVar("attestation_id", default=None)

_STANDARD_ATTRIBUTES = frozenset((
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "stage",
    "attestation_id",
))


class RelayContextFilter(logging.Filter):
    """Logging filter that adds the relay stage and attestation id to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.stage = stage_var.get()
        record.attestation_id = attestation_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if getattr(record, "stage", None):
            log_data["stage"] = record.stage

        if getattr(record, "attestation_id", None) is not None:
            log_data["attestation_id"] = record.attestation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRIBUTES:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure logging for the relay process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(stage)s attestation=%(attestation_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(RelayContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(RelayContextFilter())
        root_logger.addHandler(file_handler)


def set_attestation_context(attestation_id: Optional[int]) -> None:
    """Set attestation id in logging context."""
    attestation_id_var.set(attestation_id)


@asynccontextmanager
async def log_stage(
    stage: str,
    attestation_id: Optional[int] = None,
) -> AsyncIterator[None]:
    """
    Track one relay stage in the logging context.

    Usage:
        async with log_stage("retrieval", attestation_id=7):
            proof = await retriever.fetch(handle)
    """
    stage_token = stage_var.set(stage)
    id_token = None
    if attestation_id is not None:
        id_token = attestation_id_var.set(attestation_id)

    started = time.monotonic()
    logger.debug(f"Stage {stage} started")
    try:
        yield
    except BaseException as e:
        duration_ms = (time.monotonic() - started) * 1000
        logger.warning(f"Stage {stage} failed after {duration_ms:.0f}ms: {type(e).__name__}: {e}")
        raise
    else:
        duration_ms = (time.monotonic() - started) * 1000
        logger.info(f"Stage {stage} completed in {duration_ms:.0f}ms")
    finally:
        stage_var.reset(stage_token)
        if id_token is not None:
            attestation_id_var.reset(id_token)
