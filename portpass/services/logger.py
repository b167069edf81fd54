"""Centralized logging service using loguru."""

import json
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from portpass.config import settings

# Configure loguru
LOG_DIR = Path(settings.log_dir)
LOG_DIR.mkdir(exist_ok=True)

# Remove default handler
logger.remove()

# Add console handler with color
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

# Add file handler
logger.add(
    LOG_DIR / "portpass_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {extra} - {message}",
    level="DEBUG",
    rotation="00:00",  # New file at midnight
    retention="7 days",  # Keep logs for 7 days
    compression="zip",
)

# Reduce noise from framework/network libraries
import logging

for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "openai._base_client",
    "asyncpg",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    status: str = "success",
    error: Optional[str] = None,
) -> None:
    """Log an LLM API call."""
    call_data = {
        "timestamp": _now(),
        "model": model,
        "caller": caller,
        "input_tokens": input_tokens,
        "output_tokens": output_tokens,
        "total_tokens": input_tokens + output_tokens,
        "duration_ms": duration_ms,
        "status": status,
        "error": error,
    }
    if error:
        logger.error(f"LLM_CALL_FAILED: {json.dumps(call_data)}")
    else:
        logger.info(f"LLM_CALL: {json.dumps(call_data)}")


def log_research_step(
    run_id: str,
    step_type: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log a research step."""
    step_data = {
        "timestamp": _now(),
        "run_id": run_id,
        "step_type": step_type,
        "status": status,
        "data": data,
    }
    logger.info(f"RESEARCH_STEP: {json.dumps(step_data, default=str)}")


def log_db_operation(
    operation: str,
    table: str,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a database operation."""
    op_data = {
        "timestamp": _now(),
        "operation": operation,
        "table": table,
        "status": status,
        "details": details,
        "error": error,
    }
    if error:
        logger.error(f"DB_OPERATION_FAILED: {json.dumps(op_data)}")
    else:
        logger.info(f"DB_OPERATION: {json.dumps(op_data)}")


def log_event(
    event_type: str,
    message: str,
    **kwargs,
) -> None:
    """Log a generic event."""
    event_data = {
        "timestamp": _now(),
        "event_type": event_type,
        "message": message,
        **kwargs,
    }
    logger.info(f"EVENT: {json.dumps(event_data, default=str)}")


class RunObserver:
    """Structured log/metric sink for a single research run.

    One observer is created per run and passed down the call chain, so
    stage timings and query outcomes are attributed to the run that
    produced them without any module-level state.
    """

    def __init__(self, run_id: str, entity_type: str, entity_id: str):
        self.run_id = run_id
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.timings: dict[str, int] = {}
        self._log = logger.bind(run_id=run_id, entity_type=entity_type, entity_id=entity_id)
        self._stage_started: dict[str, float] = {}

    def stage_started(self, stage: str, **data: Any) -> None:
        self._stage_started[stage] = time.monotonic()
        log_research_step(self.run_id, stage, "started", data or None)

    def stage_completed(self, stage: str, **data: Any) -> None:
        started = self._stage_started.pop(stage, None)
        if started is not None:
            self.timings[stage] = int((time.monotonic() - started) * 1000)
        log_research_step(
            self.run_id,
            stage,
            "completed",
            {"duration_ms": self.timings.get(stage), **data},
        )

    def query_succeeded(self, query_type: str, attempt: int, sources: int, chars: int) -> None:
        self._log.info(
            f"Query {query_type} succeeded on attempt {attempt} "
            f"({chars} chars, {sources} sources)"
        )

    def query_failed(self, query_type: str, attempt: int, error: BaseException, retryable: bool) -> None:
        self._log.warning(
            f"Query {query_type} failed on attempt {attempt} "
            f"(retryable={retryable}): {error!r}"
        )

    def retry_scheduled(self, query_types: list[str], backoff_seconds: float) -> None:
        self._log.info(f"Retrying {len(query_types)} queries after {backoff_seconds:g}s: {query_types}")

    def llm_call(
        self,
        model: str,
        caller: str,
        duration_ms: int,
        input_tokens: int = 0,
        output_tokens: int = 0,
        error: Optional[str] = None,
    ) -> None:
        log_llm_call(
            model=model,
            caller=caller,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            duration_ms=duration_ms,
            status="error" if error else "success",
            error=error,
        )

    def degraded(self, stage: str, reason: str) -> None:
        self._log.warning(f"Stage {stage} degraded to fallback: {reason}")

    def info(self, message: str) -> None:
        self._log.info(message)

    def error(self, message: str) -> None:
        self._log.error(message)

    def exception(self, message: str) -> None:
        self._log.exception(message)
