"""Logging setup: stdlib logging routed into loguru, plus a stage timer."""

import inspect
import logging
import sys
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Optional, Union

from loguru import logger

from hanzicards import constants

__all__ = ["logger", "setup_logging", "pipeline_stage_logger"]


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        # Get corresponding Loguru level if it exists.
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message.
        frame, depth = inspect.currentframe(), 0
        while frame:
            filename = frame.f_code.co_filename
            is_logging = filename == logging.__file__
            is_frozen = "importlib" in filename and "_bootstrap" in filename
            if depth > 0 and not (is_logging or is_frozen):
                break
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(
    level: Union[str, int] = constants.LOG_LEVEL,
    json_format: Optional[bool] = None,
    log_file: Optional[str] = None,
) -> None:
    """Route all logging through loguru.

    Args:
        level: Minimum level for the stdout sink
        json_format: Serialize records as JSON (default: LOG_FORMAT == "json")
        log_file: Optional extra file sink
    """
    if json_format is None:
        json_format = constants.LOG_FORMAT == "json"

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    logger.remove()  # Remove default configuration
    logger.add(
        sys.stdout,
        level=level,
        backtrace=True,
        diagnose=False,
        serialize=json_format,
    )
    if log_file:
        logger.add(log_file, level=level, serialize=json_format)

    # boto and http clients are noisy at DEBUG
    for name in ("botocore", "boto3", "urllib3", "httpx"):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.info(f"Logging setup completed: level={level}, json={json_format}")


@contextmanager
def pipeline_stage_logger(stage_name: str, **context):
    """Log entry, exit and failure of a pipeline stage with its duration.

    Example:
        >>> with pipeline_stage_logger("collection_enrichment", collection_id="d1") as log:
        ...     log.info("Queueing cards")
    """
    stage_logger = logger.bind(stage=stage_name, **context)
    start_time = datetime.now(UTC)
    stage_logger.info(f"Starting pipeline stage: {stage_name}")

    try:
        yield stage_logger
    except Exception as e:
        duration_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
        stage_logger.bind(status="failed", duration_ms=round(duration_ms, 2)).error(
            f"Failed pipeline stage: {stage_name}: {str(e)[:200]}"
        )
        raise

    duration_ms = (datetime.now(UTC) - start_time).total_seconds() * 1000
    stage_logger.bind(status="completed", duration_ms=round(duration_ms, 2)).info(
        f"Completed pipeline stage: {stage_name} ({duration_ms:.0f}ms)"
    )
