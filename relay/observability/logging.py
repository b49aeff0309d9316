# ==== STRUCTURED LOGGING WITH LOGURU ==== #

"""
Structured logging with loguru for the Feishu relay.

Request handlers and the detached workers (dispatch queue, janitor) log
through the same JSON sinks. Every record carries the module name, the
correlation id when one is bound, and the OpenTelemetry trace ids when a
span is recording. Credential material is masked before it reaches a sink.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger
from opentelemetry import trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor


# Fields that must never be written out in clear
REDACTED_FIELDS = frozenset({"app_secret", "tenant_access_token", "token", "authorization"})
REDACTED = "***"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "multipart")


class InterceptHandler(logging.Handler):
    """Route standard-library log records (uvicorn, httpx) through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _redact(record: Dict[str, Any]) -> None:
    extra = record["extra"]
    for key in extra.keys() & REDACTED_FIELDS:
        extra[key] = REDACTED


def _file_sink(directory: Path, name: str, level: str, rotation: str, retention: str) -> None:
    logger.add(
        directory / f"{name}_{{time:YYYY-MM-DD}}.log",
        rotation=rotation,
        retention=retention,
        compression="gz",
        serialize=True,
        level=level,
        enqueue=True,
        backtrace=True,
        diagnose=False,
    )


def init_logging(level: str = "INFO", log_dir: Optional[str] = "logs") -> None:
    """Initialize structured logging with loguru.

    Args:
        level: Minimum level for the console sink
        log_dir: Directory for rotating log files; empty or None logs to
            stdout only
    """
    logger.remove()
    logger.configure(patcher=_redact)

    logger.add(
        sys.stdout,
        format="{message}",
        serialize=True,
        level=level.upper(),
        enqueue=True,
        colorize=False,
        backtrace=True,
        diagnose=False,
    )

    if log_dir:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        _file_sink(directory, "relay", "DEBUG", rotation="100 MB", retention="30 days")
        # Delivery and credential failures are kept longer
        _file_sink(directory, "relay_errors", "ERROR", rotation="50 MB", retention="90 days")

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    try:
        LoggingInstrumentor().instrument(set_logging_format=False)
    except Exception as e:
        logger.warning(f"Failed to setup OpenTelemetry logging: {e}")

    logger.bind(level=level, log_dir=log_dir or None).info("Relay logging initialized")


def _trace_context() -> Dict[str, str]:
    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return {}
    return {
        "trace_id": format(span_context.trace_id, "032x"),
        "span_id": format(span_context.span_id, "016x"),
    }


class ContextualLogger:
    """Loguru logger that binds per-call keyword fields and trace ids.

    Usage:
        logger = get_logger(__name__)
        logger.info("Submission relayed", status="queued", client_key=ip)
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logger.bind(logger_name=name)

    def _log(self, level: str, msg: str, fields: Dict[str, Any]) -> None:
        bound = self.logger.bind(**_trace_context(), **fields)
        # Depth 2 attributes the record to our caller, not this wrapper
        bound.opt(depth=2).log(level, msg)

    def debug(self, msg: str, **fields: Any) -> None:
        self._log("DEBUG", msg, fields)

    def info(self, msg: str, **fields: Any) -> None:
        self._log("INFO", msg, fields)

    def warning(self, msg: str, **fields: Any) -> None:
        self._log("WARNING", msg, fields)

    def error(self, msg: str, **fields: Any) -> None:
        self._log("ERROR", msg, fields)

    def exception(self, msg: str, **fields: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        bound = self.logger.bind(**_trace_context(), **fields)
        bound.opt(depth=1, exception=True).error(msg)


def get_logger(name: str) -> ContextualLogger:
    """Get a contextual logger for a module (pass __name__)."""
    return ContextualLogger(name)
