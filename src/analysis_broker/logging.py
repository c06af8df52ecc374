"""structlog configuration and request-scoped logging context.

Provides request ID generation, a context manager that binds analysis
request metadata to every log entry, and structured log configuration for
console and JSON output with optional file logging.
"""

from __future__ import annotations

import logging
import secrets
import sys
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Request ID
# ---------------------------------------------------------------------------


def generate_request_id() -> str:
    """Generate a unique analysis request identifier.

    Returns:
        A string of the form ``analysis-<epoch ms>-<6 hex chars>``.
    """
    return f"analysis-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


# ---------------------------------------------------------------------------
# structlog configuration
# ---------------------------------------------------------------------------


_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | Path | None = None,
    request_id: str | None = None,
) -> None:
    """Configure structlog for the application.

    Sets up structlog with shared processors and a format-specific
    renderer. Configures the stdlib logging root to respect the given
    level and optionally adds a file handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: Output format: ``"console"`` for human-readable or
            ``"json"`` for machine-parseable.
        log_file: Optional file path for log output (in addition to stderr).
        request_id: Optional request ID to bind to all log entries.

    Raises:
        ValueError: If ``level`` is not a recognized log level.
    """
    level_upper = level.upper()
    if level_upper not in _VALID_LEVELS:
        msg = f"Invalid log level: {level!r}. Must be one of {sorted(_VALID_LEVELS)}"
        raise ValueError(msg)

    numeric_level = getattr(logging, level_upper)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: structlog.types.Processor
    if fmt == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Re-configuration must not stack handlers
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(numeric_level)
    root_logger.addHandler(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(numeric_level)
        root_logger.addHandler(file_handler)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)

    if request_id:
        structlog.contextvars.bind_contextvars(request_id=request_id)


# ---------------------------------------------------------------------------
# Request logging context manager
# ---------------------------------------------------------------------------


@contextmanager
def request_logging_context(
    request_id: str,
    kind: str = "",
    **extra: Any,
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Context manager that binds analysis-request metadata to structlog.

    Logs ``analysis_start`` on entry and ``analysis_end`` on exit, and
    binds the request ID and kind to all log entries within the context.
    Contextvars are task-local, so concurrent requests do not leak into
    each other's log lines.

    Args:
        request_id: Identifier of the analysis request.
        kind: Analysis kind (codebase, security, ...).
        **extra: Additional key-value pairs to bind.

    Yields:
        A bound structlog logger with request context.

    Example::

        with request_logging_context(request_id, kind="security") as log:
            log.info("quota_admitted")
    """
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        analysis_kind=kind,
        **extra,
    )

    log: structlog.stdlib.BoundLogger = structlog.get_logger("analysis")
    log.info("analysis_start")

    try:
        yield log
    except Exception:
        log.exception("analysis_error")
        raise
    finally:
        log.info("analysis_end")
        structlog.contextvars.unbind_contextvars(
            "request_id", "analysis_kind", *extra.keys()
        )
