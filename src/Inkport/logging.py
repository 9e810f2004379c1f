# logging.py

import logging
import os
from logging.handlers import RotatingFileHandler

import structlog
from structlog.contextvars import merge_contextvars

from Inkport.config import Settings

_SENSITIVE_SUFFIXES = ("_key", "_token", "_secret", "_password")


def setup_logging(settings: Settings | None = None, *, verbose: bool = False) -> None:
    """Initialize structlog + stdlib logging.

    Console output is JSON at the configured level (DEBUG when ``verbose``).
    When settings enable it, a rotating JSONL file handler is added as well.
    """
    level_name = (settings.logging_level if settings else "INFO").upper()
    if verbose:
        level_name = "DEBUG"
    level = getattr(logging, level_name, logging.INFO)

    logging.captureWarnings(True)

    # ProcessorFormatter renders BOTH structlog and stdlib/third-party logs as JSON
    processor_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            # Pull run-local context (run_id, entity) from contextvars
            merge_contextvars,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=[
            structlog.processors.add_log_level,
            merge_contextvars,
        ],
    )

    root_handlers: list[logging.Handler] = []
    enabled = True if settings is None else settings.logging_enabled

    console_lvl_name = "DEBUG" if verbose else (
        settings.logging_console if settings is not None else level_name
    )
    if enabled and (console_lvl_name or "").upper() != "NONE":
        ch = logging.StreamHandler()
        ch.setLevel(getattr(logging, console_lvl_name.upper(), level))
        ch.setFormatter(processor_formatter)
        root_handlers.append(ch)

    file_lvl_name = settings.logging_file if settings is not None else "NONE"
    if enabled and (file_lvl_name or "").upper() != "NONE":
        path = settings.logging_file_path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        fh = RotatingFileHandler(
            path,
            maxBytes=settings.logging_max_bytes,
            backupCount=settings.logging_backup_count,
        )
        fh.setLevel(getattr(logging, file_lvl_name.upper(), level))
        fh.setFormatter(processor_formatter)
        root_handlers.append(fh)

    # Install root handlers; force=True to replace any prior configuration
    logging.basicConfig(level=level, handlers=root_handlers, force=True)

    # Keep driver chatter out of the seed log unless debugging
    for name in ("httpx", "httpcore", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)

    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def redact_settings(settings: Settings) -> dict:
    """Return a redacted dict of settings safe for logging.

    Secrets, tokens and passwords are replaced with "[REDACTED]".
    """
    data = settings.model_dump()
    for k in list(data.keys()):
        if k.endswith(_SENSITIVE_SUFFIXES) and data[k] is not None:
            data[k] = "[REDACTED]"
    # Credentials embedded in the database URL
    try:
        from sqlalchemy.engine import make_url

        url = make_url(settings.database_url)
        if url.password:
            data["database_url"] = url.render_as_string(hide_password=True)
    except Exception:
        data["database_url"] = "[REDACTED]"
    return data
