"""
structlog setup for the extraction service.

Events are emitted as JSON lines (console output under DEBUG). Every event
carries the service name and pipeline version so batch logs can be tied back
to the extraction rules that produced them.
"""

import logging
import sys

import structlog

from app.config import settings

# Source text can be the whole workbook; keep log lines bounded
MAX_TEXT_FIELD_CHARS = 500
TEXT_FIELDS = ("raw_text", "document_text", "ocr_text", "response_text")

NOISY_LOGGERS = {
    "pdfminer": logging.WARNING,
    "pdfplumber": logging.WARNING,
    "PIL": logging.WARNING,
    "httpx": logging.WARNING,
    "uvicorn.access": logging.WARNING,
}


def truncate_text_fields(logger, method_name, event_dict):
    for name in TEXT_FIELDS:
        value = event_dict.get(name)
        if isinstance(value, str) and len(value) > MAX_TEXT_FIELD_CHARS:
            event_dict[name] = f"{value[:MAX_TEXT_FIELD_CHARS]}...(+{len(value) - MAX_TEXT_FIELD_CHARS} chars)"
    return event_dict


def setup_logging() -> None:
    """Configure structlog and send stdlib records (uvicorn, SQLAlchemy) through the same renderer."""
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        truncate_text_fields,
        structlog.processors.format_exc_info,
    ]

    renderer = (
        structlog.dev.ConsoleRenderer()
        if settings.DEBUG
        # Chinese labels stay readable in the JSON output
        else structlog.processors.JSONRenderer(ensure_ascii=False)
    )

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    ))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.DB_ECHO else logging.WARNING)

    structlog.contextvars.bind_contextvars(
        service=settings.APP_NAME,
        pipeline_version=settings.PIPELINE_VERSION,
    )
