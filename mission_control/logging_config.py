import logging
import sys
import uuid
from logging.handlers import RotatingFileHandler

from flask import Flask, g, has_request_context, request

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s [%(correlation_id)s]: %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Stamps each record with the current request's correlation id, or '-'."""

    def filter(self, record: logging.LogRecord) -> bool:
        correlation_id = "-"
        if has_request_context():
            correlation_id = getattr(g, "correlation_id", "-")
        record.correlation_id = correlation_id
        return True


def assign_correlation_id() -> str:
    """Reuses an upstream request id when one was forwarded, else mints one."""
    g.correlation_id = (
        request.headers.get("CF-Ray")
        or request.headers.get("X-Request-ID")
        or uuid.uuid4().hex[:16]
    )
    return g.correlation_id


def setup_logging(app: Flask) -> None:
    log_level = app.config.get("LOG_LEVEL", "INFO").upper()

    # Clear existing handlers
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    correlation = CorrelationIdFilter()

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(formatter)
    ch.addFilter(correlation)
    handlers = [ch]

    log_file = app.config.get("LOG_FILE")
    if log_file:
        fh = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
        fh.setFormatter(formatter)
        fh.addFilter(correlation)
        handlers.append(fh)

    logging.basicConfig(level=log_level, handlers=handlers)
    logging.getLogger("werkzeug").setLevel(logging.INFO if not app.debug else logging.DEBUG)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
