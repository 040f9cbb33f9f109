"""Logging for the streaming layer.

All loggers live under the ``stepstream`` namespace. Records may carry the id of
the run they belong to (see get_run_logger); records without one are shown with
``-`` so concurrent runs can be told apart in one log.
"""

import logging
import os
from typing import Optional

NAMESPACE = "stepstream"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(run_id)s] %(message)s"

_configured = False


class RunIdFilter(logging.Filter):
    """Give every record a run_id attribute so LOG_FORMAT never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = "-"
        return True


def _make_handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RunIdFilter())
    return handler


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, force: bool = False) -> None:
    """Attach stdout (and optionally file) handlers to the package logger.

    STEPSTREAM_LOG_LEVEL and STEPSTREAM_LOG_FILE take precedence over the
    arguments. Calling again is a no-op unless force is set.
    """
    global _configured
    if _configured and not force:
        return

    log_level = getattr(logging, os.getenv("STEPSTREAM_LOG_LEVEL", level).upper(), logging.INFO)
    log_file = os.getenv("STEPSTREAM_LOG_FILE", log_file)

    package_logger = logging.getLogger(NAMESPACE)
    package_logger.setLevel(log_level)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    package_logger.addHandler(_make_handler(logging.StreamHandler(), log_level))
    if log_file:
        try:
            package_logger.addHandler(_make_handler(logging.FileHandler(log_file, encoding="utf-8"), log_level))
        except OSError:
            package_logger.warning("Could not open log file %s, logging to stdout only", log_file)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Module logger under the package namespace (pass __name__)."""
    if name == NAMESPACE or name.startswith(NAMESPACE + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{NAMESPACE}.{name}")


def get_run_logger(name: str, run_id: str) -> logging.LoggerAdapter:
    """Logger whose records are tagged with run_id."""
    return logging.LoggerAdapter(get_logger(name), {"run_id": run_id})
