"""
Custom logging filters and configuration.

Provides logging utilities for filtering noisy client records and
configuring application-wide logging behavior.
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class HttpRequestFilter(logging.Filter):
    """Filter out per-request INFO lines emitted by HTTP clients."""

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Filter log records describing individual HTTP requests.

        Args:
            record: The log record to filter

        Returns:
            False if the record should be filtered out, True otherwise
        """
        # httpx logs every request at INFO ("HTTP Request: POST ...")
        if record.levelno >= logging.WARNING:
            return True
        return not record.getMessage().startswith("HTTP Request:")


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure root logging for the application.

    Args:
        level: Root log level
    """
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler()],
    )

    request_filter = HttpRequestFilter()
    for name in ("httpx", "openai"):
        logging.getLogger(name).addFilter(request_filter)
