# provenance/logging_config.py
"""
Logging setup for the provenance CLI and for services embedding the core.

Library modules only call logging.getLogger(__name__); handlers are installed
here, once, by the application.
"""

import json
import logging
import sys
import time
from typing import Optional

LOG_FORMAT = "[provenance] %(asctime)s %(levelname)s %(name)s: %(message)s"


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging(
    level: str = "WARNING",
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure the "provenance" logger hierarchy.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: emit StructuredFormatter JSON lines instead of plain text
        log_file: optional file receiving the same records
    """
    logger = logging.getLogger("provenance")
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = StructuredFormatter() if json_format else logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
