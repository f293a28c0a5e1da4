import logging
import sys
import os
import json
from datetime import datetime

# Attributes callers attach with ``logger.info(..., extra={...})``
CONTEXT_FIELDS = ("tenant_id", "conversation_id", "message_id", "job_id", "queue", "phone")

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine", "apscheduler")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class StandardFormatter(logging.Formatter):
    """Text formatter with level colours when attached to a terminal"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = " ".join(
            f"{field}={getattr(record, field)}"
            for field in CONTEXT_FIELDS
            if getattr(record, field, None) is not None
        )
        if context:
            message = f"{message} [{context}]"

        if sys.stdout.isatty():
            color = self.COLORS.get(record.levelname, "")
            message = f"{color}{message}{self.RESET}"
        return message


def setup_logging(
    level: str = None,
    json_format: bool = None,
    log_file: str = None
):
    """
    Configure application logging once at startup.

    Args:
        level: Log level name; defaults to LOG_LEVEL or INFO
        json_format: JSON lines instead of text; defaults to LOG_JSON
        log_file: Optional path, always written as JSON
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    json_format = json_format if json_format is not None else os.getenv("LOG_JSON", "false").lower() == "true"
    log_file = log_file or os.getenv("LOG_FILE")

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = StandardFormatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(numeric_level)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(numeric_level)
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
