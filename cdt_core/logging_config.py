"""
Structured Logging Module

One JSON object per line for every log record emitted under the cdt_core
logger tree. Lifecycle operations attach who did what to which certificate
through log_action(); those attributes become top-level JSON keys.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Record attributes promoted to top-level JSON keys when present
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "cdt_id", "extra")

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """Render log records as single-line JSON"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def setup_logging(level: str = "INFO", logger_name: str = "cdt_core",
                  fmt: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach a single handler to the engine's logger.

    Calling it again replaces the previous handler, so it is safe to call on
    every process start or configuration reload.

    Args:
        level: Minimum level name, e.g. "INFO" or "debug"
        logger_name: Logger to configure; children inherit the handler
        fmt: "json" for structured lines, "text" for human readable ones
        log_file: Append to this file instead of writing to stderr

    Returns:
        The configured logger
    """
    logger = logging.getLogger(logger_name)

    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(TEXT_FORMAT))

    logger.addHandler(handler)
    logger.setLevel(level.upper())
    # Records are fully handled here; the root logger would print them twice
    logger.propagate = False

    return logger


def setup_logging_from_config(settings, logger_name: str = "cdt_core") -> logging.Logger:
    """Configure logging from CdtConfig's log_level, log_format and log_file"""
    return setup_logging(
        level=settings.log_level,
        logger_name=logger_name,
        fmt=settings.log_format,
        log_file=settings.log_file,
    )


def get_logger(name: str = "cdt_core") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None) -> None:
    """
    Log a lifecycle action with its actor and target.

    Args:
        logger: Logger to emit on
        level: Level name ("info", "warning", ...)
        message: Human readable summary
        user_id: Actor performing the action
        action: Machine name of the action, e.g. "approve_cdt"
        resource: Target, e.g. "cdt:<id>"; also fills cdt_id
        correlation_id: Request id from the calling layer
        extra: Any further structured detail
    """
    fields: Dict[str, Any] = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id,
        "extra": extra or None,
    }
    if resource and resource.startswith("cdt:"):
        fields["cdt_id"] = resource[len("cdt:"):]

    logger.log(
        logging.getLevelName(level.upper()), message,
        extra={key: value for key, value in fields.items() if value is not None}
    )
