import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

_RESERVED_LOG_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


class StructuredLogFormatter(logging.Formatter):
    """JSON formatter that keeps ``extra`` fields such as ``job_id``."""

    def __init__(
        self,
        *,
        include_timestamp: bool = True,
        default_fields: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__()
        self._include_timestamp = include_timestamp
        self._default_fields = dict(default_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            **self._default_fields,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self._include_timestamp:
            payload["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_FIELDS
        }
        if extras:
            payload["extra"] = extras

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(
    level: str = "INFO",
    structured: Optional[bool] = None,
    default_fields: Optional[Mapping[str, Any]] = None,
) -> None:
    """
    Configure root logging for the API service and the Celery workers.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: When true, emit JSON logs that preserve ``extra`` fields.
            Defaults to the ``STRUCTURED_LOGS`` environment variable.
        default_fields: Base fields appended to each structured log record
    """
    if structured is None:
        env_value = os.getenv("STRUCTURED_LOGS") or os.getenv(
            "BUILD_JOB_STRUCTURED_LOGS"
        )
        structured = env_value.lower() in {"1", "true", "yes"} if env_value else False

    if structured:
        formatter: logging.Formatter = StructuredLogFormatter(
            default_fields=default_fields,
        )
    else:
        formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(name)s - %(message)s")

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging configured with level: %s", level)
