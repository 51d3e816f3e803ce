"""
Logging setup for the API, the Celery workers and the scripts.

Production emits one JSON object per line; other environments emit text.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from rentflow.config import settings

QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx", "httpcore")


class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "app": settings.app_name,
            "env": settings.app_env,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        # logger.info(..., extra={"context": {"batch_id": ...}})
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            entry.update(context)
        return json.dumps(entry, default=str)


def configure_logging(level: Optional[str] = None) -> None:
    """Replace root handlers with a single stdout handler."""
    level = (level or settings.log_level or ("INFO" if settings.is_production else "DEBUG")).upper()

    handler = logging.StreamHandler(sys.stdout)
    if settings.is_production:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
