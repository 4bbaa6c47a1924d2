"""Logging setup for the gateway process.

Router log calls attach routing context through ``extra=`` (request_id,
provider, attempts); the JSON formatter lifts those onto the record.
"""

import json
import logging
import sys
from datetime import datetime, timezone

from provider_gateway.core.config import settings

CONTEXT_FIELDS = ("request_id", "provider", "attempts", "strategy")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with routing context when present."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


class ContextFormatter(logging.Formatter):
    """Plain formatter that appends ``[request_id provider]`` when known."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(str(getattr(record, n)) for n in ("request_id", "provider") if getattr(record, n, None))
        return f"{line} [{context}]" if context else line


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Install one stdout handler on the root logger.

    Arguments default to ``settings.log_level`` / ``settings.log_json``.
    """
    level_no = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    use_json = settings.log_json if json_output is None else json_output

    root = logging.getLogger()
    root.setLevel(level_no)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level_no)
    if use_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            ContextFormatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    # SQLite statements only in debug
    logging.getLogger("sqlalchemy.engine").setLevel(level_no if settings.app_debug else logging.WARNING)
