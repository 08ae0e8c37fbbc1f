"""Structured logging.

Every line is one JSON object on stdout. Fields bound with
``get_logger(...).bind(...)`` that identify a restriction (``identifier``,
``key``, ``job_id``, ``job_class``) are lifted to the top level so log
pipelines can filter on them; everything else stays under ``extra``.
Set ``JOBGATE_LOG_JSON=false`` for plain text when running locally.
"""

import sys
import json
import logging
from datetime import timezone
from typing import IO, Any, Dict, Optional

from loguru import logger as _logger

from jobgate.core.config import settings

# stdlib loggers whose records are re-routed through loguru
INTERCEPTED = ("uvicorn", "uvicorn.error", "uvicorn.access", "asyncio", "redis")

CONTEXT_FIELDS = ("identifier", "key", "job_id", "job_class")

PLAIN_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level: <8}</level> "
    "{extra[logger]}: {message} {extra}"
)


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.opt(depth=depth, exception=record.exc_info).bind(
            logger=record.name
        ).log(level, record.getMessage())


def format_record(record: Dict[str, Any]) -> Dict[str, Any]:
    extra = dict(record.get("extra", {}))
    payload: Dict[str, Any] = {
        "time": record["time"].astimezone(timezone.utc).isoformat(),
        "level": record["level"].name,
        "service": settings.APP_NAME,
        "env": settings.APP_ENV,
        "logger": extra.pop("logger", record["name"]),
        "message": record["message"],
    }
    for field in CONTEXT_FIELDS:
        if field in extra:
            payload[field] = extra.pop(field)
    payload["where"] = f"{record['name']}:{record['function']}:{record['line']}"
    if extra:
        payload["extra"] = extra
    if record.get("exception"):
        payload["exception"] = str(record["exception"])
    return payload


def _json_sink(stream: IO[str]):
    def sink(message) -> None:
        line = json.dumps(format_record(message.record), ensure_ascii=False, default=str)
        print(line, file=stream)

    return sink


def setup_logging(
    level: Optional[str] = None,
    *,
    json_logs: Optional[bool] = None,
    stream: IO[str] = sys.stdout,
    enqueue: bool = True,
) -> None:
    level = (level or settings.LOG_LEVEL).upper()
    json_logs = settings.LOG_JSON if json_logs is None else json_logs

    _logger.remove()
    _logger.configure(extra={"logger": "root"})
    if json_logs:
        _logger.add(
            _json_sink(stream),
            level=level,
            backtrace=False,
            diagnose=False,
            enqueue=enqueue,
        )
    else:
        _logger.add(stream, level=level, format=PLAIN_FORMAT, enqueue=enqueue)

    for name in INTERCEPTED:
        logging_logger = logging.getLogger(name)
        logging_logger.handlers = [InterceptHandler()]
        logging_logger.propagate = False
        logging_logger.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.handlers = [InterceptHandler()]
    root_logger.setLevel(level)


def get_logger(name: str):
    return _logger.bind(logger=name)
