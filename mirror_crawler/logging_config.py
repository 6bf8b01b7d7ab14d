"""Crawler logging: readable console output plus JSON run and error logs."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from pythonjsonlogger import jsonlogger

from mirror_crawler.config import settings

# Entity context promoted to top-level JSON fields when present on a record
CONTEXT_FIELDS = ("item_id", "seller_id", "market", "mode", "stage", "tier")

NOISY_LOGGERS = ("httpx", "httpcore", "apscheduler.executors.default")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp, level, source and crawl context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace(
            '+00:00', 'Z'
        )
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"
        log_record['service'] = "mirror-crawler"

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_record[name] = value


def setup_logging(base_dir: str | Path | None = None, level: str | None = None):
    """Install the console, crawler.log and error.log handlers on the root logger.

    Args:
        base_dir: Directory that receives logs/ (default: current directory)
        level: Root level override; defaults to LOG_LEVEL
    """
    logs_dir = (Path(base_dir) if base_dir else Path.cwd()) / "logs"
    logs_dir.mkdir(exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    for filename, handler_level in (("crawler.log", logging.DEBUG), ("error.log", logging.ERROR)):
        handler = logging.FileHandler(logs_dir / filename, encoding="utf-8")
        handler.setLevel(handler_level)
        handler.setFormatter(json_formatter)
        root_logger.addHandler(handler)

    # Per-request INFO lines would drown the crawl logs
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Adapter that attaches entity context (item, seller, market) to every record."""

    def process(self, msg, kwargs):
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger bound to one entity.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields, e.g. item_id='123', market='GB'

    Returns:
        LoggerAdapter with context
    """
    return LoggerAdapter(logging.getLogger(name), context)
