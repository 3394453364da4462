import logging, sys
from logging.handlers import RotatingFileHandler

from pythonjsonlogger import jsonlogger

from .config import Settings, settings as default_settings


def setup_logging(cfg: Settings | None = None, level: str | None = None):
    cfg = cfg or default_settings
    level = getattr(logging, (level or cfg.log_level).upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if cfg.log_file:
        handlers.append(
            RotatingFileHandler(
                cfg.log_file,
                maxBytes=cfg.log_max_bytes,
                backupCount=cfg.log_backup_count,
            )
        )

    logging.basicConfig(level=level, handlers=handlers, force=True)

    if cfg.log_json:
        formatter: logging.Formatter = jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
        )

    for handler in handlers:
        handler.setFormatter(formatter)
