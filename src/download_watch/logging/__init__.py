from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from download_watch.config.models import LoggingSettings

_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(settings: LoggingSettings, verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    level = logging.getLevelNamesMapping().get(settings.level.upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {settings.level}")
    return level


def _add_file_handler(root_logger: logging.Logger, settings: LoggingSettings, level: int) -> None:
    file_path = settings.file.path.strip() if settings.file is not None else ""
    if not file_path:
        return

    try:
        file_path_obj = Path(file_path)
        file_path_obj.parent.mkdir(parents=True, exist_ok=True)

        file_handler = TimedRotatingFileHandler(
            filename=str(file_path_obj),
            when="midnight",
            interval=1,
            backupCount=settings.file.rotation.backup_count,
            encoding="utf-8",
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
        root_logger.addHandler(file_handler)
    except OSError:
        root_logger.error("File logging handler failed to initialize path=%s", file_path, exc_info=True)


def init_logging(settings: LoggingSettings, *, verbose: bool = False) -> None:
    """
    Install the stream handler and the optional daily rotating file handler.

    `verbose` forces DEBUG regardless of the configured level.
    """
    root_logger = logging.getLogger()
    level = _resolve_level(settings, verbose)
    root_logger.setLevel(level)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT))
    root_logger.addHandler(stream_handler)

    _add_file_handler(root_logger, settings, level)


def apply_log_level(settings: LoggingSettings, *, verbose: bool = False) -> None:
    """Re-apply the configured level after a reload. Handlers are kept as installed."""
    root_logger = logging.getLogger()
    level = _resolve_level(settings, verbose)
    if level == root_logger.level:
        return
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        handler.setLevel(level)
    root_logger.info("Log level changed. level=%s", logging.getLevelName(level))


__all__ = ["apply_log_level", "init_logging"]
