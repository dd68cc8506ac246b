import logging
import os
from logging.handlers import RotatingFileHandler

from livecast.config import Settings, get_settings

_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
_DATEFMT = "%H:%M:%S"


def _build_file_handler(log_path: str) -> RotatingFileHandler:
    directory = os.path.dirname(log_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    file_handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter(_FORMAT, _DATEFMT))
    file_handler.setLevel(logging.DEBUG)
    file_handler.name = "livecast_file"
    return file_handler


def _build_stream_handler(level: int) -> logging.StreamHandler:
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(logging.Formatter(_FORMAT, _DATEFMT))
    stream_handler.setLevel(level)
    stream_handler.name = "livecast_stream"
    return stream_handler


def _replace_handlers(logger: logging.Logger, handlers: list[logging.Handler]) -> None:
    logger.handlers = []
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False


def configure_logging(settings: Settings | None = None) -> None:
    """Console logging at LOG_LEVEL; LOG_FILE adds a rotating file handler. uvicorn shares the handlers."""
    settings = settings or get_settings()
    level = logging.getLevelName((settings.LOG_LEVEL or "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    handlers: list[logging.Handler] = [_build_stream_handler(level)]
    if settings.LOG_FILE:
        handlers.append(_build_file_handler(settings.LOG_FILE))

    root_logger = logging.getLogger()
    root_logger.setLevel(min(level, logging.DEBUG) if settings.LOG_FILE else level)
    _replace_handlers(root_logger, handlers)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.setLevel(logging.INFO)
        _replace_handlers(uv_logger, handlers)

    # websockets logs every frame at DEBUG
    logging.getLogger("websockets").setLevel(logging.WARNING)
    root_logger.info("Logging initialized (level=%s, file=%s)", logging.getLevelName(level), settings.LOG_FILE or "-")
