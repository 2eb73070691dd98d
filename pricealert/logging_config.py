from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .runtime_paths import ensure_runtime_dirs, resolve_log_path, resolve_price_log_path

_CONFIGURED = False
_PRICE_SOURCE_CONFIGURED = False
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _has_file_handler(logger: logging.Logger, path: Path) -> bool:
    target = path.resolve().as_posix()
    for handler in logger.handlers:
        if isinstance(handler, RotatingFileHandler):
            if Path(handler.baseFilename).resolve().as_posix() == target:
                return True
    return False


def _build_file_handler(log_path: Path) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        filename=log_path,
        maxBytes=10 * 1024 * 1024,
        backupCount=7,
        encoding="utf-8",
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    return handler


def configure_logging() -> Path:
    global _CONFIGURED
    if _CONFIGURED:
        return resolve_log_path()

    ensure_runtime_dirs()
    log_path = resolve_log_path().resolve()

    root_logger = logging.getLogger("")
    if not _has_file_handler(root_logger, log_path):
        root_logger.addHandler(_build_file_handler(log_path))
    if root_logger.level == logging.NOTSET or root_logger.level > logging.INFO:
        root_logger.setLevel(logging.INFO)

    # Uvicorn installs its own stream handlers; keep propagation so records
    # also land in the project log file.
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(logger_name)
        logger.propagate = True
        if logger.level == logging.NOTSET or logger.level > logging.INFO:
            logger.setLevel(logging.INFO)

    root_logger.info("File logging initialized at %s", log_path)
    _CONFIGURED = True
    return log_path


def configure_price_source_logging() -> Path:
    global _PRICE_SOURCE_CONFIGURED
    if _PRICE_SOURCE_CONFIGURED:
        return resolve_price_log_path()

    ensure_runtime_dirs()
    log_path = resolve_price_log_path().resolve()

    logger = logging.getLogger("pricealert.price_source")
    if not _has_file_handler(logger, log_path):
        logger.addHandler(_build_file_handler(log_path))
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)

    logger.info("Price source file logging initialized at %s", log_path)
    _PRICE_SOURCE_CONFIGURED = True
    return log_path
