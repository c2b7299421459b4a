# common/logging.py
from __future__ import annotations
import logging, os
from logging.handlers import RotatingFileHandler
from typing import Optional

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

def _level_from_env(default: str = "INFO") -> int:
    env = os.getenv("LOG_LEVEL", default).upper()
    return _LEVELS.get(env, logging.INFO)

def get_logger(name: str, log_dir: Optional[str] = None, level: Optional[str] = None) -> logging.Logger:
    """
    Creates a logger for one component of the video service that writes to:
      - stdout (console)
      - <log_dir>/<name>.log (rotating: 5MB x 5 files)
    log_dir falls back to $LOG_DIR, then "logs". An empty LOG_DIR disables the file.
    Idempotent: calling twice returns the same configured logger.
    """
    logger = logging.getLogger(name)
    if logger.handlers:  # already configured
        return logger

    if log_dir is None:
        log_dir = os.getenv("LOG_DIR", "logs")
    log_level = _LEVELS.get(level.upper(), _level_from_env()) if level else _level_from_env()

    fmt = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(
            filename=os.path.join(log_dir, f"{name}.log"),
            maxBytes=5_000_000,
            backupCount=5,
            encoding="utf-8",
        )
        fh.setFormatter(fmt)
        fh.setLevel(log_level)
        logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    ch.setLevel(log_level)
    logger.addHandler(ch)

    logger.setLevel(log_level)
    logger.propagate = False
    return logger

def configure_loggers(names, log_dir: Optional[str] = None, level: Optional[str] = None) -> None:
    """
    Rebuild handlers of loggers that were created at import time (before config.yaml
    was read) so they follow the runtime log_dir / log_level.
    """
    for name in names:
        logger = logging.getLogger(name)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
        get_logger(name, log_dir=log_dir, level=level)
