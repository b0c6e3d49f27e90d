import logging
from logging.handlers import RotatingFileHandler

from .config import LOG_DIR, LOG_LEVEL

ROOT_LOGGER = "rollcall"


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if root.handlers:
        return root

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    root.propagate = False
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # One rotating file for the whole process; every component logs through it.
    file_handler = RotatingFileHandler(
        LOG_DIR / "rollcall.log",
        maxBytes=2_000_000,
        backupCount=5,
        encoding="utf-8",
    )
    console = logging.StreamHandler()
    for handler in (file_handler, console):
        handler.setFormatter(formatter)
        root.addHandler(handler)
    return root


def setup_logger(name: str) -> logging.Logger:
    _configure_root()
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
