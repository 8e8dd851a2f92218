import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "mail_dedup"

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def build_logger(
    level: int = logging.INFO,
    log_file: str | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Console (and optionally file) logger handed to the walker and deduplicator."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(RichHandler(console=console, show_path=False, markup=False))
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)
    return logger
