import logging
import sys
from logging.handlers import RotatingFileHandler

from backend.config import LOG_FILE, LOG_LEVEL


def setup_logging(level: str = LOG_LEVEL, log_file: str | None = LOG_FILE) -> None:
    """Configure root logging for the API process and the sync worker."""
    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers.clear()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        try:
            file_handler = RotatingFileHandler(log_file, maxBytes=10485760, backupCount=5)
        except OSError as exc:
            logger.warning("File logging disabled (%s): %s", log_file, exc)
        else:
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
