"""Logging bootstrap shared by the worker and any embedding API process."""

import logging

from .config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str | None = None) -> None:
    """Configure root logging once per process."""
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)

    # SQL echo is controlled by settings.database_echo, keep the engine logger quiet otherwise
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
