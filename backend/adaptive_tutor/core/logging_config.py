"""Logging setup driven by LOG_LEVEL / LOG_FILE."""

import logging
from pathlib import Path

from .config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: Settings) -> None:
    """Install console and (optional) file handlers on the root logger."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
        except OSError as e:
            logging.getLogger(__name__).warning(f"File logging disabled ({log_path}): {e}")

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
