import logging
import sys
from typing import Optional

from app.core.config import get_settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """
    Make sure the root logger writes to stdout at the configured level.

    Uvicorn installs its own handlers before importing the app; in that case
    only the level is adjusted.
    """
    settings = get_settings()
    resolved_level = (level or ("DEBUG" if settings.debug else settings.log_level)).upper()
    root_logger = logging.getLogger()

    if not root_logger.handlers:
        logging.basicConfig(
            level=resolved_level,
            format=LOG_FORMAT,
            handlers=[logging.StreamHandler(sys.stdout)],
        )
    else:
        root_logger.setLevel(resolved_level)

    logging.captureWarnings(True)
