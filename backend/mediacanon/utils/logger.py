"""
Console logging for the API process, the Celery worker and the sync scripts.
Everything under the "mediacanon" logger shares one handler and the level
from LOG_LEVEL.
"""
import logging
from typing import Optional

LOG_FORMAT = "[%(levelname)s] %(asctime)s - %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("mediacanon")


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    if level is None:
        from mediacanon.core.config import settings
        level = settings.log_level
    logger.setLevel(level.upper())

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(console_handler)

    # httpx logs every dataset and TMDB request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger
