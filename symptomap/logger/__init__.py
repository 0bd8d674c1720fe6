"""
SymptoMap — Logging
loguru sink setup shared by the server, the services and the clients.
"""
import sys
from loguru import logger

from symptomap.config import LOG_LEVEL, ENVIRONMENT, DATA_DIR, PERSIST_DATA

_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | {message}"

_configured = False


def setup_logging(level: str = None):
    """Configure loguru once: stderr always, rotating file sink in production."""
    global _configured
    if _configured:
        return logger
    logger.remove()
    logger.add(sys.stderr, level=(level or LOG_LEVEL).upper(), format=_FORMAT)
    if ENVIRONMENT == "production" and PERSIST_DATA:
        logger.add(DATA_DIR / "logs" / "symptomap.log", level="INFO",
                   rotation="10 MB", retention=5, serialize=True)
    _configured = True
    return logger
