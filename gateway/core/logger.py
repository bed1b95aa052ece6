# core/logger.py
import logging
from gateway.core.config import settings

logger = logging.getLogger("gateway")
logger.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
logger.propagate = False

# Always add a console handler with a simple, structured-ish format
_console = logging.StreamHandler()
_console.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)
_console.setFormatter(logging.Formatter(
    fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S%z",
))
logger.addHandler(_console)


def get_logger(component: str) -> logging.Logger:
    """Child logger sharing the gateway handler, e.g. gateway.jobs."""
    return logger.getChild(component)
